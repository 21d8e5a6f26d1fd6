from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from docqa.models import JobRecord

INGEST_JOB_TYPE = "document_ingest"
ACTIVE_JOB_STATUSES = ("queued", "running")


class JobAlreadyActive(RuntimeError):
    def __init__(self, document_id: str, existing_job_id: str) -> None:
        super().__init__(f"{INGEST_JOB_TYPE} already queued/running for document {document_id}")
        self.document_id = document_id
        self.existing_job_id = existing_job_id


def find_active_ingestion_job(session: Session, document_id: str) -> JobRecord | None:
    candidates = session.scalars(
        select(JobRecord)
        .where(JobRecord.type == INGEST_JOB_TYPE)
        .where(JobRecord.status.in_(ACTIVE_JOB_STATUSES))
        .order_by(JobRecord.created_at.asc(), JobRecord.id.asc())
    ).all()
    for job in candidates:
        if isinstance(job.payload_json, dict) and job.payload_json.get("document_id") == document_id:
            return job
    return None


def enqueue_ingestion_job(engine: Engine, document_id: str, *, max_attempts: int = 1) -> str:
    with Session(engine) as session:
        existing = find_active_ingestion_job(session, document_id)
        if existing is not None:
            raise JobAlreadyActive(document_id, existing.id)

        now = datetime.now(timezone.utc)
        job = JobRecord(
            id=uuid4().hex,
            type=INGEST_JOB_TYPE,
            status="queued",
            payload_json={"document_id": document_id},
            attempts=0,
            max_attempts=max_attempts,
            created_at=now,
            updated_at=now,
        )
        session.add(job)
        session.commit()
        return job.id


def job_summary(job: JobRecord) -> dict[str, object]:
    return {
        "id": job.id,
        "type": job.type,
        "status": job.status,
    }
