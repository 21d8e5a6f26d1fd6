from __future__ import annotations

import json
import logging
from time import sleep
from typing import Any, Callable

from sqlalchemy import text
from sqlalchemy.engine import Engine

from docqa.config import get_settings
from docqa.db import get_engine
from docqa.services.documents import SqlMetadataStore
from docqa.services.factory import build_ingestion_pipeline
from docqa.services.jobs import INGEST_JOB_TYPE
from docqa.services.rag.ingest import IngestionPipeline

logger = logging.getLogger("docqa_worker")

Runner = Callable[[dict[str, Any] | None], dict[str, Any]]


def _normalize_payload(payload_json: Any) -> dict[str, Any] | None:
    if isinstance(payload_json, dict):
        return payload_json
    if isinstance(payload_json, str) and payload_json.strip():
        try:
            parsed = json.loads(payload_json)
        except json.JSONDecodeError:
            return None
        if isinstance(parsed, dict):
            return parsed
    return None


def _claimed(row: Any, default_max_attempts: int) -> dict[str, Any]:
    return {
        "id": str(row["id"]),
        "payload_json": _normalize_payload(row["payload_json"]),
        "attempts": int(row["attempts"] or 0),
        "max_attempts": int(row["max_attempts"] or default_max_attempts),
    }


def claim_next_ingest_job(engine: Engine, *, default_max_attempts: int = 1) -> dict[str, Any] | None:
    if engine.dialect.name == "postgresql":
        with engine.begin() as connection:
            row = connection.execute(
                text(
                    """
                    SELECT id, payload_json, attempts, max_attempts
                    FROM jobs
                    WHERE type = :job_type AND status = 'queued'
                    ORDER BY created_at ASC, id ASC
                    FOR UPDATE SKIP LOCKED
                    LIMIT 1
                    """
                ),
                {"job_type": INGEST_JOB_TYPE},
            ).mappings().first()
            if row is None:
                return None

            connection.execute(
                text(
                    """
                    UPDATE jobs
                    SET status = 'running',
                        started_at = CURRENT_TIMESTAMP,
                        updated_at = CURRENT_TIMESTAMP,
                        finished_at = NULL,
                        error = NULL
                    WHERE id = :job_id
                    """
                ),
                {"job_id": str(row["id"])},
            )
            return _claimed(row, default_max_attempts)

    with engine.begin() as connection:
        row = connection.execute(
            text(
                """
                SELECT id, payload_json, attempts, max_attempts
                FROM jobs
                WHERE type = :job_type AND status = 'queued'
                ORDER BY created_at ASC, id ASC
                LIMIT 1
                """
            ),
            {"job_type": INGEST_JOB_TYPE},
        ).mappings().first()
        if row is None:
            return None

        claimed = connection.execute(
            text(
                """
                UPDATE jobs
                SET status = 'running',
                    started_at = CURRENT_TIMESTAMP,
                    updated_at = CURRENT_TIMESTAMP,
                    finished_at = NULL,
                    error = NULL
                WHERE id = :job_id AND status = 'queued'
                """
            ),
            {"job_id": str(row["id"])},
        )
        if claimed.rowcount != 1:
            return None

        return _claimed(row, default_max_attempts)


def _mark_job_succeeded(engine: Engine, job_id: str, result_json: dict[str, Any]) -> None:
    with engine.begin() as connection:
        connection.execute(
            text(
                """
                UPDATE jobs
                SET status = 'succeeded',
                    result_json = :result_json,
                    finished_at = CURRENT_TIMESTAMP,
                    updated_at = CURRENT_TIMESTAMP,
                    error = NULL
                WHERE id = :job_id
                """
            ),
            {"job_id": job_id, "result_json": json.dumps(result_json)},
        )


def _mark_job_failure(
    engine: Engine,
    *,
    job_id: str,
    attempts: int,
    max_attempts: int,
    error_message: str,
) -> None:
    next_attempts = attempts + 1
    requeue = next_attempts < max_attempts

    with engine.begin() as connection:
        connection.execute(
            text(
                """
                UPDATE jobs
                SET status = CAST(:status AS VARCHAR),
                    attempts = :attempts,
                    error = :error,
                    finished_at = CASE WHEN CAST(:status AS VARCHAR) = 'failed' THEN CURRENT_TIMESTAMP ELSE NULL END,
                    started_at = CASE WHEN CAST(:status AS VARCHAR) = 'queued' THEN NULL ELSE started_at END,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = :job_id
                """
            ),
            {
                "job_id": job_id,
                "status": "queued" if requeue else "failed",
                "attempts": next_attempts,
                "error": error_message,
            },
        )


def process_claimed_job(engine: Engine, job: dict[str, Any], *, runner: Runner) -> None:
    job_id = str(job["id"])
    attempts = int(job.get("attempts", 0))
    max_attempts = int(job.get("max_attempts") or 1)
    payload = _normalize_payload(job.get("payload_json"))

    try:
        result_json = runner(payload)
    except Exception as exc:
        _mark_job_failure(
            engine,
            job_id=job_id,
            attempts=attempts,
            max_attempts=max_attempts,
            error_message=str(exc),
        )
        logger.warning(
            "job failed job_id=%s attempts=%d/%d error=%s",
            job_id,
            attempts + 1,
            max_attempts,
            exc,
        )
        return

    _mark_job_succeeded(engine, job_id, result_json)
    logger.info("job succeeded job_id=%s result=%s", job_id, result_json)


def make_ingest_runner(pipeline: IngestionPipeline, metadata_store: SqlMetadataStore) -> Runner:
    def run(payload: dict[str, Any] | None) -> dict[str, Any]:
        document_id = (payload or {}).get("document_id")
        if not isinstance(document_id, str) or not document_id:
            raise ValueError("document_ingest payload requires a document_id")

        document = metadata_store.get_document(document_id)
        return pipeline.ingest(document).as_payload()

    return run


def run_once(engine: Engine, runner: Runner, *, default_max_attempts: int = 1) -> bool:
    job = claim_next_ingest_job(engine, default_max_attempts=default_max_attempts)
    if job is None:
        return False
    logger.info("claimed job_id=%s payload=%s", job["id"], job["payload_json"])
    process_claimed_job(engine, job, runner=runner)
    return True


def main() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [worker] %(name)s %(message)s",
    )

    engine = get_engine()
    runner = make_ingest_runner(build_ingestion_pipeline(engine, settings), SqlMetadataStore(engine))
    logger.info(
        "worker started worker_id=%s poll_seconds=%d",
        settings.worker_id,
        settings.worker_poll_seconds,
    )

    while True:
        if not run_once(engine, runner, default_max_attempts=settings.job_max_attempts):
            sleep(settings.worker_poll_seconds)


if __name__ == "__main__":
    main()
