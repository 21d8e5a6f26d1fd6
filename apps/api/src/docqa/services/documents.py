from __future__ import annotations

from datetime import datetime, timezone
import logging
from pathlib import Path
import re
from typing import Protocol
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from docqa.models import DocumentRecord
from docqa.services.jobs import enqueue_ingestion_job
from docqa.services.rag.document_store import DocumentStore
from docqa.services.rag.extractor import SUPPORTED_EXTENSIONS, is_supported
from docqa.services.rag.types import ALLOWED_TRANSITIONS, Document, DocumentStatus

logger = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class DocumentNotFound(LookupError):
    pass


class InvalidStatusTransition(ValueError):
    def __init__(self, document_id: str, target: DocumentStatus, current: str | None) -> None:
        super().__init__(
            f"document {document_id} cannot move to {target.value} from {current or '<missing>'}"
        )
        self.document_id = document_id
        self.target = target
        self.current = current


class UnsupportedDocumentType(ValueError):
    pass


class UploadTooLarge(ValueError):
    def __init__(self, file_name: str, size: int, limit: int) -> None:
        super().__init__(f"{file_name!r} exceeds the upload limit of {limit} bytes")
        self.size = size
        self.limit = limit


class MetadataStore(Protocol):
    def create_document(self, *, file_name: str, storage_path: str) -> Document: ...

    def get_document(self, document_id: str) -> Document: ...

    def update_status(
        self,
        document_id: str,
        status: DocumentStatus,
        *,
        error: str | None = None,
        chunk_count: int | None = None,
    ) -> Document: ...


def _to_document(record: DocumentRecord) -> Document:
    return Document(
        id=record.id,
        file_name=record.file_name,
        storage_path=record.storage_path,
        status=DocumentStatus(record.status),
        created_at=record.created_at,
        updated_at=record.updated_at,
        error=record.error,
        chunk_count=record.chunk_count,
    )


class SqlMetadataStore:
    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def create_document(self, *, file_name: str, storage_path: str) -> Document:
        now = datetime.now(timezone.utc)
        with Session(self._engine) as session:
            record = DocumentRecord(
                id=uuid4().hex,
                file_name=file_name,
                storage_path=storage_path,
                status=DocumentStatus.PENDING.value,
                created_at=now,
                updated_at=now,
            )
            session.add(record)
            session.commit()
            return _to_document(record)

    def get_document(self, document_id: str) -> Document:
        with Session(self._engine) as session:
            record = session.get(DocumentRecord, document_id)
            if record is None:
                raise DocumentNotFound(f"document not found: {document_id}")
            return _to_document(record)

    def list_documents(self) -> list[Document]:
        with Session(self._engine) as session:
            records = session.scalars(
                select(DocumentRecord).order_by(DocumentRecord.created_at.asc(), DocumentRecord.id.asc())
            ).all()
            return [_to_document(record) for record in records]

    def update_status(
        self,
        document_id: str,
        status: DocumentStatus,
        *,
        error: str | None = None,
        chunk_count: int | None = None,
    ) -> Document:
        allowed_from = [previous.value for previous in ALLOWED_TRANSITIONS[status]]
        values: dict[str, object] = {
            "status": status.value,
            "error": error,
            "updated_at": datetime.now(timezone.utc),
        }
        if chunk_count is not None:
            values["chunk_count"] = chunk_count

        with Session(self._engine) as session:
            # Conditional update: concurrent writers cannot both win the same transition.
            result = session.execute(
                update(DocumentRecord)
                .where(DocumentRecord.id == document_id)
                .where(DocumentRecord.status.in_(allowed_from))
                .values(**values)
            )
            if result.rowcount != 1:
                session.rollback()
                current = session.scalar(
                    select(DocumentRecord.status).where(DocumentRecord.id == document_id)
                )
                if current is None:
                    raise DocumentNotFound(f"document not found: {document_id}")
                raise InvalidStatusTransition(document_id, status, current)
            session.commit()

        logger.info("Document %s -> %s", document_id, status.value)
        return self.get_document(document_id)


def build_storage_path(file_name: str, *, now: datetime | None = None) -> str:
    moment = now or datetime.now(timezone.utc)
    safe_name = _UNSAFE_NAME_CHARS.sub("_", Path(file_name).name).strip("._") or "document"
    return f"uploads/{int(moment.timestamp() * 1000)}-{safe_name}"


def register_document(
    *,
    file_name: str,
    data: bytes,
    document_store: DocumentStore,
    metadata_store: MetadataStore,
    max_bytes: int | None = None,
) -> Document:
    """Record a ``PENDING`` document, store its bytes and mark it ``UPLOADED``."""
    if max_bytes is not None and len(data) > max_bytes:
        raise UploadTooLarge(file_name, len(data), max_bytes)
    if not is_supported(file_name):
        raise UnsupportedDocumentType(
            f"Unsupported document type for {file_name!r} (supported: {sorted(SUPPORTED_EXTENSIONS)})"
        )

    document = metadata_store.create_document(
        file_name=Path(file_name).name,
        storage_path=build_storage_path(file_name),
    )
    try:
        document_store.put(document.storage_path, data)
    except OSError as exc:
        metadata_store.update_status(document.id, DocumentStatus.FAILED, error=str(exc))
        raise

    return metadata_store.update_status(document.id, DocumentStatus.UPLOADED)


def upload_document(
    *,
    file_name: str,
    data: bytes,
    engine: Engine,
    document_store: DocumentStore,
    metadata_store: MetadataStore,
    max_attempts: int = 1,
    max_bytes: int | None = None,
) -> tuple[Document, str]:
    """Register the upload and hand ingestion to the job queue.

    Returns the ``UPLOADED`` document and the id of the queued ingestion job.
    The caller never waits for ingestion itself.
    """
    document = register_document(
        file_name=file_name,
        data=data,
        document_store=document_store,
        metadata_store=metadata_store,
        max_bytes=max_bytes,
    )
    job_id = enqueue_ingestion_job(engine, document.id, max_attempts=max_attempts)
    logger.info(
        "Uploaded %s as document_id=%s (%d bytes), ingestion job_id=%s",
        file_name,
        document.id,
        len(data),
        job_id,
    )
    return document, job_id
