from datetime import datetime
from functools import lru_cache
import json
import logging
from typing import Annotated, Any

from fastapi import Depends, FastAPI, File, HTTPException, Query, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from docqa.config import get_settings
from docqa.db import get_engine
from docqa.llm import GenerationError, LLMClient
from docqa.models import JobRecord
from docqa.services.documents import (
    DocumentNotFound,
    SqlMetadataStore,
    UnsupportedDocumentType,
    UploadTooLarge,
    upload_document,
)
from docqa.services.factory import (
    build_document_store,
    build_embedding_client,
    build_generator,
    build_llm_client,
)
from docqa.services.jobs import JobAlreadyActive, enqueue_ingestion_job, job_summary
from docqa.services.rag.document_store import DocumentStore
from docqa.services.rag.embedding_client import EmbeddingClient, EmbeddingError
from docqa.services.rag.types import DimensionMismatch, Document

logger = logging.getLogger(__name__)

app = FastAPI(title="DocQA API", version="0.1.0")


class ChatRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    query: str = Field(min_length=1)


class SourceDocumentPayload(BaseModel):
    source: str
    contentPreview: str


class ChatResponse(BaseModel):
    answer: str
    sourceDocuments: list[SourceDocumentPayload]


@app.on_event("startup")
def startup() -> None:
    get_engine()


@lru_cache
def get_embedding_client() -> EmbeddingClient:
    # One instance per process: its semaphore is the global in-flight limit.
    return build_embedding_client(get_settings())


def get_llm_client() -> LLMClient:
    return build_llm_client(get_settings())


def get_document_store() -> DocumentStore:
    return build_document_store(get_settings())


def get_db_engine() -> Engine:
    return get_engine()


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def _document_payload(document: Document) -> dict[str, Any]:
    return {
        "id": document.id,
        "file_name": document.file_name,
        "storage_path": document.storage_path,
        "status": document.status.value,
        "error": document.error,
        "chunk_count": document.chunk_count,
        "created_at": _to_iso(document.created_at),
        "updated_at": _to_iso(document.updated_at),
    }


def _parse_json_column(value: Any) -> dict[str, Any] | None:
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return None
        return parsed if isinstance(parsed, dict) else None
    return value


def _job_detail(job: JobRecord) -> dict[str, Any]:
    return {
        "id": job.id,
        "type": job.type,
        "status": job.status,
        "payload_json": _parse_json_column(job.payload_json),
        "attempts": job.attempts,
        "max_attempts": job.max_attempts,
        "created_at": _to_iso(job.created_at),
        "updated_at": _to_iso(job.updated_at),
        "started_at": _to_iso(job.started_at),
        "finished_at": _to_iso(job.finished_at),
        "error": job.error,
        "result_json": _parse_json_column(job.result_json),
    }


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/documents")
def create_document(
    file: Annotated[UploadFile, File()],
    engine: Annotated[Engine, Depends(get_db_engine)],
    document_store: Annotated[DocumentStore, Depends(get_document_store)],
) -> JSONResponse:
    file_name = file.filename or ""
    if not file_name.strip():
        raise HTTPException(status_code=400, detail="file name must not be empty")

    settings = get_settings()
    # One byte past the limit is enough to reject the upload.
    data = file.file.read(settings.max_upload_bytes + 1)
    try:
        document, job_id = upload_document(
            file_name=file_name,
            data=data,
            engine=engine,
            document_store=document_store,
            metadata_store=SqlMetadataStore(engine),
            max_attempts=settings.job_max_attempts,
            max_bytes=settings.max_upload_bytes,
        )
    except UploadTooLarge as exc:
        raise HTTPException(status_code=413, detail=str(exc)) from exc
    except UnsupportedDocumentType as exc:
        raise HTTPException(status_code=415, detail=str(exc)) from exc
    except OSError as exc:
        raise HTTPException(status_code=500, detail=f"storage error: {exc}") from exc

    return JSONResponse(
        status_code=202,
        content={**_document_payload(document), "job_id": job_id},
    )


@app.get("/documents")
def list_documents(engine: Annotated[Engine, Depends(get_db_engine)]) -> list[dict[str, Any]]:
    return [_document_payload(document) for document in SqlMetadataStore(engine).list_documents()]


@app.get("/documents/{document_id}")
def get_document(
    document_id: str,
    engine: Annotated[Engine, Depends(get_db_engine)],
) -> dict[str, Any]:
    try:
        document = SqlMetadataStore(engine).get_document(document_id)
    except DocumentNotFound as exc:
        raise HTTPException(status_code=404, detail="document not found") from exc
    return _document_payload(document)


@app.post("/documents/{document_id}/ingest")
def reingest_document(
    document_id: str,
    engine: Annotated[Engine, Depends(get_db_engine)],
) -> JSONResponse:
    try:
        SqlMetadataStore(engine).get_document(document_id)
    except DocumentNotFound as exc:
        raise HTTPException(status_code=404, detail="document not found") from exc

    try:
        job_id = enqueue_ingestion_job(
            engine,
            document_id,
            max_attempts=get_settings().job_max_attempts,
        )
    except JobAlreadyActive as exc:
        return JSONResponse(
            status_code=409,
            content={
                "detail": "document_ingest already queued/running",
                "existing_job_id": exc.existing_job_id,
            },
        )

    return JSONResponse(status_code=202, content={"job_id": job_id, "status": "queued"})


@app.post("/chat")
def chat(
    request: ChatRequest,
    engine: Annotated[Engine, Depends(get_db_engine)],
    llm_client: Annotated[LLMClient, Depends(get_llm_client)],
    embedding_client: Annotated[EmbeddingClient, Depends(get_embedding_client)],
) -> ChatResponse:
    query = request.query.strip()
    if not query:
        raise HTTPException(status_code=400, detail="query must not be empty")

    generator = build_generator(
        engine,
        get_settings(),
        embedding_client=embedding_client,
        llm_client=llm_client,
    )

    try:
        result = generator.answer(query)
    except EmbeddingError as exc:
        raise HTTPException(status_code=502, detail=f"Embedding request failed: {exc}") from exc
    except GenerationError as exc:
        raise HTTPException(status_code=502, detail=f"LLM request failed: {exc}") from exc
    except DimensionMismatch as exc:
        logger.error("Embedding model and vector store disagree: %s", exc)
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    return ChatResponse(
        answer=result.text,
        sourceDocuments=[
            SourceDocumentPayload(source=source.source, contentPreview=source.preview)
            for source in result.sources
        ],
    )


@app.get("/jobs")
def list_jobs(
    type: str | None = Query(default=None),
    status: str | None = Query(default=None),
) -> list[dict[str, Any]]:
    with Session(get_engine()) as session:
        stmt = select(JobRecord)
        if type is not None:
            stmt = stmt.where(JobRecord.type == type)
        if status is not None:
            stmt = stmt.where(JobRecord.status == status)

        jobs = session.scalars(
            stmt.order_by(JobRecord.created_at.asc(), JobRecord.id.asc())
        ).all()

    return [job_summary(job) for job in jobs]


@app.get("/jobs/{job_id}")
def get_job(job_id: str) -> dict[str, Any]:
    with Session(get_engine()) as session:
        job = session.get(JobRecord, job_id)

    if job is None:
        raise HTTPException(status_code=404, detail="job not found")
    return _job_detail(job)


def run() -> None:
    import uvicorn

    uvicorn.run("docqa.main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    run()
