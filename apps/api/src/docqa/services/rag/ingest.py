from __future__ import annotations

import logging
from pathlib import Path
import tempfile
from typing import TYPE_CHECKING

from docqa.services.rag.chunker import RecursiveTextChunker
from docqa.services.rag.document_store import DocumentStore
from docqa.services.rag.embedding_client import EmbeddingClient, EmbeddingError
from docqa.services.rag.extractor import extract_pages, has_text
from docqa.services.rag.types import (
    DimensionMismatch,
    Document,
    DocumentStatus,
    IngestionSummary,
    preview_text,
)
from docqa.services.rag.vector_store import VectorStore

if TYPE_CHECKING:
    from docqa.services.documents import MetadataStore

logger = logging.getLogger(__name__)

PREVIEW_CHARS = 200


class IngestionError(RuntimeError):
    def __init__(self, document_id: str, cause: BaseException) -> None:
        super().__init__(f"ingestion of document {document_id} failed: {cause}")
        self.document_id = document_id
        self.cause = cause


class IngestionPipeline:
    """Drive one document from ``UPLOADED`` (or a re-ingest) to ``DONE``/``FAILED``.

    Steps: fetch raw bytes, extract text into a scratch directory, chunk, embed
    every chunk in a single all-or-nothing call, then write the vectors. With
    ``reingest_policy="replace"`` the document's previous vectors are swapped
    out in the same transaction; ``"append"`` keeps them and adds duplicates.
    """

    def __init__(
        self,
        *,
        document_store: DocumentStore,
        metadata_store: MetadataStore,
        embedding_client: EmbeddingClient,
        vector_store: VectorStore,
        chunker: RecursiveTextChunker,
        reingest_policy: str = "replace",
    ) -> None:
        if embedding_client.dimensions != vector_store.dimensions:
            raise DimensionMismatch(
                expected=vector_store.dimensions,
                actual=embedding_client.dimensions,
            )
        if reingest_policy not in {"replace", "append"}:
            raise ValueError(f"unknown reingest_policy: {reingest_policy!r}")

        self._document_store = document_store
        self._metadata_store = metadata_store
        self._embedding_client = embedding_client
        self._vector_store = vector_store
        self._chunker = chunker
        self._reingest_policy = reingest_policy

    def ingest(self, document: Document) -> IngestionSummary:
        logger.info("Starting ingestion for document_id=%s file=%s", document.id, document.file_name)
        self._metadata_store.update_status(document.id, DocumentStatus.PROCESSING)

        try:
            summary = self._run(document)
        except Exception as exc:
            logger.error("Ingestion failed for document_id=%s: %s", document.id, exc)
            self._metadata_store.update_status(document.id, DocumentStatus.FAILED, error=str(exc))
            if isinstance(exc, (EmbeddingError, DimensionMismatch)):
                raise IngestionError(document.id, exc) from exc
            raise

        self._metadata_store.update_status(
            document.id,
            DocumentStatus.DONE,
            chunk_count=summary.chunk_count,
        )
        logger.info(
            "Ingestion done for document_id=%s chunks=%d",
            document.id,
            summary.chunk_count,
        )
        return summary

    def _run(self, document: Document) -> IngestionSummary:
        data = self._document_store.fetch(document.storage_path)

        with tempfile.TemporaryDirectory(prefix="docqa-ingest-") as work_dir:
            local_path = Path(work_dir) / Path(document.file_name).name
            local_path.write_bytes(data)
            pages = extract_pages(local_path)

        if not has_text(pages):
            logger.warning("No text extracted from document_id=%s; nothing to index", document.id)
            if self._reingest_policy == "replace":
                self._vector_store.replace_document(document.id, [], [])
            return IngestionSummary(document_id=document.id, chunk_count=0, first_chunk_preview=None)

        chunks = self._chunker.split_pages(pages, document_id=document.id, source=document.file_name)
        logger.info("Document %s split into %d chunk(s)", document.id, len(chunks))

        vectors = self._embedding_client.embed_texts([chunk.text for chunk in chunks])

        if self._reingest_policy == "replace":
            self._vector_store.replace_document(document.id, vectors, chunks)
        else:
            self._vector_store.add_vectors(vectors, chunks)

        return IngestionSummary(
            document_id=document.id,
            chunk_count=len(chunks),
            first_chunk_preview=preview_text(chunks[0].text, PREVIEW_CHARS),
        )
