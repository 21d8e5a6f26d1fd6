from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class DimensionMismatch(ValueError):
    """A vector does not have the dimension the embedding model produces."""

    def __init__(self, *, expected: int, actual: int) -> None:
        super().__init__(f"expected {expected}-dimensional vector, got {actual}")
        self.expected = expected
        self.actual = actual


class DocumentStatus(str, Enum):
    PENDING = "PENDING"
    UPLOADED = "UPLOADED"
    PROCESSING = "PROCESSING"
    DONE = "DONE"
    FAILED = "FAILED"


# Target status -> statuses a document may be in before the transition.
ALLOWED_TRANSITIONS: dict[DocumentStatus, frozenset[DocumentStatus]] = {
    DocumentStatus.PENDING: frozenset(),
    DocumentStatus.UPLOADED: frozenset({DocumentStatus.PENDING}),
    DocumentStatus.PROCESSING: frozenset(
        {DocumentStatus.UPLOADED, DocumentStatus.DONE, DocumentStatus.FAILED}
    ),
    DocumentStatus.DONE: frozenset({DocumentStatus.PROCESSING}),
    DocumentStatus.FAILED: frozenset({DocumentStatus.PENDING, DocumentStatus.PROCESSING}),
}


@dataclass(frozen=True)
class Document:
    id: str
    file_name: str
    storage_path: str
    status: DocumentStatus
    created_at: datetime | None = None
    updated_at: datetime | None = None
    error: str | None = None
    chunk_count: int | None = None


@dataclass(frozen=True)
class ExtractedPage:
    text: str
    page: int | None = None


@dataclass(frozen=True)
class Chunk:
    text: str
    document_id: str
    source: str
    position: int
    start_index: int = 0
    page: int | None = None

    def __post_init__(self) -> None:
        if not self.document_id:
            raise ValueError("chunk document_id must not be empty")
        if not self.source:
            raise ValueError("chunk source must not be empty")

    def metadata(self) -> dict[str, Any]:
        metadata: dict[str, Any] = {
            "documentId": self.document_id,
            "source": self.source,
            "position": self.position,
            "startIndex": self.start_index,
        }
        if self.page is not None:
            metadata["page"] = self.page
        return metadata


@dataclass(frozen=True)
class VectorRecord:
    id: str
    embedding: list[float]
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def document_id(self) -> str:
        return str(self.metadata.get("documentId", ""))

    @property
    def source(self) -> str:
        return str(self.metadata.get("source", "unknown"))


@dataclass(frozen=True)
class ScoredRecord:
    record: VectorRecord
    score: float


@dataclass(frozen=True)
class IngestionSummary:
    document_id: str
    chunk_count: int
    first_chunk_preview: str | None

    def as_payload(self) -> dict[str, Any]:
        return {
            "documentId": self.document_id,
            "chunkCount": self.chunk_count,
            "firstChunkPreview": self.first_chunk_preview,
        }


@dataclass(frozen=True)
class SourceReference:
    source: str
    preview: str


@dataclass(frozen=True)
class RagAnswer:
    text: str
    sources: list[SourceReference]


def preview_text(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."
