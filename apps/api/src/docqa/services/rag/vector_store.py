from __future__ import annotations

from array import array
from collections.abc import Sequence
import logging
import math
from threading import Lock
from typing import Any, Protocol
from uuid import uuid4

from sqlalchemy import delete, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from docqa.models import VectorRow
from docqa.services.rag.types import Chunk, DimensionMismatch, ScoredRecord, VectorRecord

logger = logging.getLogger(__name__)


class LengthMismatch(ValueError):
    pass


class VectorStore(Protocol):
    @property
    def dimensions(self) -> int: ...

    def add_vectors(self, vectors: Sequence[Sequence[float]], chunks: Sequence[Chunk]) -> None: ...

    def replace_document(
        self,
        document_id: str,
        vectors: Sequence[Sequence[float]],
        chunks: Sequence[Chunk],
    ) -> None: ...

    def similarity_search(self, query_vector: Sequence[float], k: int) -> list[ScoredRecord]: ...


def _encode_embedding(values: Sequence[float]) -> bytes:
    vector = array("f", values)
    return vector.tobytes()


def _decode_embedding(blob: bytes) -> list[float]:
    vector = array("f")
    vector.frombytes(blob)
    return vector.tolist()


def _cosine(a: Sequence[float], b: Sequence[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


class SqlVectorStore:
    """Append-only vector table with exact cosine top-k search.

    Rows are scored in insertion order and sorted stably, so equal scores keep
    the order in which the records were written.
    """

    def __init__(self, engine: Engine, *, dimensions: int) -> None:
        if dimensions <= 0:
            raise ValueError("dimensions must be > 0")
        self._engine = engine
        self._dimensions = dimensions
        self._write_lock = Lock()

    @property
    def dimensions(self) -> int:
        return self._dimensions

    def add_vectors(self, vectors: Sequence[Sequence[float]], chunks: Sequence[Chunk]) -> None:
        rows = self._build_rows(vectors, chunks)
        if not rows:
            return

        with self._write_lock, Session(self._engine) as session, session.begin():
            session.add_all(rows)
        logger.info("Stored %d vector record(s)", len(rows))

    def replace_document(
        self,
        document_id: str,
        vectors: Sequence[Sequence[float]],
        chunks: Sequence[Chunk],
    ) -> None:
        rows = self._build_rows(vectors, chunks)
        foreign = [row.document_id for row in rows if row.document_id != document_id]
        if foreign:
            raise ValueError(
                f"replace_document({document_id!r}) received chunks of document {foreign[0]!r}"
            )

        with self._write_lock, Session(self._engine) as session, session.begin():
            removed = session.execute(
                delete(VectorRow).where(VectorRow.document_id == document_id)
            ).rowcount
            session.add_all(rows)
        logger.info(
            "Replaced vectors for document_id=%s removed=%d stored=%d",
            document_id,
            removed or 0,
            len(rows),
        )

    def delete_document(self, document_id: str) -> int:
        with self._write_lock, Session(self._engine) as session, session.begin():
            removed = session.execute(
                delete(VectorRow).where(VectorRow.document_id == document_id)
            ).rowcount
        return int(removed or 0)

    def count(self, document_id: str | None = None) -> int:
        stmt = select(func.count()).select_from(VectorRow)
        if document_id is not None:
            stmt = stmt.where(VectorRow.document_id == document_id)
        with Session(self._engine) as session:
            return int(session.scalar(stmt) or 0)

    def similarity_search(self, query_vector: Sequence[float], k: int) -> list[ScoredRecord]:
        if k <= 0:
            return []
        if len(query_vector) != self._dimensions:
            raise DimensionMismatch(expected=self._dimensions, actual=len(query_vector))

        with Session(self._engine) as session:
            rows = session.execute(
                select(
                    VectorRow.id,
                    VectorRow.content,
                    VectorRow.metadata_json,
                    VectorRow.embedding,
                    VectorRow.embedding_dim,
                ).order_by(VectorRow.seq)
            ).all()

        hits: list[ScoredRecord] = []
        for record_id, content, metadata, embedding_blob, embedding_dim in rows:
            embedding = _decode_embedding(embedding_blob)
            if len(embedding) != embedding_dim or embedding_dim != self._dimensions:
                logger.warning("Skipping vector record id=%s with dimension %d", record_id, embedding_dim)
                continue
            record = VectorRecord(
                id=record_id,
                embedding=embedding,
                content=content,
                metadata=dict(metadata or {}),
            )
            hits.append(ScoredRecord(record=record, score=_cosine(query_vector, embedding)))

        hits.sort(key=lambda hit: hit.score, reverse=True)
        return hits[:k]

    def match_documents(
        self, query_embedding: Sequence[float], match_count: int
    ) -> list[dict[str, Any]]:
        return [
            {
                "content": hit.record.content,
                "metadata": hit.record.metadata,
                "score": hit.score,
            }
            for hit in self.similarity_search(query_embedding, match_count)
        ]

    def _build_rows(
        self, vectors: Sequence[Sequence[float]], chunks: Sequence[Chunk]
    ) -> list[VectorRow]:
        if len(vectors) != len(chunks):
            raise LengthMismatch(
                f"vectors and chunks must have the same length ({len(vectors)} != {len(chunks)})"
            )

        rows: list[VectorRow] = []
        for vector, chunk in zip(vectors, chunks):
            if len(vector) != self._dimensions:
                raise DimensionMismatch(expected=self._dimensions, actual=len(vector))
            rows.append(
                VectorRow(
                    id=uuid4().hex,
                    document_id=chunk.document_id,
                    content=chunk.text,
                    metadata_json=chunk.metadata(),
                    embedding=_encode_embedding(vector),
                    embedding_dim=len(vector),
                )
            )
        return rows
