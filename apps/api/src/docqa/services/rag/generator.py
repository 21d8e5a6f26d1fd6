from __future__ import annotations

import logging

from docqa.llm import LLMClient
from docqa.services.rag.embedding_client import EmbeddingClient
from docqa.services.rag.prompts import NO_ANSWER_MESSAGE, build_rag_messages, format_context
from docqa.services.rag.types import (
    RagAnswer,
    ScoredRecord,
    SourceReference,
    preview_text,
)
from docqa.services.rag.vector_store import VectorStore

logger = logging.getLogger(__name__)


class RetrievalAugmentedGenerator:
    """Answer a question from the top-k stored chunks.

    Retrieval hits scoring below ``min_score`` are ignored. When nothing is
    left the fixed no-answer message is returned without calling the model.
    """

    def __init__(
        self,
        *,
        embedding_client: EmbeddingClient,
        vector_store: VectorStore,
        llm_client: LLMClient,
        k: int = 4,
        min_score: float = 0.0,
        preview_chars: int = 200,
    ) -> None:
        self._embedding_client = embedding_client
        self._vector_store = vector_store
        self._llm_client = llm_client
        self.k = k
        self.min_score = min_score
        self.preview_chars = preview_chars

    def retrieve(self, query: str) -> list[ScoredRecord]:
        query_vector = self._embedding_client.embed_query(query)
        hits = self._vector_store.similarity_search(query_vector, self.k)
        return [hit for hit in hits if hit.score >= self.min_score]

    def answer(self, query: str) -> RagAnswer:
        question = query.strip()
        if not question:
            raise ValueError("query must not be empty")

        hits = self.retrieve(question)
        logger.info("Retrieved %d chunk(s) for query %r", len(hits), question[:80])
        if not hits:
            return RagAnswer(text=NO_ANSWER_MESSAGE, sources=[])

        context = format_context([hit.record.content for hit in hits])
        result = self._llm_client.generate(build_rag_messages(question, context))

        return RagAnswer(text=result.answer, sources=self._sources(hits))

    def _sources(self, hits: list[ScoredRecord]) -> list[SourceReference]:
        sources: list[SourceReference] = []
        seen: set[tuple[str, str]] = set()
        for hit in hits:
            reference = SourceReference(
                source=hit.record.source,
                preview=preview_text(hit.record.content, self.preview_chars),
            )
            key = (reference.source, reference.preview)
            if key in seen:
                continue
            seen.add(key)
            sources.append(reference)
        return sources
