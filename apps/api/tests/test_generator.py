import re

import pytest
from sqlalchemy.engine import Engine

from docqa.llm import ChatResult, GenerationError, Message
from docqa.services.rag.chunker import split_text
from docqa.services.rag.generator import RetrievalAugmentedGenerator
from docqa.services.rag.prompts import NO_ANSWER_MESSAGE
from docqa.services.rag.vector_store import SqlVectorStore

DIMENSIONS = 64


class KeywordEmbeddingClient:
    """Bag-of-words vectors over a vocabulary grown on first sight, so distinct words never collide."""

    def __init__(self, dimensions: int = DIMENSIONS) -> None:
        self.dimensions = dimensions
        self._vocabulary: dict[str, int] = {}

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        return [self.embed_query(text) for text in texts]

    def embed_query(self, text: str) -> list[float]:
        vector = [0.0] * self.dimensions
        for token in re.findall(r"[a-z0-9]+", text.lower()):
            slot = self._vocabulary.setdefault(token, len(self._vocabulary) % self.dimensions)
            vector[slot] += 1.0
        return vector


class RecordingLLMClient:
    def __init__(self, answer: str = "You can get a refund within 30 days.") -> None:
        self.answer = answer
        self.calls: list[list[Message]] = []

    def generate(self, messages: list[Message]) -> ChatResult:
        self.calls.append(messages)
        return ChatResult(answer=self.answer, model="fake-model", used_fallback=False)


class FailingLLMClient:
    def generate(self, messages: list[Message]) -> ChatResult:
        raise GenerationError("simulated failure")


HANDBOOK = (
    "Refund policy: refunds are available within 30 days of purchase.\n\n"
    "Office hours: open Monday to Friday.\n\n"
    "Shipping: parcels leave the warehouse every morning."
)


@pytest.fixture
def embedding_client() -> KeywordEmbeddingClient:
    return KeywordEmbeddingClient()


@pytest.fixture
def vector_store(engine: Engine, embedding_client: KeywordEmbeddingClient) -> SqlVectorStore:
    store = SqlVectorStore(engine, dimensions=DIMENSIONS)
    chunks = split_text(HANDBOOK, chunk_size=70, chunk_overlap=0, document_id="doc-1", source="handbook.txt")
    store.add_vectors(embedding_client.embed_texts([chunk.text for chunk in chunks]), chunks)
    return store


def _generator(
    embedding_client: KeywordEmbeddingClient,
    vector_store: SqlVectorStore,
    llm_client: object,
    **options: object,
) -> RetrievalAugmentedGenerator:
    return RetrievalAugmentedGenerator(
        embedding_client=embedding_client,
        vector_store=vector_store,
        llm_client=llm_client,  # type: ignore[arg-type]
        **options,  # type: ignore[arg-type]
    )


def test_answer_uses_top_chunks_as_context_and_cites_sources(
    embedding_client: KeywordEmbeddingClient,
    vector_store: SqlVectorStore,
) -> None:
    llm_client = RecordingLLMClient()
    generator = _generator(embedding_client, vector_store, llm_client, k=2)

    result = generator.answer("What is the refund policy?")

    assert result.text == "You can get a refund within 30 days."
    assert len(llm_client.calls) == 1
    system, user = llm_client.calls[0]
    assert system["role"] == "system"
    assert NO_ANSWER_MESSAGE in system["content"]
    assert "Refund policy: refunds are available within 30 days of purchase." in user["content"]
    assert "What is the refund policy?" in user["content"]
    assert result.sources[0].source == "handbook.txt"
    assert result.sources[0].preview.startswith("Refund policy")
    assert len(result.sources) <= 2


def test_llm_output_is_returned_verbatim(
    embedding_client: KeywordEmbeddingClient,
    vector_store: SqlVectorStore,
) -> None:
    generator = _generator(embedding_client, vector_store, RecordingLLMClient(answer="  spaced answer\n"))

    assert generator.answer("refund policy").text == "  spaced answer\n"


def test_unrelated_question_returns_no_answer_without_calling_llm(
    embedding_client: KeywordEmbeddingClient,
    vector_store: SqlVectorStore,
) -> None:
    llm_client = RecordingLLMClient()
    generator = _generator(embedding_client, vector_store, llm_client, min_score=0.2)

    result = generator.answer("Who painted the Sistine Chapel ceiling?")

    assert result.text == NO_ANSWER_MESSAGE
    assert result.sources == []
    assert llm_client.calls == []


def test_empty_store_returns_no_answer(engine: Engine, embedding_client: KeywordEmbeddingClient) -> None:
    store = SqlVectorStore(engine, dimensions=DIMENSIONS)
    generator = _generator(embedding_client, store, RecordingLLMClient())

    result = generator.answer("anything at all?")

    assert result.text == NO_ANSWER_MESSAGE
    assert result.sources == []


def test_blank_query_is_rejected(
    embedding_client: KeywordEmbeddingClient,
    vector_store: SqlVectorStore,
) -> None:
    generator = _generator(embedding_client, vector_store, RecordingLLMClient())

    with pytest.raises(ValueError):
        generator.answer("   ")


def test_generation_error_propagates(
    embedding_client: KeywordEmbeddingClient,
    vector_store: SqlVectorStore,
) -> None:
    generator = _generator(embedding_client, vector_store, FailingLLMClient())

    with pytest.raises(GenerationError, match="simulated failure"):
        generator.answer("refund policy")


def test_sources_are_distinct_and_previews_truncated(engine: Engine, embedding_client: KeywordEmbeddingClient) -> None:
    store = SqlVectorStore(engine, dimensions=DIMENSIONS)
    long_text = "refund " * 60
    chunks = split_text(long_text, chunk_size=500, chunk_overlap=0, document_id="doc-2", source="long.txt")
    vector = embedding_client.embed_query(chunks[0].text)
    store.add_vectors([vector, vector], [chunks[0], chunks[0]])
    generator = _generator(embedding_client, store, RecordingLLMClient())

    result = generator.answer("refund")

    assert len(result.sources) == 1
    assert result.sources[0].source == "long.txt"
    assert result.sources[0].preview == long_text[:200] + "..."
