from __future__ import annotations

from pathlib import Path

from sqlalchemy.engine import Engine

from docqa.config import Settings
from docqa.llm import LLMClient, OpenAICompatibleChatClient
from docqa.services.documents import SqlMetadataStore
from docqa.services.rag.chunker import RecursiveTextChunker
from docqa.services.rag.document_store import LocalDocumentStore
from docqa.services.rag.embedding_client import EmbeddingClient, OpenAICompatibleEmbeddingClient
from docqa.services.rag.generator import RetrievalAugmentedGenerator
from docqa.services.rag.ingest import IngestionPipeline
from docqa.services.rag.vector_store import SqlVectorStore


def build_embedding_client(settings: Settings) -> OpenAICompatibleEmbeddingClient:
    return OpenAICompatibleEmbeddingClient(
        base_url=settings.openrouter_base_url,
        model=settings.embedding_model,
        dimensions=settings.embedding_dim,
        api_key=settings.openrouter_api_key,
        timeout_seconds=settings.model_timeout_seconds,
        max_concurrency=settings.embedding_max_concurrency,
        batch_size=settings.embedding_batch_size,
        max_retries=settings.embedding_max_retries,
        retry_base_seconds=settings.embedding_retry_base_seconds,
        retry_max_seconds=settings.embedding_retry_max_seconds,
    )


def build_llm_client(settings: Settings) -> OpenAICompatibleChatClient:
    return OpenAICompatibleChatClient(
        base_url=settings.openrouter_base_url,
        default_model=settings.llm_model,
        fallback_model=settings.llm_fallback_model,
        api_key=settings.openrouter_api_key,
        temperature=settings.llm_temperature,
        timeout_seconds=settings.model_timeout_seconds,
        max_retries=settings.llm_max_retries,
    )


def build_document_store(settings: Settings) -> LocalDocumentStore:
    return LocalDocumentStore(Path(settings.storage_dir))


def build_vector_store(engine: Engine, settings: Settings) -> SqlVectorStore:
    return SqlVectorStore(engine, dimensions=settings.embedding_dim)


def build_ingestion_pipeline(
    engine: Engine,
    settings: Settings,
    *,
    embedding_client: EmbeddingClient | None = None,
) -> IngestionPipeline:
    return IngestionPipeline(
        document_store=build_document_store(settings),
        metadata_store=SqlMetadataStore(engine),
        embedding_client=embedding_client or build_embedding_client(settings),
        vector_store=build_vector_store(engine, settings),
        chunker=RecursiveTextChunker(
            chunk_size=settings.rag_chunk_size,
            chunk_overlap=settings.rag_chunk_overlap,
        ),
        reingest_policy=settings.rag_reingest_policy,
    )


def build_generator(
    engine: Engine,
    settings: Settings,
    *,
    embedding_client: EmbeddingClient,
    llm_client: LLMClient,
) -> RetrievalAugmentedGenerator:
    return RetrievalAugmentedGenerator(
        embedding_client=embedding_client,
        vector_store=build_vector_store(engine, settings),
        llm_client=llm_client,
        k=settings.rag_retrieval_k,
        min_score=settings.rag_min_score,
        preview_chars=settings.rag_preview_chars,
    )
