from docqa.services.rag.chunker import InvalidConfig, RecursiveTextChunker, split_text
from docqa.services.rag.document_store import FetchError, LocalDocumentStore
from docqa.services.rag.embedding_client import EmbeddingError, OpenAICompatibleEmbeddingClient
from docqa.services.rag.extractor import ExtractionError, extract_pages
from docqa.services.rag.generator import RetrievalAugmentedGenerator
from docqa.services.rag.ingest import IngestionError, IngestionPipeline
from docqa.services.rag.types import (
    Chunk,
    DimensionMismatch,
    Document,
    DocumentStatus,
    IngestionSummary,
    RagAnswer,
    ScoredRecord,
    SourceReference,
    VectorRecord,
)
from docqa.services.rag.vector_store import LengthMismatch, SqlVectorStore

__all__ = [
    "Chunk",
    "DimensionMismatch",
    "Document",
    "DocumentStatus",
    "EmbeddingError",
    "ExtractionError",
    "FetchError",
    "IngestionError",
    "IngestionPipeline",
    "IngestionSummary",
    "InvalidConfig",
    "LengthMismatch",
    "LocalDocumentStore",
    "OpenAICompatibleEmbeddingClient",
    "RagAnswer",
    "RecursiveTextChunker",
    "RetrievalAugmentedGenerator",
    "ScoredRecord",
    "SourceReference",
    "SqlVectorStore",
    "VectorRecord",
    "extract_pages",
    "split_text",
]
