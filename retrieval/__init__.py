"""
Retrieval Module for the RAG support engine.

This module provides the query side of the pipeline:
- Embedding gateway (local sentence-transformers / OpenAI)
- Vector store over the database layer
- Cosine similarity search
- Contextual reranking and context assembly
- ContextService.retrieve_context, the produced API
"""

from .errors import (
    RAGError,
    ValidationError,
    BackendUnavailableError,
    DimensionMismatchError,
    NotFoundError,
)
from .embedder import EmbeddingGateway, EmbeddingBackendType, EmbeddingVector
from .vector_store import VectorStore, ChunkRecord
from .retriever import RetrievalEngine, RetrievalResult, cosine_similarity
from .reranker import ContextualReranker, RerankContext, RerankWeights
from .context_builder import ContextAssembler, ContextBundle, ContextItem
from .consumers import AccessLevel, ConsumerLink, SqlConsumerRegistry, UsageTracker
from .service import ContextService

__all__ = [
    "RAGError",
    "ValidationError",
    "BackendUnavailableError",
    "DimensionMismatchError",
    "NotFoundError",
    "EmbeddingGateway",
    "EmbeddingBackendType",
    "EmbeddingVector",
    "VectorStore",
    "ChunkRecord",
    "RetrievalEngine",
    "RetrievalResult",
    "cosine_similarity",
    "ContextualReranker",
    "RerankContext",
    "RerankWeights",
    "ContextAssembler",
    "ContextBundle",
    "ContextItem",
    "AccessLevel",
    "ConsumerLink",
    "SqlConsumerRegistry",
    "UsageTracker",
    "ContextService",
]
