"""
Service wiring for the RAG Support Engine API.

Builds the database, embedding gateway, store, pipeline and context
service from settings. The container lives on app.state; routes reach it
through the get_services dependency.
"""

import logging
from pathlib import Path
from typing import Optional

from fastapi import Request

from config.settings import Settings, get_settings
from database.session import Database
from ingestion.chunking_strategies import ChunkingOptions
from ingestion.pipeline import IngestionPipeline
from ingestion.tagging import ContentTagger
from retrieval.consumers import SqlConsumerRegistry, UsageTracker
from retrieval.context_builder import ContextAssembler
from retrieval.embedder import EmbeddingCache, EmbeddingGateway, build_gateway
from retrieval.reranker import ContextualReranker, RerankWeights
from retrieval.service import ContextService
from retrieval.vector_store import VectorStore

logger = logging.getLogger(__name__)


class Services:
    """Container for all application services."""

    def __init__(
        self,
        settings: Settings,
        database: Database,
        gateway: EmbeddingGateway,
    ):
        self.settings = settings
        self.database = database
        self.gateway = gateway
        self.tagger = ContentTagger()
        self.store = VectorStore(database)
        self.registry = SqlConsumerRegistry(database)
        self.usage = UsageTracker(database)

        self.pipeline = IngestionPipeline(
            self.store,
            gateway,
            tagger=self.tagger,
            options=ChunkingOptions(
                chunk_size=settings.chunk_size,
                overlap=settings.chunk_overlap,
                strategy=settings.chunk_strategy,
            ),
            max_retries=settings.ingest_max_retries,
            backoff_seconds=settings.ingest_retry_backoff_seconds,
        )
        self.context_service = ContextService(
            self.store,
            gateway,
            self.registry,
            usage=self.usage,
            reranker=ContextualReranker(RerankWeights.from_settings(settings)),
            assembler=ContextAssembler(
                max_chunks=settings.max_context_chunks,
                max_tokens=settings.max_context_tokens,
            ),
            tagger=self.tagger,
            query_cache=EmbeddingCache(settings.query_cache_size),
            top_k=settings.top_k,
            default_threshold=settings.similarity_threshold,
        )
        logger.info(
            f"Services ready: backends={[b.value for b in gateway.available_backends]}"
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "Services":
        settings = settings or get_settings()
        if settings.is_sqlite:
            Path(settings.data_directory).mkdir(parents=True, exist_ok=True)
        database = Database(settings.database_url, echo=settings.database_echo)
        return cls(settings, database, build_gateway(settings))

    async def startup(self):
        await self.database.create_all()

    async def shutdown(self):
        await self.database.dispose()

    def health(self) -> dict:
        """Return health status of all services."""
        return {
            "database": self.database.url.split(":", 1)[0],
            "embedding_backends": [b.value for b in self.gateway.available_backends],
            "query_cache": self.context_service.query_cache.stats(),
        }


def get_services(request: Request) -> Services:
    """FastAPI dependency returning the app's services."""
    return request.app.state.services
