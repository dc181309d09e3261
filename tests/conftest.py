"""Shared fixtures for RAG support engine tests."""

import re
import zlib
from dataclasses import dataclass, field
from typing import List, Optional

import pytest
from fastapi.testclient import TestClient

from api.main import create_app
from api.services import Services
from config.settings import Settings
from database.session import Database
from ingestion.chunking_strategies import ChunkingOptions
from ingestion.pipeline import IngestionPipeline
from retrieval.consumers import SqlConsumerRegistry, UsageTracker
from retrieval.embedder import EmbeddingBackend, EmbeddingBackendType, EmbeddingGateway
from retrieval.errors import BackendUnavailableError
from retrieval.service import ContextService
from retrieval.vector_store import VectorStore

FAKE_DIMENSION = 16


@dataclass
class Draft:
    """Minimal chunk draft for feeding the store directly."""
    text: str
    char_start: int = 0
    char_end: int = 0
    token_count: int = 1
    section_title: Optional[str] = None
    page_number: Optional[int] = None
    chunk_type: str = "body"
    tags: List[str] = field(default_factory=list)


def fake_vector(text: str, dimension: int = FAKE_DIMENSION) -> List[float]:
    """Deterministic hashed bag-of-words vector."""
    vector = [0.0] * dimension
    for word in re.findall(r"\w+", text.lower()):
        vector[zlib.crc32(word.encode()) % dimension] += 1.0
    return vector


class FakeEmbeddingBackend(EmbeddingBackend):
    """Embedding backend with no model behind it; can be told to fail."""

    def __init__(
        self,
        backend_type: EmbeddingBackendType = EmbeddingBackendType.LOCAL,
        model_id: str = "fake-model",
        dimension: int = FAKE_DIMENSION,
        fail_times: int = 0,
    ):
        super().__init__(model_id, dimension)
        self.backend_type = backend_type
        self.fail_times = fail_times
        self.calls = 0
        self.texts: List[str] = []

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        self.calls += 1
        if self.fail_times > 0:
            self.fail_times -= 1
            raise BackendUnavailableError("fake backend down", backend=self.backend_type.value)
        self.texts.extend(texts)
        return [fake_vector(t, self._dimension) for t in texts]


@pytest.fixture
async def database(tmp_path):
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
def backend():
    return FakeEmbeddingBackend()


@pytest.fixture
def gateway(backend):
    return EmbeddingGateway({EmbeddingBackendType.LOCAL: backend}, timeout_seconds=5, batch_size=4)


@pytest.fixture
def store(database):
    return VectorStore(database)


@pytest.fixture
def registry(database):
    return SqlConsumerRegistry(database)


@pytest.fixture
def usage(database):
    return UsageTracker(database)


@pytest.fixture
def pipeline(store, gateway):
    return IngestionPipeline(store, gateway, max_retries=2, backoff_seconds=0)


@pytest.fixture
def service(store, gateway, registry, usage):
    return ContextService(store, gateway, registry, usage=usage, top_k=10, default_threshold=0.5)


@pytest.fixture
def make_dataset(pipeline):
    """Create and ingest a dataset from raw text in one step."""

    async def _make(
        name: str,
        text: str,
        category: Optional[str] = None,
        options: Optional[ChunkingOptions] = None,
    ):
        dataset = await pipeline.create_dataset(name, source_category=category)
        await pipeline.ingest_text(dataset.id, text, options=options)
        return await pipeline.store.get_dataset(dataset.id)

    return _make


@pytest.fixture
def client(tmp_path):
    """TestClient over an app wired to a temporary database and the fake backend."""
    settings = Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'api.db'}",
        similarity_threshold=0.5,
    )
    gateway = EmbeddingGateway({EmbeddingBackendType.LOCAL: FakeEmbeddingBackend()}, timeout_seconds=5)
    services = Services(settings, Database(settings.database_url), gateway)
    with TestClient(create_app(settings, services)) as test_client:
        yield test_client
