"""
Embedding Gateway for the RAG support engine.

Converts chunks and queries into vectors through one of two backends:
a local sentence-transformers model or the OpenAI embeddings API.
The backend is chosen per dataset at creation time and stored with it.
"""

import asyncio
import hashlib
import logging
import math
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

from .errors import BackendUnavailableError, DimensionMismatchError, RAGError, ValidationError

logger = logging.getLogger(__name__)


class EmbeddingBackendType(Enum):
    """Supported embedding backends."""
    LOCAL = "local"
    CLOUD = "cloud"


@dataclass(frozen=True)
class EmbeddingVector:
    """A vector tagged with the model that produced it."""
    values: Tuple[float, ...]
    model_id: str
    dimension: int

    @classmethod
    def from_values(cls, values: Sequence[float], model_id: str) -> "EmbeddingVector":
        floats = tuple(float(v) for v in values)
        return cls(values=floats, model_id=model_id, dimension=len(floats))


class EmbeddingCache:
    """
    In-memory LRU cache for embeddings.

    Key: MD5 hash of backend name plus the exact text.
    Value: EmbeddingVector.
    """

    def __init__(self, maxsize: int = 256):
        self.maxsize = maxsize
        self._cache: "OrderedDict[str, EmbeddingVector]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    def _make_key(self, backend: EmbeddingBackendType, text: str) -> str:
        raw = f"{backend.value}:{text}"
        return hashlib.md5(raw.encode()).hexdigest()

    def get(self, backend: EmbeddingBackendType, text: str) -> Optional[EmbeddingVector]:
        key = self._make_key(backend, text)
        if key in self._cache:
            self._cache.move_to_end(key)
            self.hits += 1
            return self._cache[key]
        self.misses += 1
        return None

    def put(self, backend: EmbeddingBackendType, text: str, vector: EmbeddingVector) -> None:
        if self.maxsize <= 0:
            return
        key = self._make_key(backend, text)
        if key in self._cache:
            self._cache.move_to_end(key)
        elif len(self._cache) >= self.maxsize:
            self._cache.popitem(last=False)
        self._cache[key] = vector

    def stats(self) -> Dict[str, int]:
        return {"size": len(self._cache), "hits": self.hits, "misses": self.misses}


class EmbeddingBackend(ABC):
    """One embedding capability: text in, fixed-length vector out."""

    backend_type: EmbeddingBackendType

    def __init__(self, model_id: str, dimension: Optional[int] = None):
        self.model_id = model_id
        self._dimension = dimension

    @property
    def dimension(self) -> Optional[int]:
        """Output dimension, known after the first call if not configured."""
        return self._dimension

    async def embed(self, text: str) -> Tuple[List[float], int, str]:
        """Embed one text. Returns (vector, dimension, model_id)."""
        vectors = await self.embed_batch([text])
        vector = vectors[0]
        return vector, len(vector), self.model_id

    @abstractmethod
    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Embed several texts, preserving input order."""
        pass

    def _remember_dimension(self, vectors: List[List[float]]) -> None:
        if vectors and self._dimension is None:
            self._dimension = len(vectors[0])


class LocalEmbeddingBackend(EmbeddingBackend):
    """
    Local sentence-transformers model.

    Inference is CPU/GPU bound and runs in a worker thread so the event loop
    stays responsive. Vectors are L2-normalized.
    """

    backend_type = EmbeddingBackendType.LOCAL

    def __init__(
        self,
        model_id: str = "all-MiniLM-L6-v2",
        device: Optional[str] = None,
        dimension: Optional[int] = None,
    ):
        super().__init__(model_id, dimension)
        self.device = device
        self._model = None
        self._load_lock = asyncio.Lock()

    def _load_model(self):
        from sentence_transformers import SentenceTransformer

        model = SentenceTransformer(self.model_id, device=self.device)
        logger.info(f"Local embedding model loaded: {self.model_id}")
        return model

    async def _get_model(self):
        async with self._load_lock:
            if self._model is None:
                try:
                    self._model = await asyncio.to_thread(self._load_model)
                except (OSError, RuntimeError) as e:
                    logger.error(f"Failed to load local embedding model {self.model_id}: {e}")
                    raise BackendUnavailableError(
                        f"Local embedding model unavailable: {e}", backend=self.backend_type.value
                    ) from e
                if self._dimension is None:
                    self._dimension = self._model.get_sentence_embedding_dimension()
        return self._model

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        model = await self._get_model()
        try:
            encoded = await asyncio.to_thread(
                model.encode, texts, normalize_embeddings=True, show_progress_bar=False
            )
        except (OSError, RuntimeError, MemoryError) as e:
            logger.error(f"Local embedding failed: {e}")
            raise BackendUnavailableError(
                f"Local embedding failed: {e}", backend=self.backend_type.value
            ) from e

        vectors = [[float(x) for x in row] for row in encoded]
        self._remember_dimension(vectors)
        logger.debug(f"Generated {len(vectors)} local embeddings, dim={len(vectors[0]) if vectors else 0}")
        return vectors


class CloudEmbeddingBackend(EmbeddingBackend):
    """OpenAI embeddings API with native batching."""

    backend_type = EmbeddingBackendType.CLOUD

    KNOWN_DIMENSIONS = {
        "text-embedding-3-small": 1536,
        "text-embedding-3-large": 3072,
        "text-embedding-ada-002": 1536,
    }

    def __init__(
        self,
        model_id: str = "text-embedding-3-small",
        api_key: Optional[str] = None,
        dimension: Optional[int] = None,
        client=None,
    ):
        super().__init__(model_id, dimension or self.KNOWN_DIMENSIONS.get(model_id))
        self.api_key = api_key
        self._client = client

    def _get_client(self):
        if self._client is None:
            if not self.api_key:
                raise RAGError("OPENAI_API_KEY not set, cloud embedding backend disabled")
            from openai import OpenAI

            self._client = OpenAI(api_key=self.api_key)
            logger.info("OpenAI embedding client initialized")
        return self._client

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        import openai

        client = self._get_client()
        try:
            response = await asyncio.to_thread(
                client.embeddings.create, model=self.model_id, input=texts
            )
        except (
            openai.APIConnectionError,
            openai.APITimeoutError,
            openai.RateLimitError,
            openai.InternalServerError,
        ) as e:
            logger.warning(f"OpenAI embedding request failed: {e}")
            raise BackendUnavailableError(
                f"Cloud embedding backend unavailable: {e}", backend=self.backend_type.value
            ) from e

        ordered = sorted(response.data, key=lambda item: item.index)
        vectors = [list(item.embedding) for item in ordered]
        self._remember_dimension(vectors)
        logger.debug(f"Generated {len(vectors)} OpenAI embeddings")
        return vectors


def _check_text(text: str, position: Optional[int] = None) -> None:
    if not isinstance(text, str) or not text.strip():
        details = {"position": position} if position is not None else None
        raise ValidationError("Cannot embed empty text", field="text", details=details)


class EmbeddingGateway:
    """
    Single entry point for embeddings.

    Validates input, applies the call timeout and checks dimensional
    consistency. Never substitutes zero vectors for bad input.
    """

    def __init__(
        self,
        backends: Mapping[EmbeddingBackendType, EmbeddingBackend],
        timeout_seconds: float = 30.0,
        batch_size: int = 16,
    ):
        self._backends = dict(backends)
        self.timeout_seconds = timeout_seconds
        self.batch_size = batch_size

    @property
    def available_backends(self) -> List[EmbeddingBackendType]:
        return list(self._backends)

    def backend(self, backend: Union[EmbeddingBackendType, str]) -> EmbeddingBackend:
        backend_type = EmbeddingBackendType(backend)
        try:
            return self._backends[backend_type]
        except KeyError:
            raise ValidationError(
                f"Embedding backend not configured: {backend_type.value}", field="backend"
            ) from None

    async def _call(self, impl: EmbeddingBackend, texts: List[str]) -> List[List[float]]:
        try:
            return await asyncio.wait_for(impl.embed_batch(texts), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            logger.warning(
                f"{impl.backend_type.value} embedding timed out after {self.timeout_seconds}s"
            )
            raise BackendUnavailableError(
                f"Embedding call timed out after {self.timeout_seconds}s",
                backend=impl.backend_type.value,
            ) from e

    def _to_vectors(self, impl: EmbeddingBackend, raw: List[List[float]], expected_count: int) -> List[EmbeddingVector]:
        if len(raw) != expected_count:
            raise BackendUnavailableError(
                f"Backend returned {len(raw)} vectors for {expected_count} texts",
                backend=impl.backend_type.value,
            )
        vectors = [EmbeddingVector.from_values(values, impl.model_id) for values in raw]
        expected = impl.dimension or (vectors[0].dimension if vectors else 0)
        for vector in vectors:
            if vector.dimension == 0 or any(math.isnan(v) for v in vector.values):
                raise BackendUnavailableError(
                    "Backend returned an empty or NaN vector", backend=impl.backend_type.value
                )
            if vector.dimension != expected:
                raise DimensionMismatchError(expected, vector.dimension)
        return vectors

    async def embed(
        self, text: str, backend: Union[EmbeddingBackendType, str]
    ) -> EmbeddingVector:
        """
        Embed a single text.

        Args:
            text: Input text (must not be blank)
            backend: Backend to use

        Returns:
            EmbeddingVector
        """
        _check_text(text)
        impl = self.backend(backend)
        raw = await self._call(impl, [text])
        return self._to_vectors(impl, raw, 1)[0]

    async def embed_batch(
        self, texts: Sequence[str], backend: Union[EmbeddingBackendType, str]
    ) -> List[EmbeddingVector]:
        """
        Embed several texts, preserving input order.

        Args:
            texts: Input texts (none may be blank)
            backend: Backend to use

        Returns:
            List of EmbeddingVector, one per input text
        """
        texts = list(texts)
        if not texts:
            return []
        for position, text in enumerate(texts):
            _check_text(text, position)

        impl = self.backend(backend)
        vectors: List[EmbeddingVector] = []
        for i in range(0, len(texts), self.batch_size):
            batch = texts[i:i + self.batch_size]
            raw = await self._call(impl, batch)
            vectors.extend(self._to_vectors(impl, raw, len(batch)))

        dimensions = {v.dimension for v in vectors}
        if len(dimensions) > 1:
            first = vectors[0].dimension
            other = next(d for d in dimensions if d != first)
            raise DimensionMismatchError(first, other)
        return vectors

    async def health_check(self, backend: Union[EmbeddingBackendType, str]) -> bool:
        """Check if a backend can produce an embedding."""
        try:
            vector = await self.embed("health check", backend)
            return vector.dimension > 0
        except Exception as e:
            logger.warning(f"Embedding health check failed: {e}")
            return False


def build_gateway(settings) -> EmbeddingGateway:
    """
    Construct the gateway from settings.

    The local backend is always configured; the cloud backend only when an
    OpenAI API key is present.
    """
    backends: Dict[EmbeddingBackendType, EmbeddingBackend] = {
        EmbeddingBackendType.LOCAL: LocalEmbeddingBackend(
            model_id=settings.local_embed_model,
            device=settings.local_embed_device,
        ),
    }
    if settings.openai_api_key:
        backends[EmbeddingBackendType.CLOUD] = CloudEmbeddingBackend(
            model_id=settings.openai_embed_model,
            api_key=settings.openai_api_key,
        )
    else:
        logger.info("OPENAI_API_KEY not set, cloud embedding backend disabled")

    return EmbeddingGateway(
        backends,
        timeout_seconds=settings.embedding_timeout_seconds,
        batch_size=settings.embedding_batch_size,
    )
