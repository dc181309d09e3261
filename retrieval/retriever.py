"""
Retrieval Engine for the RAG support engine.

Exact cosine scoring of a query vector against every chunk vector in the
scoped datasets. The linear scan sits behind search(); an approximate
nearest-neighbour index can replace it without touching callers.
"""

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .consumers import ConsumerLink
from .errors import DimensionMismatchError, ValidationError
from .vector_store import ChunkRecord, VectorStore

logger = logging.getLogger(__name__)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity of two equal-length vectors.

    Zero-norm vectors score 0. The result is clamped to [-1, 1] to absorb
    floating point drift.
    """
    if len(a) != len(b):
        raise DimensionMismatchError(len(a), len(b))

    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y

    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    similarity = dot / math.sqrt(norm_a * norm_b)
    return max(-1.0, min(1.0, similarity))


@dataclass(frozen=True)
class RetrievalResult:
    """A scored chunk with the link context used to produce its score."""
    chunk: ChunkRecord
    similarity: float
    score: float
    link: Optional[ConsumerLink] = None
    boosts: Tuple[str, ...] = ()

    @property
    def dataset_id(self) -> str:
        return self.chunk.dataset_id

    @property
    def ordinal(self) -> int:
        return self.chunk.ordinal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunk": self.chunk.to_dict(),
            "similarity": round(self.similarity, 6),
            "score": round(self.score, 6),
            "link": self.link.to_dict() if self.link else None,
            "boosts": list(self.boosts),
        }


def similarity_order(result: RetrievalResult) -> Tuple[float, str, int]:
    """Descending similarity, then ascending dataset id and chunk ordinal."""
    return (-result.similarity, result.dataset_id, result.ordinal)


def merge_results(result_lists: Iterable[Sequence[RetrievalResult]], top_k: int) -> List[RetrievalResult]:
    """Merge already-ranked result lists under the engine ordering and cut to top_k."""
    merged = [result for results in result_lists for result in results]
    merged.sort(key=similarity_order)
    return merged[:max(0, top_k)]


class RetrievalEngine:
    """Similarity search over a VectorStore."""

    def __init__(self, store: VectorStore):
        self.store = store

    async def search(
        self,
        query_vector: Sequence[float],
        dataset_ids: Iterable[str],
        threshold: float,
        top_k: int,
    ) -> List[RetrievalResult]:
        """
        Rank in-scope chunks by cosine similarity to the query vector.

        Args:
            query_vector: Query embedding
            dataset_ids: Scope; unknown or not-ready ids contribute nothing
            threshold: Minimum similarity (inclusive)
            top_k: Maximum number of results

        Returns:
            At most top_k results, best first
        """
        if top_k < 0:
            raise ValidationError("top_k must not be negative", field="top_k")
        scope = list(dataset_ids)
        if top_k == 0 or not scope:
            return []

        candidates: List[RetrievalResult] = []
        scanned = 0
        async for chunk, vector in self.store.query_scope(scope):
            scanned += 1
            similarity = cosine_similarity(query_vector, vector)
            if similarity < threshold:
                continue
            candidates.append(RetrievalResult(chunk=chunk, similarity=similarity, score=similarity))

        candidates.sort(key=similarity_order)
        results = candidates[:top_k]
        logger.debug(
            f"Scanned {scanned} chunks in {len(scope)} datasets: "
            f"{len(candidates)} above threshold {threshold}, returning {len(results)}"
        )
        return results
