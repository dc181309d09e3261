"""
Contextual reranker for the RAG support engine.

Adjusts base similarity with consumer signals: specialty match, overlap
with the query's intent tags, recent use and the consumer's link weight.
Reranking is a pure function of the results and the RerankContext.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .consumers import ConsumerLink
from .retriever import RetrievalResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RerankWeights:
    """Boost factors; tunable through settings."""
    specialty_boost: float = 1.2
    tag_overlap_factor: float = 0.3
    recency_boost: float = 1.1
    recency_window: timedelta = timedelta(hours=24)

    @classmethod
    def from_settings(cls, settings) -> "RerankWeights":
        return cls(
            specialty_boost=settings.rerank_specialty_boost,
            tag_overlap_factor=settings.rerank_tag_overlap_factor,
            recency_boost=settings.rerank_recency_boost,
            recency_window=timedelta(hours=settings.rerank_recency_window_hours),
        )


@dataclass
class RerankContext:
    """Everything the reranker may look at besides the results."""
    consumer_id: Optional[str] = None
    specialty_tags: Set[str] = field(default_factory=set)
    intent_tags: Set[str] = field(default_factory=set)
    links: Dict[str, ConsumerLink] = field(default_factory=dict)  # by dataset id
    chunk_last_used: Dict[str, datetime] = field(default_factory=dict)  # by chunk id
    now: datetime = field(default_factory=datetime.utcnow)

    @classmethod
    def for_links(cls, links: Iterable[ConsumerLink], **kwargs) -> "RerankContext":
        return cls(links={link.dataset_id: link for link in links}, **kwargs)


def rerank_order(result: RetrievalResult) -> Tuple[float, float, str, int]:
    """Descending final score; equal scores keep the similarity order."""
    return (-result.score, -result.similarity, result.dataset_id, result.ordinal)


class ContextualReranker:
    """
    Rule-based reranker.

    Applied per result, in order:
    1. score = base similarity
    2. x specialty_boost if chunk tags meet the consumer's specialty tags
    3. x (1 + overlap_ratio * tag_overlap_factor) for intent tag overlap
    4. x recency_boost if the consumer used the chunk within the window
    5. x the consumer link weight
    """

    def __init__(self, weights: Optional[RerankWeights] = None):
        self.weights = weights or RerankWeights()

    def score(self, result: RetrievalResult, context: RerankContext) -> Tuple[float, Tuple[str, ...]]:
        """Adjusted score of one result and the boosts that produced it."""
        w = self.weights
        chunk_tags = set(result.chunk.tags)
        score = result.similarity
        reasons: List[str] = []

        if context.specialty_tags and chunk_tags & context.specialty_tags:
            score *= w.specialty_boost
            reasons.append("specialty")

        overlap = len(chunk_tags & context.intent_tags)
        ratio = overlap / max(1, len(context.intent_tags))
        score *= (1 + ratio * w.tag_overlap_factor)
        if overlap:
            reasons.append(f"overlap:{ratio:.2f}")

        last_used = context.chunk_last_used.get(result.chunk.chunk_id)
        if last_used is not None and timedelta(0) <= context.now - last_used <= w.recency_window:
            score *= w.recency_boost
            reasons.append("recent")

        link = result.link or context.links.get(result.dataset_id)
        if link is not None:
            score *= link.weight
            if link.weight != 1.0:
                reasons.append(f"weight:{link.weight}")

        return score, tuple(reasons)

    def rerank(self, results: Iterable[RetrievalResult], context: RerankContext) -> List[RetrievalResult]:
        """
        Rescore and reorder results.

        Args:
            results: Results from the retrieval engine
            context: Consumer signals

        Returns:
            New results (same count) sorted by adjusted score
        """
        reranked = []
        for result in results:
            score, reasons = self.score(result, context)
            link = result.link or context.links.get(result.dataset_id)
            reranked.append(replace(result, score=score, link=link, boosts=reasons))

        reranked.sort(key=rerank_order)
        logger.debug(f"Reranked {len(reranked)} results for consumer {context.consumer_id}")
        return reranked
