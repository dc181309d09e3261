"""
Context retrieval service: the single entry point used by the generation layer.

Sequences Embedding Gateway -> Retrieval Engine -> Reranker -> Context
Assembler for one consumer and one query. Retrieval is read-only; usage is
recorded through a separate call once the caller has actually used a bundle.
"""

import logging
from collections import defaultdict
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Set

from database.models import Dataset
from ingestion.tagging import ContentTagger

from .consumers import ConsumerRegistry, UsageTracker
from .context_builder import ContextAssembler, ContextBundle
from .embedder import EmbeddingBackendType, EmbeddingCache, EmbeddingGateway, EmbeddingVector
from .errors import ValidationError
from .reranker import ContextualReranker, RerankContext
from .retriever import RetrievalEngine, RetrievalResult, merge_results
from .vector_store import VectorStore

logger = logging.getLogger(__name__)


class ContextService:
    """
    Produces attributed context bundles for consumers.

    Scope is derived from the consumer's enabled links. Datasets are grouped
    by embedding backend so each group is searched with a query vector from
    the same backend that embedded its chunks.
    """

    def __init__(
        self,
        store: VectorStore,
        gateway: EmbeddingGateway,
        registry: ConsumerRegistry,
        usage: Optional[UsageTracker] = None,
        engine: Optional[RetrievalEngine] = None,
        reranker: Optional[ContextualReranker] = None,
        assembler: Optional[ContextAssembler] = None,
        tagger: Optional[ContentTagger] = None,
        query_cache: Optional[EmbeddingCache] = None,
        top_k: int = 10,
        default_threshold: float = 0.6,
    ):
        self.store = store
        self.gateway = gateway
        self.registry = registry
        self.usage = usage
        self.engine = engine or RetrievalEngine(store)
        self.reranker = reranker or ContextualReranker()
        self.assembler = assembler or ContextAssembler()
        self.tagger = tagger or ContentTagger()
        self.query_cache = query_cache if query_cache is not None else EmbeddingCache()
        self.top_k = top_k
        self.default_threshold = default_threshold

    async def _query_vector(self, query_text: str, backend: EmbeddingBackendType) -> EmbeddingVector:
        vector = self.query_cache.get(backend, query_text)
        if vector is None:
            vector = await self.gateway.embed(query_text, backend)
            self.query_cache.put(backend, query_text, vector)
        return vector

    async def _search_datasets(
        self,
        query_text: str,
        datasets: Sequence[Dataset],
        threshold: float,
        top_k: int,
    ) -> List[RetrievalResult]:
        groups: Dict[EmbeddingBackendType, List[Dataset]] = defaultdict(list)
        for dataset in datasets:
            groups[EmbeddingBackendType(dataset.embedding_backend)].append(dataset)

        result_lists = []
        for backend, group in sorted(groups.items(), key=lambda item: item[0].value):
            if backend not in self.gateway.available_backends:
                logger.warning(
                    f"Skipping {len(group)} datasets: {backend.value} embedding backend not configured"
                )
                continue

            vector = await self._query_vector(query_text, backend)
            compatible = []
            for dataset in group:
                if not dataset.chunk_count:
                    continue
                if dataset.embedding_dimension != vector.dimension or (
                    dataset.embedding_model and dataset.embedding_model != vector.model_id
                ):
                    logger.warning(
                        f"Skipping dataset {dataset.id}: stored {dataset.embedding_model} "
                        f"dim={dataset.embedding_dimension}, query {vector.model_id} dim={vector.dimension}"
                    )
                    continue
                compatible.append(dataset.id)

            if compatible:
                result_lists.append(
                    await self.engine.search(vector.values, compatible, threshold, top_k)
                )

        return merge_results(result_lists, top_k)

    async def search(
        self,
        query_text: str,
        dataset_ids: Iterable[str],
        threshold: Optional[float] = None,
        top_k: Optional[int] = None,
    ) -> List[RetrievalResult]:
        """Raw similarity search over explicit datasets, without consumer signals."""
        _check_query(query_text)
        threshold = self.default_threshold if threshold is None else threshold
        top_k = self.top_k if top_k is None else top_k
        datasets = await self.store.get_datasets(dataset_ids, ready_only=True)
        return await self._search_datasets(query_text, datasets, threshold, top_k)

    async def retrieve_context(
        self,
        consumer_id: str,
        query_text: str,
        max_chunks: Optional[int] = None,
        max_tokens: Optional[int] = None,
        threshold: Optional[float] = None,
        intent_tags: Optional[Iterable[str]] = None,
        now: Optional[datetime] = None,
    ) -> ContextBundle:
        """
        Retrieve an attributed context bundle for a consumer's query.

        Args:
            consumer_id: Consumer whose enabled links define the scope
            query_text: Query to embed
            max_chunks: Bound on bundle items
            max_tokens: Bound on cumulative bundle tokens
            threshold: Minimum base similarity
            intent_tags: Extra query-intent tags added to the detected ones
            now: Reference time for the recency rule

        Returns:
            ContextBundle; context_used is False when nothing qualified
        """
        _check_query(query_text)
        threshold = self.default_threshold if threshold is None else threshold

        links = [link for link in await self.registry.get_links(consumer_id) if link.enabled]
        datasets = await self.store.get_datasets([link.dataset_id for link in links], ready_only=True)
        if not datasets:
            logger.debug(f"Consumer {consumer_id} has no ready datasets in scope")
            return ContextBundle.empty(query=query_text, consumer_id=consumer_id, reason="empty_scope")

        candidates = max(self.top_k, self.assembler.max_chunks if max_chunks is None else max_chunks)
        results = await self._search_datasets(query_text, datasets, threshold, candidates)
        if not results:
            return ContextBundle.empty(query=query_text, consumer_id=consumer_id, reason="no_match")

        tags: Set[str] = self.tagger.detect(query_text) | set(intent_tags or ())
        last_used = {}
        if self.usage is not None:
            last_used = await self.usage.chunk_last_used(
                consumer_id, [r.chunk.chunk_id for r in results]
            )

        context = RerankContext.for_links(
            links,
            consumer_id=consumer_id,
            specialty_tags=await self.registry.get_specialty_tags(consumer_id),
            intent_tags=tags,
            chunk_last_used=last_used,
            now=now or datetime.utcnow(),
        )
        reranked = self.reranker.rerank(results, context)
        bundle = self.assembler.assemble(reranked, max_chunks, max_tokens, query=query_text)
        bundle.metadata.update({
            "consumer_id": consumer_id,
            "scope": len(datasets),
            "intent_tags": sorted(tags),
        })

        logger.info(
            f"Context for {consumer_id}: {len(bundle.items)} items, "
            f"{bundle.total_tokens} tokens from {len(results)} candidates"
        )
        return bundle

    async def record_usage(
        self, consumer_id: str, bundle: ContextBundle, now: Optional[datetime] = None
    ) -> None:
        """Record that a consumer used a bundle; feeds the recency rule."""
        if self.usage is None or not bundle.context_used:
            return
        await self.usage.record(
            consumer_id,
            dataset_ids=[item.dataset_id for item in bundle.items],
            chunk_ids=[item.chunk_id for item in bundle.items],
            used_at=now or datetime.utcnow(),
        )
        logger.debug(f"Recorded usage of {len(bundle.items)} chunks for {consumer_id}")


def _check_query(query_text: str) -> None:
    if not isinstance(query_text, str) or not query_text.strip():
        raise ValidationError("Query text must not be empty", field="query_text")
