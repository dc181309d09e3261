"""
Ingestion pipeline for the RAG support engine.

chunk -> embed -> commit for one dataset at a time. The gateway, the
extractors and the store are passed in; nothing is looked up globally.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from database.models import Dataset, DatasetStatus
from retrieval.embedder import EmbeddingBackendType, EmbeddingGateway, EmbeddingVector
from retrieval.errors import BackendUnavailableError, NotFoundError, ValidationError
from retrieval.vector_store import VectorStore

from .chunking_strategies import ChunkDraft, ChunkingOptions, get_chunker
from .extractors import DocumentExtractor, default_extractors, extractor_for
from .tagging import ContentTagger

logger = logging.getLogger(__name__)


@dataclass
class IngestionReport:
    """Outcome of one ingestion run."""
    dataset_id: str
    status: str
    chunk_count: int = 0
    skipped_count: int = 0
    embedding_model: Optional[str] = None
    embedding_dimension: Optional[int] = None
    attempts: int = 0
    elapsed_ms: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dataset_id": self.dataset_id,
            "status": self.status,
            "chunk_count": self.chunk_count,
            "skipped_count": self.skipped_count,
            "embedding_model": self.embedding_model,
            "embedding_dimension": self.embedding_dimension,
            "attempts": self.attempts,
            "elapsed_ms": round(self.elapsed_ms, 2),
            "metadata": self.metadata,
        }


class IngestionPipeline:
    """
    End-to-end ingestion into the vector store.

    Status transitions:
    - first ingestion: pending -> processing -> ready
    - re-ingestion of a ready dataset stays ready until the new commit lands
    - any error: failed, with the error message recorded
    - cancellation: prior status restored, nothing committed
    """

    def __init__(
        self,
        store: VectorStore,
        gateway: EmbeddingGateway,
        extractors: Optional[Mapping[str, DocumentExtractor]] = None,
        tagger: Optional[ContentTagger] = None,
        options: Optional[ChunkingOptions] = None,
        max_retries: int = 3,
        backoff_seconds: float = 0.5,
    ):
        self.store = store
        self.gateway = gateway
        self.extractors = extractors if extractors is not None else default_extractors()
        self.tagger = tagger or ContentTagger()
        self.options = options or ChunkingOptions()
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds

    async def create_dataset(
        self,
        name: str,
        source_category: Optional[str] = None,
        backend: Union[EmbeddingBackendType, str] = EmbeddingBackendType.LOCAL,
        description: Optional[str] = None,
        file_name: Optional[str] = None,
        file_type: Optional[str] = None,
    ) -> Dataset:
        """Create a pending dataset bound to one embedding backend."""
        try:
            backend_type = EmbeddingBackendType(backend)
        except ValueError:
            raise ValidationError(f"Unknown embedding backend: {backend}", field="backend") from None
        return await self.store.create_dataset(
            name,
            embedding_backend=backend_type,
            source_category=source_category,
            description=description,
            file_name=file_name,
            file_type=file_type,
        )

    async def ingest_file(
        self,
        dataset_id: str,
        file_path: Union[str, Path],
        options: Optional[ChunkingOptions] = None,
        file_name: Optional[str] = None,
    ) -> IngestionReport:
        """
        Extract a document and ingest its text.

        Args:
            dataset_id: Target dataset
            file_path: PDF, DOCX, text or markdown file
            options: Chunking options (defaults to the pipeline's)
            file_name: Original file name when file_path is a temporary copy

        Returns:
            IngestionReport
        """
        extractor = extractor_for(file_path, self.extractors)
        document = await asyncio.to_thread(extractor.extract, file_path)
        logger.info(f"Extracted {document.metadata.get('word_count', 0)} words from {Path(file_path).name}")

        metadata = {k: v for k, v in document.metadata.items() if k != "page_offsets"}
        if file_name:
            metadata["file_name"] = file_name
        return await self.ingest_text(
            dataset_id,
            document.text,
            options=options,
            metadata=metadata,
            page_offsets=document.page_offsets,
        )

    async def ingest_text(
        self,
        dataset_id: str,
        text: str,
        options: Optional[ChunkingOptions] = None,
        metadata: Optional[Dict[str, Any]] = None,
        page_offsets: Optional[List[int]] = None,
    ) -> IngestionReport:
        """
        Chunk, embed and commit text into a dataset.

        Args:
            dataset_id: Target dataset
            text: Extracted document text
            options: Chunking options (defaults to the pipeline's)
            metadata: Extra dataset metadata stored on commit
            page_offsets: Character offsets where each page starts

        Returns:
            IngestionReport
        """
        options = options or self.options
        options.validate()

        started = time.perf_counter()
        async with self.store.writer(dataset_id):
            report, committed = await self._ingest_locked(
                dataset_id, text, options, metadata, page_offsets
            )

        report.status = committed.status
        report.chunk_count = committed.chunk_count
        report.embedding_model = committed.embedding_model
        report.embedding_dimension = committed.embedding_dimension
        report.elapsed_ms = (time.perf_counter() - started) * 1000
        report.metadata = {"strategy": options.strategy.value}
        logger.info(
            f"Dataset {dataset_id} ready: {report.chunk_count} chunks "
            f"({report.skipped_count} skipped) in {report.elapsed_ms:.0f}ms"
        )
        return report

    async def _ingest_locked(
        self,
        dataset_id: str,
        text: str,
        options: ChunkingOptions,
        metadata: Optional[Dict[str, Any]],
        page_offsets: Optional[List[int]],
    ) -> Tuple[IngestionReport, Dataset]:
        """Run one ingestion while holding the dataset's writer slot."""
        dataset = await self.store.get_dataset(dataset_id)
        if dataset is None:
            raise NotFoundError("Dataset", dataset_id)

        prior_status = DatasetStatus(dataset.status)
        prior_error = dataset.error_message
        backend = EmbeddingBackendType(dataset.embedding_backend)
        report = IngestionReport(dataset_id=dataset_id, status=prior_status.value)

        if prior_status != DatasetStatus.READY:
            await self.store.set_status(dataset_id, DatasetStatus.PROCESSING)

        try:
            drafts = get_chunker(options, self.tagger).chunk(text, page_offsets)
            kept = self._drop_blank(drafts)
            report.skipped_count = len(drafts) - len(kept)

            vectors = await self._embed_with_retry([d.text for d in kept], backend, report)
            committed = await self.store.commit_dataset(
                dataset_id,
                zip(kept, vectors),
                metadata={
                    **(metadata or {}),
                    "chunk_strategy": options.strategy.value,
                    "chunk_size": options.chunk_size,
                    "chunk_overlap": options.overlap,
                },
            )
        except asyncio.CancelledError:
            logger.warning(f"Ingestion of dataset {dataset_id} cancelled, restoring {prior_status.value}")
            if prior_status != DatasetStatus.READY:
                await self.store.set_status(dataset_id, prior_status, prior_error)
            raise
        except Exception as e:
            logger.error(f"Ingestion of dataset {dataset_id} failed: {e}")
            await self.store.set_status(dataset_id, DatasetStatus.FAILED, str(e))
            raise
        return report, committed

    def _drop_blank(self, drafts: List[ChunkDraft]) -> List[ChunkDraft]:
        kept = []
        for draft in drafts:
            if not draft.text.strip():
                logger.warning(f"Skipping blank chunk at index {draft.index}")
                continue
            kept.append(draft)
        return kept

    async def _embed_with_retry(
        self,
        texts: List[str],
        backend: EmbeddingBackendType,
        report: IngestionReport,
    ) -> List[EmbeddingVector]:
        """Embed with exponential backoff on BackendUnavailableError."""
        attempt = 0
        while True:
            attempt += 1
            report.attempts = attempt
            try:
                return await self.gateway.embed_batch(texts, backend)
            except BackendUnavailableError as e:
                if attempt > self.max_retries:
                    logger.error(f"Embedding failed after {attempt} attempts: {e}")
                    raise
                delay = self.backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    f"Embedding attempt {attempt} failed ({e}), retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)
