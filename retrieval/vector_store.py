"""
Vector Store for the RAG support engine.

Durable storage of chunks and their vectors, grouped by dataset. Vectors
live beside their chunk rows; a dataset's chunk set is replaced in one
transaction so readers see either the previous commit or the new one.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import select

from database.models import Chunk, Dataset, DatasetStatus
from database.repositories import DatasetRepository
from database.session import Database

from .embedder import EmbeddingBackendType, EmbeddingVector
from .errors import DimensionMismatchError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChunkRecord:
    """Read-side view of a stored chunk."""
    chunk_id: str
    dataset_id: str
    dataset_name: str
    ordinal: int
    text: str
    char_start: int
    char_end: int
    token_count: int
    section_title: Optional[str] = None
    page_number: Optional[int] = None
    chunk_type: str = "body"
    tags: Tuple[str, ...] = ()

    @classmethod
    def from_row(cls, chunk: Chunk, dataset_name: str) -> "ChunkRecord":
        return cls(
            chunk_id=chunk.id,
            dataset_id=chunk.dataset_id,
            dataset_name=dataset_name,
            ordinal=chunk.ordinal,
            text=chunk.content,
            char_start=chunk.char_start,
            char_end=chunk.char_end,
            token_count=chunk.token_count,
            section_title=chunk.section_title,
            page_number=chunk.page_number,
            chunk_type=chunk.chunk_type or "body",
            tags=tuple(chunk.tags_json or ()),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.chunk_id,
            "dataset_id": self.dataset_id,
            "dataset_name": self.dataset_name,
            "ordinal": self.ordinal,
            "text": self.text,
            "char_start": self.char_start,
            "char_end": self.char_end,
            "token_count": self.token_count,
            "section_title": self.section_title,
            "page_number": self.page_number,
            "chunk_type": self.chunk_type,
            "tags": list(self.tags),
        }


class VectorStore:
    """
    Dataset-scoped chunk and vector storage.

    Writers to the same dataset queue on a per-dataset lock; writers to
    different datasets and all readers proceed independently. A whole
    ingestion run holds the dataset's writer slot so status changes and
    the commit of one run never interleave with another's.
    """

    def __init__(self, database: Database):
        self.database = database
        self._locks: Dict[str, asyncio.Lock] = {}
        self._writers: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, dataset_id: str) -> asyncio.Lock:
        return self._locks.setdefault(dataset_id, asyncio.Lock())

    @asynccontextmanager
    async def writer(self, dataset_id: str) -> AsyncIterator[None]:
        """Hold the single writer slot of a dataset for a full ingestion run."""
        lock = self._writers.setdefault(dataset_id, asyncio.Lock())
        if lock.locked():
            logger.info(f"Dataset {dataset_id} busy, queueing ingestion")
        async with lock:
            yield

    async def create_dataset(
        self,
        name: str,
        embedding_backend: EmbeddingBackendType = EmbeddingBackendType.LOCAL,
        source_category: Optional[str] = None,
        description: Optional[str] = None,
        file_name: Optional[str] = None,
        file_type: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dataset:
        """Register a new dataset in pending status."""
        if not name or not name.strip():
            raise ValidationError("Dataset name must not be empty", field="name")
        async with self.database.session() as session:
            dataset = await DatasetRepository(session).create(
                name=name.strip(),
                description=description,
                source_category=source_category,
                file_name=file_name,
                file_type=file_type,
                embedding_backend=EmbeddingBackendType(embedding_backend).value,
                status=DatasetStatus.PENDING.value,
                chunk_count=0,
                metadata_json=dict(metadata or {}),
            )
        logger.info(f"Dataset created: {dataset.id} ({dataset.name}, backend={dataset.embedding_backend})")
        return dataset

    async def get_dataset(self, dataset_id: str) -> Optional[Dataset]:
        async with self.database.session() as session:
            return await DatasetRepository(session).get_by_id(dataset_id)

    async def get_datasets(self, dataset_ids: Iterable[str], ready_only: bool = False) -> List[Dataset]:
        """Fetch the datasets that exist among dataset_ids; unknown ids are ignored."""
        status = DatasetStatus.READY.value if ready_only else None
        async with self.database.session() as session:
            return await DatasetRepository(session).get_many(dataset_ids, status=status)

    async def list_datasets(
        self, status: Optional[str] = None, limit: int = 100, offset: int = 0
    ) -> List[Dataset]:
        async with self.database.session() as session:
            return await DatasetRepository(session).list_all(status=status, limit=limit, offset=offset)

    async def set_status(
        self,
        dataset_id: str,
        status: DatasetStatus,
        error_message: Optional[str] = None,
    ) -> None:
        async with self.database.session() as session:
            await DatasetRepository(session).set_status(dataset_id, status, error_message)
        logger.info(f"Dataset {dataset_id} -> {status.value}")

    async def commit_dataset(
        self,
        dataset_id: str,
        chunk_vector_pairs: Iterable[Tuple[Any, EmbeddingVector]],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dataset:
        """
        Atomically replace a dataset's chunks and mark it ready.

        Args:
            dataset_id: Target dataset
            chunk_vector_pairs: (draft, vector) pairs in chunk order; drafts
                expose text, char_start, char_end, token_count, section_title,
                page_number, chunk_type and tags
            metadata: Extra dataset metadata merged into the stored one

        Returns:
            The updated Dataset
        """
        pairs = list(chunk_vector_pairs)

        async with self._lock_for(dataset_id):
            async with self.database.session() as session:
                repo = DatasetRepository(session)
                dataset = await repo.get_by_id(dataset_id)
                if dataset is None:
                    raise NotFoundError("Dataset", dataset_id)

                dimension, model_id = self._check_vectors(dataset, pairs)

                rows = [
                    Chunk(
                        dataset_id=dataset_id,
                        ordinal=ordinal,
                        content=draft.text,
                        char_start=draft.char_start,
                        char_end=draft.char_end,
                        section_title=draft.section_title,
                        page_number=draft.page_number,
                        token_count=draft.token_count,
                        chunk_type=draft.chunk_type,
                        tags_json=list(draft.tags),
                        vector_json=list(vector.values),
                    )
                    for ordinal, (draft, vector) in enumerate(pairs)
                ]
                await repo.replace_chunks(dataset, rows)

                dataset.chunk_count = len(rows)
                if dimension is not None:
                    dataset.embedding_dimension = dimension
                    dataset.embedding_model = model_id
                dataset.status = DatasetStatus.READY.value
                dataset.error_message = None
                dataset.processed_at = datetime.utcnow()
                if metadata:
                    dataset.metadata_json = {**(dataset.metadata_json or {}), **metadata}
                await session.flush()

        logger.info(f"Committed {len(pairs)} chunks to dataset {dataset_id}")
        return dataset

    def _check_vectors(
        self, dataset: Dataset, pairs: Sequence[Tuple[Any, EmbeddingVector]]
    ) -> Tuple[Optional[int], Optional[str]]:
        """Every vector must share one dimension and match the dataset's established one."""
        if not pairs:
            return None, None
        first = pairs[0][1]
        expected = dataset.embedding_dimension or first.dimension
        for _, vector in pairs:
            if vector.dimension != expected:
                raise DimensionMismatchError(expected, vector.dimension, dataset_id=dataset.id)
            if vector.model_id != first.model_id:
                raise DimensionMismatchError(
                    expected, vector.dimension, dataset_id=dataset.id,
                    details={"model_ids": sorted({first.model_id, vector.model_id})},
                )
        return expected, first.model_id

    async def query_scope(
        self, dataset_ids: Iterable[str]
    ) -> AsyncIterator[Tuple[ChunkRecord, Tuple[float, ...]]]:
        """
        Yield (chunk, vector) for every chunk of the ready datasets in scope.

        Unknown or not-ready dataset ids contribute nothing. The chunk set is
        read in one statement so each dataset is seen as of its last commit.
        """
        ids = sorted(set(dataset_ids))
        if not ids:
            return

        async with self.database.session_factory() as session:
            result = await session.execute(
                select(Chunk, Dataset.name)
                .join(Dataset, Chunk.dataset_id == Dataset.id)
                .where(
                    Dataset.id.in_(ids),
                    Dataset.status == DatasetStatus.READY.value,
                )
                .order_by(Chunk.dataset_id.asc(), Chunk.ordinal.asc())
            )
            rows = result.all()

        logger.debug(f"Scope of {len(ids)} datasets holds {len(rows)} chunks")
        for chunk, dataset_name in rows:
            yield ChunkRecord.from_row(chunk, dataset_name), tuple(chunk.vector_json)

    async def list_chunks(self, dataset_id: str, limit: int = 100, offset: int = 0) -> List[ChunkRecord]:
        async with self.database.session() as session:
            repo = DatasetRepository(session)
            dataset = await repo.get_by_id(dataset_id)
            if dataset is None:
                raise NotFoundError("Dataset", dataset_id)
            chunks = await repo.list_chunks(dataset_id, limit=limit, offset=offset)
        return [ChunkRecord.from_row(chunk, dataset.name) for chunk in chunks]

    async def delete_dataset(self, dataset_id: str) -> bool:
        """Delete a dataset and, by cascade, its chunks and links."""
        async with self._lock_for(dataset_id):
            async with self.database.session() as session:
                deleted = await DatasetRepository(session).delete(dataset_id)
        self._locks.pop(dataset_id, None)
        writer = self._writers.get(dataset_id)
        if writer is not None and not writer.locked():
            del self._writers[dataset_id]
        if deleted:
            logger.info(f"Dataset deleted: {dataset_id}")
        return deleted
