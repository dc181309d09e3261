"""
Repository classes for the data access layer.

Each repository encapsulates the queries for one model and works on a
caller-provided AsyncSession; transaction boundaries belong to the caller.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import select, delete, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Dataset, DatasetStatus, Chunk, Consumer, ConsumerLinkRow, ChunkUsage

logger = logging.getLogger(__name__)


class DatasetRepository:
    """Data access for datasets and their chunks."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> Dataset:
        dataset = Dataset(**kwargs)
        self.session.add(dataset)
        await self.session.flush()
        return dataset

    async def get_by_id(self, dataset_id: str) -> Optional[Dataset]:
        result = await self.session.execute(
            select(Dataset).where(Dataset.id == dataset_id)
        )
        return result.scalar_one_or_none()

    async def get_many(self, dataset_ids: Iterable[str], status: Optional[str] = None) -> List[Dataset]:
        ids = list(dataset_ids)
        if not ids:
            return []
        q = select(Dataset).where(Dataset.id.in_(ids)).order_by(Dataset.id.asc())
        if status:
            q = q.where(Dataset.status == status)
        result = await self.session.execute(q)
        return list(result.scalars().all())

    async def list_all(
        self, status: Optional[str] = None, limit: int = 100, offset: int = 0
    ) -> List[Dataset]:
        q = select(Dataset).order_by(Dataset.created_at.desc()).offset(offset).limit(limit)
        if status:
            q = q.where(Dataset.status == status)
        result = await self.session.execute(q)
        return list(result.scalars().all())

    async def set_status(
        self,
        dataset_id: str,
        status: DatasetStatus,
        error_message: Optional[str] = None,
    ) -> None:
        values: Dict[str, Any] = {"status": status.value, "error_message": error_message}
        if status in (DatasetStatus.READY, DatasetStatus.FAILED):
            values["processed_at"] = datetime.utcnow()
        await self.session.execute(
            update(Dataset).where(Dataset.id == dataset_id).values(**values)
        )
        await self.session.flush()

    async def replace_chunks(self, dataset: Dataset, rows: Sequence[Chunk]) -> None:
        """Swap the dataset's chunk set for rows; the caller commits."""
        old_ids = select(Chunk.id).where(Chunk.dataset_id == dataset.id)
        await self.session.execute(
            delete(ChunkUsage).where(ChunkUsage.chunk_id.in_(old_ids)).execution_options(synchronize_session=False)
        )
        await self.session.execute(
            delete(Chunk).where(Chunk.dataset_id == dataset.id).execution_options(synchronize_session=False)
        )
        self.session.add_all(rows)
        await self.session.flush()

    async def list_chunks(self, dataset_id: str, limit: int = 100, offset: int = 0) -> List[Chunk]:
        result = await self.session.execute(
            select(Chunk)
            .where(Chunk.dataset_id == dataset_id)
            .order_by(Chunk.ordinal.asc())
            .offset(offset).limit(limit)
        )
        return list(result.scalars().all())

    async def delete(self, dataset_id: str) -> bool:
        """Delete a dataset with its chunks, usage rows and consumer links."""
        exists = await self.get_by_id(dataset_id)
        if not exists:
            return False
        chunk_ids = select(Chunk.id).where(Chunk.dataset_id == dataset_id)
        await self.session.execute(
            delete(ChunkUsage).where(ChunkUsage.chunk_id.in_(chunk_ids)).execution_options(synchronize_session=False)
        )
        await self.session.execute(
            delete(Chunk).where(Chunk.dataset_id == dataset_id).execution_options(synchronize_session=False)
        )
        await self.session.execute(
            delete(ConsumerLinkRow).where(ConsumerLinkRow.dataset_id == dataset_id).execution_options(synchronize_session=False)
        )
        await self.session.execute(
            delete(Dataset).where(Dataset.id == dataset_id).execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return True


class ConsumerRepository:
    """Data access for consumers (personas)."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, consumer_id: str) -> Optional[Consumer]:
        result = await self.session.execute(
            select(Consumer).where(Consumer.id == consumer_id)
        )
        return result.scalar_one_or_none()

    async def upsert(
        self,
        consumer_id: str,
        display_name: Optional[str] = None,
        specialty_tags: Optional[Iterable[str]] = None,
    ) -> Consumer:
        consumer = await self.get_by_id(consumer_id)
        if consumer is None:
            consumer = Consumer(
                id=consumer_id,
                display_name=display_name,
                specialty_tags_json=sorted(set(specialty_tags or [])),
            )
            self.session.add(consumer)
        else:
            if display_name is not None:
                consumer.display_name = display_name
            if specialty_tags is not None:
                consumer.specialty_tags_json = sorted(set(specialty_tags))
        await self.session.flush()
        return consumer

    async def list_all(self, limit: int = 100) -> List[Consumer]:
        result = await self.session.execute(
            select(Consumer).order_by(Consumer.id.asc()).limit(limit)
        )
        return list(result.scalars().all())


class ConsumerLinkRepository:
    """Data access for consumer-dataset links."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, consumer_id: str, dataset_id: str) -> Optional[ConsumerLinkRow]:
        result = await self.session.execute(
            select(ConsumerLinkRow).where(
                ConsumerLinkRow.consumer_id == consumer_id,
                ConsumerLinkRow.dataset_id == dataset_id,
            )
        )
        return result.scalar_one_or_none()

    async def create(self, **kwargs) -> ConsumerLinkRow:
        link = ConsumerLinkRow(**kwargs)
        self.session.add(link)
        await self.session.flush()
        return link

    async def update(self, consumer_id: str, dataset_id: str, **kwargs) -> Optional[ConsumerLinkRow]:
        link = await self.get(consumer_id, dataset_id)
        if not link:
            return None
        for k, v in kwargs.items():
            if hasattr(link, k):
                setattr(link, k, v)
        await self.session.flush()
        return link

    async def delete(self, consumer_id: str, dataset_id: str) -> bool:
        result = await self.session.execute(
            delete(ConsumerLinkRow).where(
                ConsumerLinkRow.consumer_id == consumer_id,
                ConsumerLinkRow.dataset_id == dataset_id,
            )
        )
        await self.session.flush()
        return (result.rowcount or 0) > 0

    async def list_for_consumer(self, consumer_id: str) -> List[ConsumerLinkRow]:
        result = await self.session.execute(
            select(ConsumerLinkRow)
            .where(ConsumerLinkRow.consumer_id == consumer_id)
            .order_by(ConsumerLinkRow.weight.desc(), ConsumerLinkRow.dataset_id.asc())
        )
        return list(result.scalars().all())

    async def record_usage(self, consumer_id: str, dataset_ids: Iterable[str], used_at: datetime) -> None:
        ids = list(dataset_ids)
        if not ids:
            return
        await self.session.execute(
            update(ConsumerLinkRow)
            .where(
                ConsumerLinkRow.consumer_id == consumer_id,
                ConsumerLinkRow.dataset_id.in_(ids),
            )
            .values(
                usage_count=ConsumerLinkRow.usage_count + 1,
                last_used_at=used_at,
            )
        )
        await self.session.flush()


class ChunkUsageRepository:
    """Data access for per-consumer chunk usage."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def last_used(self, consumer_id: str, chunk_ids: Iterable[str]) -> Dict[str, datetime]:
        ids = list(chunk_ids)
        if not ids:
            return {}
        result = await self.session.execute(
            select(ChunkUsage.chunk_id, ChunkUsage.last_used_at).where(
                ChunkUsage.consumer_id == consumer_id,
                ChunkUsage.chunk_id.in_(ids),
            )
        )
        return {row.chunk_id: row.last_used_at for row in result}

    async def touch(self, consumer_id: str, chunk_ids: Iterable[str], used_at: datetime) -> None:
        ids = list(dict.fromkeys(chunk_ids))
        if not ids:
            return
        result = await self.session.execute(
            select(ChunkUsage).where(
                ChunkUsage.consumer_id == consumer_id,
                ChunkUsage.chunk_id.in_(ids),
            )
        )
        existing = {row.chunk_id: row for row in result.scalars().all()}
        for chunk_id in ids:
            row = existing.get(chunk_id)
            if row is None:
                self.session.add(ChunkUsage(
                    consumer_id=consumer_id,
                    chunk_id=chunk_id,
                    use_count=1,
                    last_used_at=used_at,
                ))
            else:
                row.use_count += 1
                row.last_used_at = used_at
        await self.session.flush()
