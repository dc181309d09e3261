"""
Consumer links for the RAG support engine.

A consumer (typically a persona) reads datasets through links that carry
an enabled flag, a relevance weight and an access level. The retrieval
side only needs the read contract (ConsumerRegistry); SqlConsumerRegistry
also owns the write path where weights are validated.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, Optional, Protocol, Set, Union

from database.models import ConsumerLinkRow, Consumer
from database.repositories import (
    ChunkUsageRepository,
    ConsumerLinkRepository,
    ConsumerRepository,
    DatasetRepository,
)
from database.session import Database

from .errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

MIN_LINK_WEIGHT = 0.1
MAX_LINK_WEIGHT = 2.0


class AccessLevel(str, Enum):
    """How much of a linked dataset a consumer may see."""
    FULL = "full"
    SUMMARY = "summary"
    REFERENCE_ONLY = "reference_only"


def validate_weight(weight: float) -> float:
    """Reject weights outside [0.1, 2.0]; never clamps."""
    try:
        value = float(weight)
    except (TypeError, ValueError):
        raise ValidationError(f"Link weight must be a number, got {weight!r}", field="weight") from None
    if not MIN_LINK_WEIGHT <= value <= MAX_LINK_WEIGHT:
        raise ValidationError(
            f"Link weight {value} outside [{MIN_LINK_WEIGHT}, {MAX_LINK_WEIGHT}]",
            field="weight",
            details={"weight": value},
        )
    return value


def parse_access_level(value: Union[AccessLevel, str]) -> AccessLevel:
    try:
        return AccessLevel(value)
    except ValueError:
        raise ValidationError(f"Unknown access level: {value}", field="access_level") from None


@dataclass(frozen=True)
class ConsumerLink:
    """Relationship between one consumer and one dataset."""
    consumer_id: str
    dataset_id: str
    enabled: bool = True
    weight: float = 1.0
    access_level: AccessLevel = AccessLevel.FULL
    usage_count: int = 0
    last_used_at: Optional[datetime] = None

    def __post_init__(self):
        validate_weight(self.weight)
        if not isinstance(self.access_level, AccessLevel):
            object.__setattr__(self, "access_level", parse_access_level(self.access_level))

    @classmethod
    def from_row(cls, row: ConsumerLinkRow) -> "ConsumerLink":
        return cls(
            consumer_id=row.consumer_id,
            dataset_id=row.dataset_id,
            enabled=bool(row.enabled),
            weight=row.weight,
            access_level=AccessLevel(row.access_level),
            usage_count=row.usage_count or 0,
            last_used_at=row.last_used_at,
        )

    def to_dict(self) -> Dict:
        return {
            "consumer_id": self.consumer_id,
            "dataset_id": self.dataset_id,
            "enabled": self.enabled,
            "weight": self.weight,
            "access_level": self.access_level.value,
            "usage_count": self.usage_count,
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
        }


class ConsumerRegistry(Protocol):
    """Read contract consumed by the retrieval service."""

    async def get_links(self, consumer_id: str) -> List[ConsumerLink]:
        ...

    async def get_specialty_tags(self, consumer_id: str) -> Set[str]:
        ...


class SqlConsumerRegistry:
    """ConsumerRegistry backed by the consumers and consumer_links tables."""

    def __init__(self, database: Database):
        self.database = database

    async def get_links(self, consumer_id: str) -> List[ConsumerLink]:
        async with self.database.session() as session:
            rows = await ConsumerLinkRepository(session).list_for_consumer(consumer_id)
        return [ConsumerLink.from_row(row) for row in rows]

    async def get_specialty_tags(self, consumer_id: str) -> Set[str]:
        async with self.database.session() as session:
            consumer = await ConsumerRepository(session).get_by_id(consumer_id)
        if consumer is None:
            return set()
        return set(consumer.specialty_tags_json or [])

    async def get_consumer(self, consumer_id: str) -> Optional[Consumer]:
        async with self.database.session() as session:
            return await ConsumerRepository(session).get_by_id(consumer_id)

    async def list_consumers(self, limit: int = 100) -> List[Consumer]:
        async with self.database.session() as session:
            return await ConsumerRepository(session).list_all(limit=limit)

    async def upsert_consumer(
        self,
        consumer_id: str,
        display_name: Optional[str] = None,
        specialty_tags: Optional[Iterable[str]] = None,
    ) -> Consumer:
        """Create a consumer or update its name and specialty tags."""
        if not consumer_id or not consumer_id.strip():
            raise ValidationError("Consumer id must not be empty", field="consumer_id")
        async with self.database.session() as session:
            consumer = await ConsumerRepository(session).upsert(
                consumer_id, display_name=display_name, specialty_tags=specialty_tags
            )
        logger.info(f"Consumer upserted: {consumer_id}")
        return consumer

    async def link_dataset(
        self,
        consumer_id: str,
        dataset_id: str,
        weight: float = 1.0,
        access_level: Union[AccessLevel, str] = AccessLevel.FULL,
        enabled: bool = True,
    ) -> ConsumerLink:
        """
        Link a consumer to a dataset, creating the consumer if needed.

        Args:
            consumer_id: Consumer identifier
            dataset_id: Dataset to link
            weight: Relevance weight in [0.1, 2.0]
            access_level: full, summary or reference_only
            enabled: Whether the link is in the retrieval scope

        Returns:
            The stored ConsumerLink
        """
        weight = validate_weight(weight)
        level = parse_access_level(access_level)

        async with self.database.session() as session:
            if await DatasetRepository(session).get_by_id(dataset_id) is None:
                raise NotFoundError("Dataset", dataset_id)

            consumers = ConsumerRepository(session)
            if await consumers.get_by_id(consumer_id) is None:
                await consumers.upsert(consumer_id)

            links = ConsumerLinkRepository(session)
            row = await links.get(consumer_id, dataset_id)
            if row is None:
                row = await links.create(
                    consumer_id=consumer_id,
                    dataset_id=dataset_id,
                    weight=weight,
                    access_level=level.value,
                    enabled=enabled,
                    usage_count=0,
                )
            else:
                row = await links.update(
                    consumer_id, dataset_id,
                    weight=weight, access_level=level.value, enabled=enabled,
                )
            link = ConsumerLink.from_row(row)

        logger.info(f"Linked consumer {consumer_id} -> dataset {dataset_id} (weight={weight})")
        return link

    async def update_link(
        self,
        consumer_id: str,
        dataset_id: str,
        weight: Optional[float] = None,
        access_level: Optional[Union[AccessLevel, str]] = None,
        enabled: Optional[bool] = None,
    ) -> ConsumerLink:
        """Change some attributes of an existing link."""
        changes = {}
        if weight is not None:
            changes["weight"] = validate_weight(weight)
        if access_level is not None:
            changes["access_level"] = parse_access_level(access_level).value
        if enabled is not None:
            changes["enabled"] = bool(enabled)

        async with self.database.session() as session:
            row = await ConsumerLinkRepository(session).update(consumer_id, dataset_id, **changes)
            if row is None:
                raise NotFoundError("ConsumerLink", f"{consumer_id}/{dataset_id}")
            link = ConsumerLink.from_row(row)
        return link

    async def set_enabled(self, consumer_id: str, dataset_id: str, enabled: bool) -> ConsumerLink:
        link = await self.update_link(consumer_id, dataset_id, enabled=enabled)
        logger.info(f"Link {consumer_id}/{dataset_id} {'enabled' if enabled else 'disabled'}")
        return link

    async def unlink(self, consumer_id: str, dataset_id: str) -> bool:
        async with self.database.session() as session:
            return await ConsumerLinkRepository(session).delete(consumer_id, dataset_id)


class UsageTracker:
    """Per-consumer usage of links and chunks, read by the recency rule."""

    def __init__(self, database: Database):
        self.database = database

    async def chunk_last_used(self, consumer_id: str, chunk_ids: Iterable[str]) -> Dict[str, datetime]:
        async with self.database.session() as session:
            return await ChunkUsageRepository(session).last_used(consumer_id, chunk_ids)

    async def record(
        self,
        consumer_id: str,
        dataset_ids: Iterable[str],
        chunk_ids: Iterable[str],
        used_at: datetime,
    ) -> None:
        """Bump link usage counters and chunk last-used timestamps in one transaction."""
        async with self.database.session() as session:
            await ConsumerLinkRepository(session).record_usage(consumer_id, set(dataset_ids), used_at)
            await ChunkUsageRepository(session).touch(consumer_id, chunk_ids, used_at)
