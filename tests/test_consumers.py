"""Tests for consumer links, weights and usage tracking."""

from datetime import datetime

import pytest
from sqlalchemy.exc import IntegrityError

from database.models import ConsumerLinkRow
from retrieval.consumers import AccessLevel, ConsumerLink, parse_access_level, validate_weight
from retrieval.errors import NotFoundError, ValidationError


@pytest.fixture
async def dataset(store):
    return await store.create_dataset("Sleep Guide", source_category="sleep")


class TestWeights:
    @pytest.mark.parametrize("weight", [0.1, 1.0, 2.0])
    def test_bounds_inclusive(self, weight):
        assert validate_weight(weight) == weight

    @pytest.mark.parametrize("weight", [0.05, 2.5, 0.0, -1.0, "heavy", None])
    def test_out_of_range_rejected(self, weight):
        with pytest.raises(ValidationError):
            validate_weight(weight)

    def test_link_constructor_rejects_weight(self):
        with pytest.raises(ValidationError):
            ConsumerLink("coach", "ds-1", weight=2.5)

    async def test_link_dataset_rejects_weight_without_clamping(self, registry, dataset):
        for weight in (0.05, 2.5):
            with pytest.raises(ValidationError):
                await registry.link_dataset("coach", dataset.id, weight=weight)
        assert await registry.get_links("coach") == []

    async def test_update_rejects_weight_and_keeps_previous(self, registry, dataset):
        await registry.link_dataset("coach", dataset.id, weight=1.5)
        with pytest.raises(ValidationError):
            await registry.update_link("coach", dataset.id, weight=2.5)
        links = await registry.get_links("coach")
        assert links[0].weight == 1.5

    async def test_database_enforces_range(self, database, registry, dataset):
        await registry.upsert_consumer("coach")
        with pytest.raises(IntegrityError):
            async with database.session() as session:
                session.add(ConsumerLinkRow(consumer_id="coach", dataset_id=dataset.id, weight=3.0))
                await session.flush()


class TestAccessLevel:
    def test_parse(self):
        assert parse_access_level("summary") is AccessLevel.SUMMARY
        assert parse_access_level(AccessLevel.FULL) is AccessLevel.FULL

    def test_unknown_rejected(self):
        with pytest.raises(ValidationError):
            parse_access_level("everything")

    def test_link_coerces_string(self):
        link = ConsumerLink("coach", "ds-1", access_level="reference_only")
        assert link.access_level is AccessLevel.REFERENCE_ONLY
        assert link.to_dict()["access_level"] == "reference_only"


class TestSqlConsumerRegistry:
    async def test_link_creates_consumer(self, registry, dataset):
        link = await registry.link_dataset("coach", dataset.id, weight=1.2, access_level="summary")

        assert link.weight == 1.2
        assert link.access_level is AccessLevel.SUMMARY
        assert link.enabled is True
        assert (await registry.get_consumer("coach")) is not None

    async def test_relink_updates_in_place(self, registry, dataset):
        await registry.link_dataset("coach", dataset.id, weight=1.0)
        await registry.link_dataset("coach", dataset.id, weight=0.5, enabled=False)

        links = await registry.get_links("coach")
        assert len(links) == 1
        assert links[0].weight == 0.5
        assert links[0].enabled is False

    async def test_link_to_missing_dataset(self, registry):
        with pytest.raises(NotFoundError):
            await registry.link_dataset("coach", "missing")

    async def test_update_missing_link(self, registry, dataset):
        with pytest.raises(NotFoundError):
            await registry.update_link("coach", dataset.id, weight=1.0)

    async def test_set_enabled(self, registry, dataset):
        await registry.link_dataset("coach", dataset.id)
        disabled = await registry.set_enabled("coach", dataset.id, False)
        assert disabled.enabled is False
        enabled = await registry.set_enabled("coach", dataset.id, True)
        assert enabled.enabled is True

    async def test_unlink(self, registry, dataset):
        await registry.link_dataset("coach", dataset.id)
        assert await registry.unlink("coach", dataset.id) is True
        assert await registry.unlink("coach", dataset.id) is False
        assert await registry.get_links("coach") == []

    async def test_links_ordered_by_weight(self, registry, store):
        light = await store.create_dataset("Light")
        heavy = await store.create_dataset("Heavy")
        await registry.link_dataset("coach", light.id, weight=0.3)
        await registry.link_dataset("coach", heavy.id, weight=1.8)

        links = await registry.get_links("coach")
        assert [link.dataset_id for link in links] == [heavy.id, light.id]

    async def test_specialty_tags(self, registry):
        assert await registry.get_specialty_tags("nobody") == set()

        await registry.upsert_consumer("sleep-coach", "Sleep Coach", ["sleep", "mindfulness", "sleep"])
        assert await registry.get_specialty_tags("sleep-coach") == {"sleep", "mindfulness"}

        await registry.upsert_consumer("sleep-coach", specialty_tags=["nutrition"])
        consumer = await registry.get_consumer("sleep-coach")
        assert consumer.display_name == "Sleep Coach"
        assert consumer.specialty_tags_json == ["nutrition"]

    async def test_blank_consumer_id(self, registry):
        with pytest.raises(ValidationError):
            await registry.upsert_consumer("  ")

    async def test_list_consumers(self, registry):
        await registry.upsert_consumer("b-coach")
        await registry.upsert_consumer("a-coach")
        assert [c.id for c in await registry.list_consumers()] == ["a-coach", "b-coach"]


class TestUsageTracker:
    async def test_record_updates_links_and_chunks(self, usage, registry, store, make_dataset):
        dataset = await make_dataset("Notes", "keep a regular bedtime every night")
        await registry.link_dataset("coach", dataset.id)
        chunks = [c.chunk_id for c in await store.list_chunks(dataset.id)]
        used_at = datetime(2026, 3, 1, 9, 30)

        await usage.record("coach", [dataset.id, dataset.id], chunks, used_at)

        link = (await registry.get_links("coach"))[0]
        assert link.usage_count == 1
        assert link.last_used_at == used_at
        assert await usage.chunk_last_used("coach", chunks) == {chunks[0]: used_at}
        assert await usage.chunk_last_used("someone-else", chunks) == {}

    async def test_record_again_moves_timestamp(self, usage, registry, store, make_dataset):
        dataset = await make_dataset("Notes", "keep a regular bedtime every night")
        await registry.link_dataset("coach", dataset.id)
        chunks = [c.chunk_id for c in await store.list_chunks(dataset.id)]

        await usage.record("coach", [dataset.id], chunks, datetime(2026, 3, 1))
        await usage.record("coach", [dataset.id], chunks, datetime(2026, 3, 2))

        assert await usage.chunk_last_used("coach", chunks) == {chunks[0]: datetime(2026, 3, 2)}
        assert (await registry.get_links("coach"))[0].usage_count == 2

    async def test_no_chunk_ids(self, usage):
        assert await usage.chunk_last_used("coach", []) == {}

