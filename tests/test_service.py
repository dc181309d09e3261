"""End-to-end tests for the context retrieval service."""

import math
from datetime import datetime, timedelta

import pytest

from ingestion.chunking_strategies import ChunkingOptions
from retrieval.embedder import EmbeddingBackendType, EmbeddingVector
from retrieval.errors import ValidationError

from conftest import FAKE_DIMENSION, Draft, fake_vector

BREATHING = "Practice slow breathing before sleep to calm the body."
NUTRITION = "Plan balanced meals with vegetables and protein each day."


class TestScope:
    async def test_consumer_without_links(self, service):
        bundle = await service.retrieve_context("nobody", "anything at all")
        assert bundle.context_used is False
        assert bundle.items == []
        assert bundle.metadata["reason"] == "empty_scope"

    async def test_all_links_disabled(self, service, registry, make_dataset):
        dataset = await make_dataset("Breathing", BREATHING)
        await registry.link_dataset("coach", dataset.id, enabled=False)

        bundle = await service.retrieve_context("coach", BREATHING)
        assert bundle.context_used is False
        assert bundle.total_tokens == 0

    async def test_toggle_link_changes_scope(self, service, registry, make_dataset):
        dataset = await make_dataset("Breathing", BREATHING)
        await registry.link_dataset("coach", dataset.id)
        assert (await service.retrieve_context("coach", BREATHING)).context_used is True

        await registry.set_enabled("coach", dataset.id, False)
        assert (await service.retrieve_context("coach", BREATHING)).context_used is False

        await registry.set_enabled("coach", dataset.id, True)
        restored = await service.retrieve_context("coach", BREATHING)
        assert restored.context_used is True
        assert restored.items[0].dataset_id == dataset.id

    async def test_pending_dataset_excluded(self, service, registry, pipeline):
        dataset = await pipeline.create_dataset("Not yet ingested")
        await registry.link_dataset("coach", dataset.id)
        bundle = await service.retrieve_context("coach", BREATHING)
        assert bundle.context_used is False

    async def test_only_linked_datasets_searched(self, service, registry, make_dataset):
        linked = await make_dataset("Nutrition", NUTRITION)
        await make_dataset("Breathing", BREATHING)
        await registry.link_dataset("coach", linked.id)

        bundle = await service.retrieve_context("coach", BREATHING, threshold=-1.0)
        assert {item.dataset_id for item in bundle.items} == {linked.id}

    async def test_no_match_above_threshold(self, service, registry, make_dataset):
        dataset = await make_dataset("Breathing", BREATHING)
        await registry.link_dataset("coach", dataset.id)
        bundle = await service.retrieve_context("coach", BREATHING, threshold=1.01)
        assert bundle.context_used is False
        assert bundle.metadata["reason"] == "no_match"


class TestRanking:
    async def test_link_weight_decides_between_identical_chunks(self, service, registry, make_dataset):
        low = await make_dataset("Copy A", BREATHING)
        high = await make_dataset("Copy B", BREATHING)
        await registry.link_dataset("coach", low.id, weight=0.5)
        await registry.link_dataset("coach", high.id, weight=1.5)

        bundle = await service.retrieve_context("coach", BREATHING)

        assert [item.dataset_id for item in bundle.items] == [high.id, low.id]
        assert bundle.items[0].similarity == pytest.approx(1.0)
        assert bundle.items[1].similarity == pytest.approx(1.0)
        assert bundle.items[0].score == pytest.approx(bundle.items[1].score * 3)

    async def test_specialty_tags_boost(self, service, registry, make_dataset):
        dataset = await make_dataset("Breathing", BREATHING)
        await registry.link_dataset("plain", dataset.id)
        await registry.link_dataset("sleep-coach", dataset.id)
        await registry.upsert_consumer("sleep-coach", specialty_tags=["sleep"])

        plain = await service.retrieve_context("plain", BREATHING)
        special = await service.retrieve_context("sleep-coach", BREATHING)
        assert special.items[0].score == pytest.approx(plain.items[0].score * 1.2)

    async def test_bounds_respected(self, service, registry, make_dataset):
        text = "\n\n".join(f"Breathing note {i}: breathe slowly and rest." for i in range(8))
        dataset = await make_dataset("Notes", text, options=ChunkingOptions(chunk_size=8, overlap=0, strategy="fixed"))
        await registry.link_dataset("coach", dataset.id)

        bundle = await service.retrieve_context("coach", "breathe slowly and rest", max_chunks=2, threshold=-1.0)
        assert len(bundle.items) == 2
        tight = await service.retrieve_context("coach", "breathe slowly and rest", max_tokens=0, threshold=-1.0)
        assert tight.context_used is False

    async def test_max_chunks_above_top_k(self, service, registry, make_dataset):
        text = " ".join(f"breath{i}" for i in range(60))
        dataset = await make_dataset("Notes", text, options=ChunkingOptions(chunk_size=4, overlap=0, strategy="fixed"))
        await registry.link_dataset("coach", dataset.id)
        assert dataset.chunk_count == 15

        bundle = await service.retrieve_context("coach", "breath1 breath2", max_chunks=15, threshold=-1.0)
        assert len(bundle.items) == 15

    async def test_metadata(self, service, registry, make_dataset):
        dataset = await make_dataset("Breathing", BREATHING)
        await registry.link_dataset("coach", dataset.id)
        bundle = await service.retrieve_context("coach", BREATHING, intent_tags=["custom"])
        assert bundle.metadata["consumer_id"] == "coach"
        assert bundle.metadata["scope"] == 1
        assert "custom" in bundle.metadata["intent_tags"]
        assert "[1] Breathing, chunk 0" in bundle.render()


class TestUsageAndRecency:
    async def test_recently_used_chunk_boosted(self, service, registry, make_dataset):
        dataset = await make_dataset("Breathing", BREATHING)
        await registry.link_dataset("coach", dataset.id)
        used_at = datetime(2026, 5, 1, 8, 0)

        first = await service.retrieve_context("coach", BREATHING, now=used_at)
        await service.record_usage("coach", first, now=used_at)

        soon = await service.retrieve_context("coach", BREATHING, now=used_at + timedelta(hours=2))
        later = await service.retrieve_context("coach", BREATHING, now=used_at + timedelta(hours=30))

        assert math.isclose(soon.items[0].score, first.items[0].score * 1.1)
        assert math.isclose(later.items[0].score, first.items[0].score)
        links = await registry.get_links("coach")
        assert links[0].usage_count == 1

    async def test_retrieval_alone_records_nothing(self, service, registry, make_dataset):
        dataset = await make_dataset("Breathing", BREATHING)
        await registry.link_dataset("coach", dataset.id)
        await service.retrieve_context("coach", BREATHING)
        assert (await registry.get_links("coach"))[0].usage_count == 0

    async def test_empty_bundle_not_recorded(self, service, registry):
        bundle = await service.retrieve_context("nobody", BREATHING)
        await service.record_usage("nobody", bundle)
        assert await registry.get_links("nobody") == []


class TestCompatibility:
    async def commit_raw(self, store, name, model_id, dimension, backend=EmbeddingBackendType.LOCAL):
        dataset = await store.create_dataset(name, embedding_backend=backend)
        values = fake_vector(BREATHING, dimension)
        await store.commit_dataset(
            dataset.id, [(Draft(BREATHING, 0, len(BREATHING), 9), EmbeddingVector.from_values(values, model_id))]
        )
        return dataset

    async def test_other_model_skipped(self, service, registry, store, make_dataset):
        good = await make_dataset("Good", BREATHING)
        other = await self.commit_raw(store, "Other model", "another-model", FAKE_DIMENSION)
        await registry.link_dataset("coach", good.id)
        await registry.link_dataset("coach", other.id)

        bundle = await service.retrieve_context("coach", BREATHING)
        assert [item.dataset_id for item in bundle.items] == [good.id]

    async def test_other_dimension_skipped(self, service, registry, store):
        small = await self.commit_raw(store, "Small", "fake-model", 3)
        await registry.link_dataset("coach", small.id)
        bundle = await service.retrieve_context("coach", BREATHING)
        assert bundle.context_used is False

    async def test_empty_dataset_skipped_quietly(self, service, registry, make_dataset, caplog):
        good = await make_dataset("Good", BREATHING)
        empty = await make_dataset("Empty", "  \n ")
        await registry.link_dataset("coach", good.id)
        await registry.link_dataset("coach", empty.id)

        with caplog.at_level("WARNING", logger="retrieval.service"):
            bundle = await service.retrieve_context("coach", BREATHING)
        assert [item.dataset_id for item in bundle.items] == [good.id]
        assert "Skipping dataset" not in caplog.text

    async def test_unconfigured_backend_skipped(self, service, registry, store, make_dataset):
        good = await make_dataset("Good", BREATHING)
        cloud = await self.commit_raw(store, "Cloud", "text-embedding-3-small", FAKE_DIMENSION, EmbeddingBackendType.CLOUD)
        await registry.link_dataset("coach", good.id)
        await registry.link_dataset("coach", cloud.id)

        bundle = await service.retrieve_context("coach", BREATHING)
        assert [item.dataset_id for item in bundle.items] == [good.id]


class TestSearch:
    async def test_raw_search(self, service, make_dataset):
        breathing = await make_dataset("Breathing", BREATHING)
        nutrition = await make_dataset("Nutrition", NUTRITION)

        results = await service.search(BREATHING, [breathing.id, nutrition.id], threshold=-1.0)
        assert results[0].dataset_id == breathing.id
        assert results[0].similarity == pytest.approx(1.0)
        assert [r.similarity for r in results] == sorted((r.similarity for r in results), reverse=True)

    async def test_query_embedded_once(self, service, backend, make_dataset):
        dataset = await make_dataset("Breathing", BREATHING)
        calls = backend.calls
        await service.search("slow breathing", [dataset.id])
        await service.search("slow breathing", [dataset.id])
        assert backend.calls == calls + 1

    @pytest.mark.parametrize("query", ["", "   "])
    async def test_blank_query_rejected(self, service, query):
        with pytest.raises(ValidationError):
            await service.retrieve_context("coach", query)
        with pytest.raises(ValidationError):
            await service.search(query, [])
