"""Tests for the ingestion pipeline, extractors and CLI helpers."""

import argparse
import asyncio
from typing import List

import pytest

from config.settings import Settings
from database.models import DatasetStatus
from ingestion import main as cli
from ingestion.chunking_strategies import ChunkingOptions
from ingestion.extractors import PlainTextExtractor, default_extractors, extractor_for
from ingestion.pipeline import IngestionPipeline
from retrieval.embedder import EmbeddingBackendType, EmbeddingGateway
from retrieval.errors import BackendUnavailableError, NotFoundError, ValidationError

from conftest import FakeEmbeddingBackend, fake_vector

GUIDE = """# Sleep Hygiene

Keep a regular bedtime and wake time every day.

Avoid screens for an hour before sleep.

# Relaxation

Try slow breathing for five minutes when you lie down.
"""


class BlockingBackend(FakeEmbeddingBackend):
    """Waits for a release signal before returning vectors."""

    def __init__(self):
        super().__init__()
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        self.started.set()
        await self.release.wait()
        return [fake_vector(t) for t in texts]


def pipeline_with(store, backend, **kwargs):
    gateway = EmbeddingGateway({EmbeddingBackendType.LOCAL: backend}, timeout_seconds=5)
    kwargs.setdefault("backoff_seconds", 0)
    return IngestionPipeline(store, gateway, **kwargs)


# ── Status transitions ────────────────────────────────

class TestIngestionPipeline:
    async def test_ingest_text_marks_ready(self, pipeline, store):
        dataset = await pipeline.create_dataset("Sleep Guide", source_category="sleep")
        assert dataset.status == DatasetStatus.PENDING.value

        report = await pipeline.ingest_text(dataset.id, GUIDE)

        stored = await store.get_dataset(dataset.id)
        assert report.status == DatasetStatus.READY.value
        assert stored.status == DatasetStatus.READY.value
        assert stored.chunk_count == report.chunk_count > 0
        assert stored.embedding_model == "fake-model"
        assert stored.embedding_dimension == 16
        assert stored.processed_at is not None
        assert stored.metadata_json["chunk_strategy"] == "structure_aware"

    async def test_chunks_carry_sections_and_tags(self, pipeline, store):
        dataset = await pipeline.create_dataset("Sleep Guide")
        await pipeline.ingest_text(dataset.id, GUIDE, options=ChunkingOptions(chunk_size=12, overlap=2))

        chunks = await store.list_chunks(dataset.id)
        assert [c.ordinal for c in chunks] == list(range(len(chunks)))
        assert {c.section_title for c in chunks} == {"Sleep Hygiene", "Relaxation"}
        assert any("sleep" in c.tags for c in chunks)

    async def test_unknown_backend_rejected(self, pipeline):
        with pytest.raises(ValidationError):
            await pipeline.create_dataset("Guide", backend="quantum")

    async def test_missing_dataset(self, pipeline):
        with pytest.raises(NotFoundError):
            await pipeline.ingest_text("missing", GUIDE)

    async def test_invalid_options_rejected_before_work(self, pipeline, store, backend):
        dataset = await pipeline.create_dataset("Guide")
        with pytest.raises(ValidationError):
            await pipeline.ingest_text(dataset.id, GUIDE, options=ChunkingOptions(chunk_size=10, overlap=10))
        assert backend.calls == 0
        assert (await store.get_dataset(dataset.id)).status == DatasetStatus.PENDING.value

    async def test_empty_text_commits_no_chunks(self, pipeline, store):
        dataset = await pipeline.create_dataset("Empty")
        report = await pipeline.ingest_text(dataset.id, "   \n\n ")
        assert report.chunk_count == 0
        assert (await store.get_dataset(dataset.id)).status == DatasetStatus.READY.value

    async def test_reingest_replaces_chunks(self, pipeline, store):
        dataset = await pipeline.create_dataset("Guide")
        await pipeline.ingest_text(dataset.id, GUIDE)
        await pipeline.ingest_text(dataset.id, "A single replacement line.")

        chunks = await store.list_chunks(dataset.id)
        assert [c.text for c in chunks] == ["A single replacement line."]


# ── Retries and failure ───────────────────────────────

class TestRetries:
    async def test_transient_failure_retried(self, store):
        backend = FakeEmbeddingBackend(fail_times=1)
        pipeline = pipeline_with(store, backend, max_retries=2)
        dataset = await pipeline.create_dataset("Guide")

        report = await pipeline.ingest_text(dataset.id, GUIDE)

        assert report.attempts == 2
        assert (await store.get_dataset(dataset.id)).status == DatasetStatus.READY.value

    async def test_exhausted_retries_mark_failed(self, store):
        backend = FakeEmbeddingBackend(fail_times=10)
        pipeline = pipeline_with(store, backend, max_retries=2)
        dataset = await pipeline.create_dataset("Guide")

        with pytest.raises(BackendUnavailableError):
            await pipeline.ingest_text(dataset.id, GUIDE)

        stored = await store.get_dataset(dataset.id)
        assert backend.calls == 3
        assert stored.status == DatasetStatus.FAILED.value
        assert "fake backend down" in stored.error_message
        assert stored.chunk_count == 0

    async def test_backoff_doubles(self, store, monkeypatch):
        delays = []

        async def fake_sleep(delay):
            delays.append(delay)

        monkeypatch.setattr("ingestion.pipeline.asyncio.sleep", fake_sleep)
        pipeline = pipeline_with(store, FakeEmbeddingBackend(fail_times=3), max_retries=3, backoff_seconds=0.5)
        dataset = await pipeline.create_dataset("Guide")

        await pipeline.ingest_text(dataset.id, GUIDE)
        assert delays == [0.5, 1.0, 2.0]

    async def test_failed_dataset_can_be_ingested_again(self, store):
        backend = FakeEmbeddingBackend(fail_times=1)
        pipeline = pipeline_with(store, backend, max_retries=0)
        dataset = await pipeline.create_dataset("Guide")

        with pytest.raises(BackendUnavailableError):
            await pipeline.ingest_text(dataset.id, GUIDE)
        await pipeline.ingest_text(dataset.id, GUIDE)

        stored = await store.get_dataset(dataset.id)
        assert stored.status == DatasetStatus.READY.value


# ── Cancellation and re-ingestion visibility ──────────

class TestConcurrency:
    async def test_cancel_restores_pending(self, store):
        backend = BlockingBackend()
        pipeline = pipeline_with(store, backend)
        dataset = await pipeline.create_dataset("Guide")

        task = asyncio.create_task(pipeline.ingest_text(dataset.id, GUIDE))
        await backend.started.wait()
        assert (await store.get_dataset(dataset.id)).status == DatasetStatus.PROCESSING.value

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        stored = await store.get_dataset(dataset.id)
        assert stored.status == DatasetStatus.PENDING.value
        assert stored.chunk_count == 0

    async def test_ready_dataset_stays_queryable_during_reingest(self, store):
        first = FakeEmbeddingBackend()
        dataset = await pipeline_with(store, first).create_dataset("Guide")
        await pipeline_with(store, first).ingest_text(dataset.id, "Original content line.")

        blocking = BlockingBackend()
        task = asyncio.create_task(pipeline_with(store, blocking).ingest_text(dataset.id, GUIDE))
        await blocking.started.wait()

        during = [chunk.text async for chunk, _ in store.query_scope([dataset.id])]
        assert during == ["Original content line."]
        assert (await store.get_dataset(dataset.id)).status == DatasetStatus.READY.value

        blocking.release.set()
        await task
        after = [chunk.text async for chunk, _ in store.query_scope([dataset.id])]
        assert after != ["Original content line."]
        assert "Sleep Hygiene" in after[0]

    async def test_concurrent_ingestions_are_serialized(self, store):
        first, second = BlockingBackend(), BlockingBackend()
        dataset = await pipeline_with(store, first).create_dataset("Guide")

        task_a = asyncio.create_task(pipeline_with(store, first).ingest_text(dataset.id, GUIDE))
        await first.started.wait()
        task_b = asyncio.create_task(pipeline_with(store, second).ingest_text(dataset.id, GUIDE))
        for _ in range(5):
            await asyncio.sleep(0)
        assert not second.started.is_set()

        first.release.set()
        await task_a
        task_b.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task_b

        stored = await store.get_dataset(dataset.id)
        assert stored.status == DatasetStatus.READY.value
        visible = [chunk async for chunk, _ in store.query_scope([dataset.id])]
        assert len(visible) == stored.chunk_count > 0


# ── Files ─────────────────────────────────────────────

class TestIngestFile:
    async def test_markdown_file(self, pipeline, store, tmp_path):
        path = tmp_path / "upload-123.md"
        path.write_text(GUIDE)
        dataset = await pipeline.create_dataset("Sleep Guide")

        report = await pipeline.ingest_file(dataset.id, path, file_name="sleep_guide.md")

        stored = await store.get_dataset(dataset.id)
        assert report.chunk_count > 0
        assert stored.metadata_json["title"] == "Sleep Hygiene"
        assert stored.metadata_json["file_name"] == "sleep_guide.md"
        assert "page_offsets" not in stored.metadata_json

    async def test_unsupported_suffix(self, pipeline, tmp_path):
        path = tmp_path / "sheet.xlsx"
        path.write_bytes(b"not really a spreadsheet")
        dataset = await pipeline.create_dataset("Sheet")
        with pytest.raises(ValidationError):
            await pipeline.ingest_file(dataset.id, path)

    def test_extractor_lookup(self):
        extractors = default_extractors()
        assert isinstance(extractor_for("notes.MD", extractors), PlainTextExtractor)
        with pytest.raises(ValidationError):
            extractor_for("archive", extractors)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            PlainTextExtractor().extract(tmp_path / "absent.txt")

    def test_plain_text_metadata(self, tmp_path):
        path = tmp_path / "notes.txt"
        path.write_text("one two three")
        document = PlainTextExtractor().extract(path)
        assert document.metadata["word_count"] == 3
        assert document.metadata["file_type"] == "txt"
        assert document.page_offsets is None


# ── CLI ───────────────────────────────────────────────

class TestCli:
    def test_parse_link(self):
        assert cli.parse_link("therapist:1.5") == ("therapist", 1.5)
        assert cli.parse_link("coach") == ("coach", 1.0)

    @pytest.mark.parametrize("value", [":1.0", "coach:2.5", "coach:abc"])
    def test_parse_link_rejects(self, value):
        with pytest.raises(ValidationError):
            cli.parse_link(value)

    async def test_missing_file_exits_nonzero(self, tmp_path):
        args = argparse.Namespace(
            file=str(tmp_path / "absent.pdf"), name="Absent", category=None, backend=None,
            strategy=None, chunk_size=None, overlap=None, link=None, log_level=None,
        )
        settings = Settings(database_url=f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}")
        assert await cli.run(args, settings) == 1
