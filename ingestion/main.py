"""
RAG Support Engine ingestion CLI.

Usage:
    python -m ingestion.main --file docs/cbt_workbook.pdf --name "CBT Workbook"
    python -m ingestion.main --file notes.md --name "Care notes" --category care --backend cloud
    python -m ingestion.main --file guide.docx --name "DBT Guide" --link therapist:1.5 --link coach
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional, Tuple

from config.settings import Settings, get_settings
from database.session import Database
from retrieval.consumers import SqlConsumerRegistry, validate_weight
from retrieval.embedder import build_gateway
from retrieval.errors import RAGError, ValidationError
from retrieval.vector_store import VectorStore

from .chunking_strategies import ChunkingOptions
from .pipeline import IngestionPipeline

logger = logging.getLogger(__name__)


def parse_link(value: str) -> Tuple[str, float]:
    """Parse CONSUMER[:WEIGHT]."""
    consumer_id, _, weight = value.partition(":")
    if not consumer_id:
        raise ValidationError(f"Invalid link: {value!r}", field="link")
    return consumer_id, validate_weight(weight) if weight else 1.0


async def run(args: argparse.Namespace, settings: Settings) -> int:
    path = Path(args.file)
    if not path.exists():
        logger.error(f"File not found: {path}")
        return 1

    links = [parse_link(value) for value in args.link or []]
    options = ChunkingOptions(
        chunk_size=args.chunk_size or settings.chunk_size,
        overlap=settings.chunk_overlap if args.overlap is None else args.overlap,
        strategy=args.strategy or settings.chunk_strategy,
    )
    options.validate()

    if settings.is_sqlite:
        Path(settings.data_directory).mkdir(parents=True, exist_ok=True)
    database = Database(settings.database_url, echo=settings.database_echo)
    await database.create_all()

    try:
        store = VectorStore(database)
        pipeline = IngestionPipeline(
            store,
            build_gateway(settings),
            options=options,
            max_retries=settings.ingest_max_retries,
            backoff_seconds=settings.ingest_retry_backoff_seconds,
        )
        dataset = await pipeline.create_dataset(
            args.name,
            source_category=args.category,
            backend=args.backend or settings.default_embedding_backend,
            file_name=path.name,
            file_type=path.suffix.lower().lstrip("."),
        )
        report = await pipeline.ingest_file(dataset.id, path)

        registry = SqlConsumerRegistry(database)
        for consumer_id, weight in links:
            await registry.link_dataset(consumer_id, dataset.id, weight=weight)

        logger.info(
            f"Dataset {dataset.id} ({args.name}): {report.chunk_count} chunks, "
            f"model={report.embedding_model}, dim={report.embedding_dimension}"
        )
        print(dataset.id)
        return 0
    finally:
        await database.dispose()


def main(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(description="RAG Support Engine Document Ingestion")
    parser.add_argument("--file", required=True, help="Path to a PDF, DOCX, text or markdown file")
    parser.add_argument("--name", required=True, help="Dataset display name")
    parser.add_argument("--category", help="Source category tag")
    parser.add_argument("--backend", choices=["local", "cloud"], help="Embedding backend")
    parser.add_argument("--strategy", choices=["fixed", "structure_aware"], help="Chunking strategy")
    parser.add_argument("--chunk-size", type=int, help="Target tokens per chunk")
    parser.add_argument("--overlap", type=int, help="Tokens shared by consecutive chunks")
    parser.add_argument(
        "--link", action="append", metavar="CONSUMER[:WEIGHT]",
        help="Link the dataset to a consumer (repeatable)",
    )
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"])

    args = parser.parse_args(argv)
    settings = get_settings()

    logging.basicConfig(
        level=getattr(logging, (args.log_level or settings.log_level).upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    try:
        code = asyncio.run(run(args, settings))
    except RAGError as e:
        logger.error(f"Ingestion failed: {e}")
        code = 1

    sys.exit(code)


if __name__ == "__main__":
    main()
