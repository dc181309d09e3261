"""
Ingestion Module for the RAG support engine.

This module turns documents into stored, embedded chunks:
- Document extraction (PDF, DOCX, text/markdown)
- Token-bounded chunking (fixed and structure-aware)
- Content tagging
- The chunk -> embed -> commit pipeline
"""

from .tokenizer import tokenize, count_tokens
from .tagging import ContentTagger
from .chunking_strategies import (
    ChunkStrategy,
    ChunkingOptions,
    ChunkDraft,
    FixedSizeChunker,
    StructureAwareChunker,
    chunk_text,
)
from .extractors import ExtractedDocument, default_extractors
from .pipeline import IngestionPipeline, IngestionReport

__all__ = [
    "tokenize",
    "count_tokens",
    "ContentTagger",
    "ChunkStrategy",
    "ChunkingOptions",
    "ChunkDraft",
    "FixedSizeChunker",
    "StructureAwareChunker",
    "chunk_text",
    "ExtractedDocument",
    "default_extractors",
    "IngestionPipeline",
    "IngestionReport",
]
