"""
Chunking Strategies for the RAG support engine.

Splits extracted text into ordered, bounded, overlapping chunk drafts.
Budgets are expressed in tokens (see ingestion.tokenizer).
"""

import bisect
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from retrieval.errors import ValidationError

from .tagging import ContentTagger
from .tokenizer import Token, tokenize

logger = logging.getLogger(__name__)


class ChunkStrategy(Enum):
    """Supported chunking strategies."""
    FIXED = "fixed"
    STRUCTURE_AWARE = "structure_aware"


@dataclass
class ChunkingOptions:
    """Options shared by all strategies."""
    chunk_size: int = 512  # target tokens per chunk
    overlap: int = 50  # tokens shared by consecutive windows
    strategy: ChunkStrategy = ChunkStrategy.STRUCTURE_AWARE
    oversize_tolerance: float = 1.5  # structural units up to chunk_size * this stay intact

    def validate(self) -> None:
        """Reject malformed options before any text is processed."""
        if isinstance(self.strategy, str):
            try:
                self.strategy = ChunkStrategy(self.strategy)
            except ValueError:
                raise ValidationError(
                    f"Unknown chunking strategy: {self.strategy}", field="strategy"
                ) from None
        if not isinstance(self.chunk_size, int) or self.chunk_size <= 0:
            raise ValidationError("chunk_size must be a positive integer", field="chunk_size")
        if not isinstance(self.overlap, int) or self.overlap < 0:
            raise ValidationError("overlap must be a non-negative integer", field="overlap")
        if self.overlap >= self.chunk_size:
            raise ValidationError(
                f"overlap ({self.overlap}) must be smaller than chunk_size ({self.chunk_size})",
                field="overlap",
            )
        if self.oversize_tolerance < 1.0:
            raise ValidationError("oversize_tolerance must be >= 1.0", field="oversize_tolerance")


@dataclass
class ChunkDraft:
    """A chunk produced by a strategy, before it is embedded and stored."""
    index: int
    text: str
    char_start: int
    char_end: int
    token_count: int
    section_title: Optional[str] = None
    page_number: Optional[int] = None
    chunk_type: str = "body"
    tags: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


def window_spans(token_count: int, chunk_size: int, overlap: int) -> List[Tuple[int, int]]:
    """
    Token index ranges of a sliding window.

    Windows hold chunk_size tokens and advance by chunk_size - overlap;
    the final window may be shorter.
    """
    if token_count <= 0:
        return []
    step = chunk_size - overlap
    spans = []
    start = 0
    while True:
        end = min(start + chunk_size, token_count)
        spans.append((start, end))
        if end >= token_count:
            break
        start += step
    return spans


def page_for_offset(page_offsets: Optional[Sequence[int]], char_offset: int) -> Optional[int]:
    """1-based page number containing char_offset, given page start offsets."""
    if not page_offsets:
        return None
    return max(1, bisect.bisect_right(page_offsets, char_offset))


class ChunkingStrategy(ABC):
    """Abstract base class for chunking strategies."""

    def __init__(self, options: ChunkingOptions, tagger: Optional[ContentTagger] = None):
        options.validate()
        self.options = options
        self.tagger = tagger or ContentTagger()

    @abstractmethod
    def chunk(self, text: str, page_offsets: Optional[Sequence[int]] = None) -> List[ChunkDraft]:
        """
        Split text into chunk drafts.

        Args:
            text: Input text to chunk
            page_offsets: Optional character offsets where each page starts

        Returns:
            Ordered list of ChunkDraft objects
        """
        pass

    def _draft(
        self,
        text: str,
        tokens: Sequence[Token],
        index: int,
        page_offsets: Optional[Sequence[int]],
        section_title: Optional[str] = None,
        chunk_type: Optional[str] = None,
    ) -> ChunkDraft:
        char_start = tokens[0].start
        char_end = tokens[-1].end
        chunk_text = text[char_start:char_end]
        tags = self.tagger.detect(chunk_text)
        return ChunkDraft(
            index=index,
            text=chunk_text,
            char_start=char_start,
            char_end=char_end,
            token_count=len(tokens),
            section_title=section_title,
            page_number=page_for_offset(page_offsets, char_start),
            chunk_type=chunk_type or self.tagger.chunk_type(chunk_text, tags),
            tags=sorted(tags),
            metadata={"strategy": self.options.strategy.value},
        )


class FixedSizeChunker(ChunkingStrategy):
    """
    Fixed-size token windows with overlap.

    Best for: unstructured prose, transcripts, extracted PDF text
    """

    def chunk(self, text: str, page_offsets: Optional[Sequence[int]] = None) -> List[ChunkDraft]:
        """Split text into fixed-size token windows."""
        if not text or not text.strip():
            return []

        tokens = tokenize(text)
        drafts = []
        for start, end in window_spans(len(tokens), self.options.chunk_size, self.options.overlap):
            drafts.append(self._draft(text, tokens[start:end], len(drafts), page_offsets))

        for draft in drafts:
            draft.metadata["total_chunks"] = len(drafts)

        logger.debug(f"Fixed chunking produced {len(drafts)} chunks from {len(tokens)} tokens")
        return drafts


@dataclass
class _Unit:
    """A structural unit of the source text."""
    kind: str  # heading, paragraph, list_item
    start: int
    end: int
    title: Optional[str] = None


class StructureAwareChunker(ChunkingStrategy):
    """
    Chunking based on document structure.

    Units (headings, paragraphs, list items) are merged until they approach
    chunk_size. A unit is kept intact up to chunk_size * oversize_tolerance
    and only split into fixed windows beyond that. A heading always starts a
    new chunk and becomes the section title of what follows it.

    Best for: handbooks, worksheets, guides with headings and lists
    """

    HEADING_PATTERN = re.compile(
        r"^(?:#{1,6}\s+\S.*|[A-Z][^.!?\n]{0,78}:|[A-Z][A-Z0-9 ,&/()'\-]{2,78})$"
    )
    LIST_ITEM_PATTERN = re.compile(r"^(?:\d{1,3}[.)]|[a-zA-Z][.)]|[-*•])\s+\S")

    def chunk(self, text: str, page_offsets: Optional[Sequence[int]] = None) -> List[ChunkDraft]:
        """Split text into structure-aligned chunks."""
        if not text or not text.strip():
            return []

        size = self.options.chunk_size
        limit = int(size * self.options.oversize_tolerance)

        drafts: List[ChunkDraft] = []
        buffer: List[Token] = []
        buffer_kinds: List[str] = []
        section_title: Optional[str] = None

        def emit(tokens: Sequence[Token], chunk_type: Optional[str] = None) -> None:
            drafts.append(self._draft(
                text, tokens, len(drafts), page_offsets,
                section_title=section_title, chunk_type=chunk_type,
            ))

        def flush() -> None:
            if not buffer:
                return
            kinds = set(buffer_kinds)
            if kinds == {"heading"}:
                emit(buffer, chunk_type="header")
            elif kinds <= {"heading", "list_item"}:
                tags = self.tagger.detect(text[buffer[0].start:buffer[-1].end])
                kind = self.tagger.chunk_type("", tags)
                emit(buffer, chunk_type=kind if kind != "body" else "list")
            else:
                emit(buffer)
            buffer.clear()
            buffer_kinds.clear()

        for unit in self._split_units(text):
            unit_tokens = self._unit_tokens(text, unit)
            if not unit_tokens:
                continue
            count = len(unit_tokens)

            if unit.kind == "heading":
                flush()
                section_title = unit.title
                if count > limit:
                    for start, end in window_spans(count, size, self.options.overlap):
                        emit(unit_tokens[start:end], chunk_type="header")
                    continue
                buffer.extend(unit_tokens)
                buffer_kinds.append("heading")
                continue

            if count > limit:
                flush()
                for start, end in window_spans(count, size, self.options.overlap):
                    emit(unit_tokens[start:end])
                continue

            if count > size:
                # Too big to merge but within tolerance: kept whole. A lone
                # pending heading rides along when it still fits.
                if buffer and set(buffer_kinds) == {"heading"} and len(buffer) + count <= limit:
                    buffer.extend(unit_tokens)
                    buffer_kinds.append(unit.kind)
                    flush()
                else:
                    flush()
                    buffer.extend(unit_tokens)
                    buffer_kinds.append(unit.kind)
                    flush()
                continue

            if len(buffer) + count > size:
                flush()
            buffer.extend(unit_tokens)
            buffer_kinds.append(unit.kind)

        flush()

        for draft in drafts:
            draft.metadata["total_chunks"] = len(drafts)

        logger.debug(f"Structure-aware chunking produced {len(drafts)} chunks")
        return drafts

    def _unit_tokens(self, text: str, unit: _Unit) -> List[Token]:
        return [
            Token(t.text, t.start + unit.start, t.end + unit.start)
            for t in tokenize(text[unit.start:unit.end])
        ]

    def _split_units(self, text: str) -> List[_Unit]:
        """Segment text into headings, paragraphs and list items."""
        units: List[_Unit] = []
        current: Optional[_Unit] = None
        offset = 0

        for line in text.splitlines(keepends=True):
            line_start = offset
            offset += len(line)
            stripped = line.strip()

            if not stripped:
                if current:
                    units.append(current)
                    current = None
                continue

            start = line_start + (len(line) - len(line.lstrip()))
            end = line_start + len(line.rstrip())

            if self._is_heading(stripped):
                if current:
                    units.append(current)
                    current = None
                title = stripped.lstrip("#").strip().rstrip(":").strip()
                units.append(_Unit("heading", start, end, title=title or None))
            elif self.LIST_ITEM_PATTERN.match(stripped):
                if current:
                    units.append(current)
                current = _Unit("list_item", start, end)
            elif current:
                current.end = end
            else:
                current = _Unit("paragraph", start, end)

        if current:
            units.append(current)
        return units

    def _is_heading(self, line: str) -> bool:
        if not self.HEADING_PATTERN.match(line):
            return False
        if line.startswith("#"):
            return True
        # All-caps and colon-terminated headings must be short
        return len(line.split()) <= 10 and any(c.isalpha() for c in line)


def get_chunker(
    options: Optional[ChunkingOptions] = None,
    tagger: Optional[ContentTagger] = None,
) -> ChunkingStrategy:
    """
    Get the chunker for the configured strategy.

    Args:
        options: Chunking options (validated here)
        tagger: Optional shared content tagger

    Returns:
        ChunkingStrategy instance
    """
    options = options or ChunkingOptions()
    options.validate()
    chunker_map = {
        ChunkStrategy.FIXED: FixedSizeChunker,
        ChunkStrategy.STRUCTURE_AWARE: StructureAwareChunker,
    }
    return chunker_map[options.strategy](options, tagger)


def chunk_text(
    text: str,
    options: Optional[ChunkingOptions] = None,
    page_offsets: Optional[Sequence[int]] = None,
    tagger: Optional[ContentTagger] = None,
) -> List[ChunkDraft]:
    """Validate options, then chunk text with the selected strategy."""
    return get_chunker(options, tagger).chunk(text, page_offsets)
