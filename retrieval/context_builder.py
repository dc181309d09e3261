"""
Context Assembler for the RAG support engine.

Turns reranked results into a bounded, attributed context bundle for the
generation layer.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from .consumers import AccessLevel
from .errors import ValidationError
from .retriever import RetrievalResult

logger = logging.getLogger(__name__)


@dataclass
class ContextItem:
    """One attributed chunk in a context bundle."""
    dataset_id: str
    dataset_name: str
    chunk_id: str
    ordinal: int
    score: float
    similarity: float
    token_count: int
    access_level: AccessLevel = AccessLevel.FULL
    text: Optional[str] = None
    section_title: Optional[str] = None
    page_number: Optional[int] = None
    tags: List[str] = field(default_factory=list)

    def citation(self) -> str:
        parts = [self.dataset_name, f"chunk {self.ordinal}"]
        if self.section_title:
            parts.append(f'section "{self.section_title}"')
        if self.page_number is not None:
            parts.append(f"page {self.page_number}")
        return ", ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dataset_id": self.dataset_id,
            "dataset_name": self.dataset_name,
            "chunk_id": self.chunk_id,
            "ordinal": self.ordinal,
            "score": round(self.score, 6),
            "similarity": round(self.similarity, 6),
            "token_count": self.token_count,
            "access_level": self.access_level.value,
            "text": self.text,
            "section_title": self.section_title,
            "page_number": self.page_number,
            "tags": self.tags,
        }


@dataclass
class ContextBundle:
    """Assembled context handed to the generation layer."""
    items: List[ContextItem] = field(default_factory=list)
    context_used: bool = False
    total_tokens: int = 0
    query: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def empty(cls, query: Optional[str] = None, **metadata) -> "ContextBundle":
        return cls(items=[], context_used=False, total_tokens=0, query=query, metadata=metadata)

    def render(self) -> str:
        """
        Format the bundle as numbered, attributed sources.

        Returns:
            Prompt-ready text; empty string when no context was used
        """
        if not self.context_used:
            return ""

        blocks = []
        for i, item in enumerate(self.items, 1):
            header = f"[{i}] {item.citation()} (score {item.score:.3f})"
            if item.access_level == AccessLevel.REFERENCE_ONLY:
                blocks.append(f"{header} - reference only")
            elif item.access_level == AccessLevel.SUMMARY:
                blocks.append(f"{header} - summarize, do not quote\n{item.text}")
            else:
                blocks.append(f"{header}\n{item.text}")
        return "\n\n".join(blocks)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "context_used": self.context_used,
            "items": [item.to_dict() for item in self.items],
            "total_tokens": self.total_tokens,
            "query": self.query,
            "metadata": self.metadata,
        }


class ContextAssembler:
    """
    Selects a bounded prefix of reranked results.

    A chunk is included whole or not at all; selection stops at the first
    result that would break the chunk or token bound.
    """

    def __init__(self, max_chunks: int = 5, max_tokens: int = 2000):
        self.max_chunks = max_chunks
        self.max_tokens = max_tokens

    def assemble(
        self,
        results: Iterable[RetrievalResult],
        max_chunks: Optional[int] = None,
        max_tokens: Optional[int] = None,
        query: Optional[str] = None,
    ) -> ContextBundle:
        """
        Build a ContextBundle from reranked results.

        Args:
            results: Reranked results, best first
            max_chunks: Maximum number of items (defaults to the instance bound)
            max_tokens: Maximum cumulative tokens (defaults to the instance bound)
            query: Query text kept for reference

        Returns:
            ContextBundle with context_used set explicitly
        """
        max_chunks = self.max_chunks if max_chunks is None else max_chunks
        max_tokens = self.max_tokens if max_tokens is None else max_tokens
        if max_chunks < 0:
            raise ValidationError("max_chunks must not be negative", field="max_chunks")
        if max_tokens < 0:
            raise ValidationError("max_tokens must not be negative", field="max_tokens")

        results = list(results)
        items: List[ContextItem] = []
        seen: Set[Tuple[str, int]] = set()
        total_tokens = 0
        duplicates = 0

        for result in results:
            key = (result.dataset_id, result.ordinal)
            if key in seen:
                duplicates += 1
                continue
            if len(items) >= max_chunks:
                break

            access = result.link.access_level if result.link else AccessLevel.FULL
            cost = 0 if access == AccessLevel.REFERENCE_ONLY else result.chunk.token_count
            if total_tokens + cost > max_tokens:
                break

            seen.add(key)
            total_tokens += cost
            chunk = result.chunk
            items.append(ContextItem(
                dataset_id=chunk.dataset_id,
                dataset_name=chunk.dataset_name,
                chunk_id=chunk.chunk_id,
                ordinal=chunk.ordinal,
                score=result.score,
                similarity=result.similarity,
                token_count=cost,
                access_level=access,
                text=None if access == AccessLevel.REFERENCE_ONLY else chunk.text,
                section_title=chunk.section_title,
                page_number=chunk.page_number,
                tags=list(chunk.tags),
            ))

        if duplicates:
            logger.warning(f"Dropped {duplicates} duplicate chunks while assembling context")

        return ContextBundle(
            items=items,
            context_used=bool(items),
            total_tokens=total_tokens,
            query=query,
            metadata={
                "candidates": len(results),
                "included": len(items),
                "max_chunks": max_chunks,
                "max_tokens": max_tokens,
            },
        )
