"""
Tokenizer for chunking and token budgeting.

A token is a maximal run of non-whitespace characters. Every token keeps its
character span in the source text so chunk offsets can be reported exactly.
"""

import re
from dataclasses import dataclass
from typing import List

_TOKEN_PATTERN = re.compile(r"\S+")


@dataclass(frozen=True)
class Token:
    """A token and its [start, end) character span."""
    text: str
    start: int
    end: int


def tokenize(text: str) -> List[Token]:
    """Split text into whitespace-delimited tokens with character spans."""
    if not text:
        return []
    return [Token(m.group(), m.start(), m.end()) for m in _TOKEN_PATTERN.finditer(text)]


def count_tokens(text: str) -> int:
    """Count tokens in text."""
    if not text:
        return 0
    return sum(1 for _ in _TOKEN_PATTERN.finditer(text))
