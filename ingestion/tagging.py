"""
Content tagging for chunks and queries.

Assigns a small, closed vocabulary of tags to text using pattern rules.
Chunk tags are stored at ingestion; query-intent tags are derived with the
same rules at retrieval time so that the two sides are comparable.
"""

import logging
import re
from typing import Dict, Iterable, Optional, Pattern, Set

logger = logging.getLogger(__name__)


class ContentTagger:
    """
    Rule-based tagger.

    Structural tags describe what kind of passage a chunk is
    (instructions, example, exercise). Concept tags describe its topic.
    """

    STRUCTURE_PATTERNS: Dict[str, str] = {
        "instructions": r"\b(?:try to|remember to|it is important to|you should|follow these|steps?:|first,|second,|third,|next,)",
        "example": r"\b(?:for example|such as|let's say|imagine|example:)",
        "exercise": r"\b(?:exercise|practice|homework|worksheet|fill in|write down)",
    }

    CONCEPT_PATTERNS: Dict[str, str] = {
        "cognitive-behavioral": r"\b(?:cognitive|thinking|thoughts?|beliefs?|automatic)\b",
        "cognitive-distortions": r"\b(?:distortions?|catastrophi[sz]ing|black.and.white)\b",
        "dialectical-behavioral": r"\b(?:distress.tolerance|wise.mind|emotion.regulation)\b",
        "dbt-skills": r"\b(?:tipp|distraction|self.soothing)\b",
        "mindfulness": r"\b(?:mindfulness|meditation|present.moment|awareness)\b",
        "coping-skills": r"\b(?:coping|strateg(?:y|ies)|techniques?|skills?)\b",
        "mental-health": r"\b(?:anxiety|depression|stress)\b",
        "medication": r"\b(?:medications?|medicines?|dosage|doses?|prescriptions?|pills?)\b",
        "appointments": r"\b(?:appointments?|check-?ups?|doctor'?s? visits?)\b",
        "nutrition": r"\b(?:nutrition|diet|meals?|hydration)\b",
        "sleep": r"\b(?:sleep|insomnia|bedtime)\b",
    }

    def __init__(self, extra_patterns: Optional[Dict[str, str]] = None):
        patterns = {**self.STRUCTURE_PATTERNS, **self.CONCEPT_PATTERNS, **(extra_patterns or {})}
        self._compiled: Dict[str, Pattern[str]] = {
            tag: re.compile(pattern, re.IGNORECASE) for tag, pattern in patterns.items()
        }

    @property
    def vocabulary(self) -> Set[str]:
        return set(self._compiled)

    def detect(self, text: str) -> Set[str]:
        """Return every tag whose pattern matches the text."""
        if not text or not text.strip():
            return set()
        tags = {tag for tag, pattern in self._compiled.items() if pattern.search(text)}
        if "exercise" in tags:
            tags.add("worksheet")
        return tags

    def chunk_type(self, text: str, tags: Optional[Iterable[str]] = None) -> str:
        """Classify a passage as instruction, example, exercise or body."""
        found = set(tags) if tags is not None else self.detect(text)
        for tag, kind in (("instructions", "instruction"), ("example", "example"), ("exercise", "exercise")):
            if tag in found:
                return kind
        return "body"
