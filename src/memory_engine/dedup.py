"""Lexical near-duplicate detection between memory contents."""

from __future__ import annotations

from collections.abc import Iterable

from .models import MemoryRecord, SimilarityCheck

EXTRACTION_THRESHOLD = 0.85
CONSOLIDATION_THRESHOLD = 0.70


def tokenize(text: str) -> set[str]:
    """Lowercase whitespace tokens as a set."""
    return set(text.lower().split())


def word_overlap(a: str, b: str) -> float:
    """``|A & B| / max(|A|, |B|)`` over the word sets of ``a`` and ``b``."""
    words_a = tokenize(a)
    words_b = tokenize(b)
    longest = max(len(words_a), len(words_b))
    if longest == 0:
        return 0.0
    return len(words_a & words_b) / longest


class Deduplicator:
    """Finds the first existing memory whose word overlap reaches a threshold.

    The extraction gate uses 0.85; consolidation uses a looser 0.70 to find
    merge candidates.
    """

    def __init__(self, threshold: float = EXTRACTION_THRESHOLD):
        self.threshold = threshold

    def find_similar(
        self,
        content: str,
        existing: Iterable[MemoryRecord],
        threshold: float | None = None,
    ) -> SimilarityCheck:
        threshold = self.threshold if threshold is None else threshold
        for memory in existing:
            similarity = word_overlap(content, memory.content)
            if similarity >= threshold:
                return SimilarityCheck(
                    has_similar=True,
                    similar_memory=memory,
                    similarity=similarity,
                )
        return SimilarityCheck(has_similar=False)

    def is_duplicate(self, a: str, b: str, threshold: float | None = None) -> bool:
        threshold = self.threshold if threshold is None else threshold
        return word_overlap(a, b) >= threshold
