"""Tests for word-overlap deduplication."""

import pytest

from memory_engine.dedup import (
    CONSOLIDATION_THRESHOLD,
    EXTRACTION_THRESHOLD,
    Deduplicator,
    word_overlap,
)
from memory_engine.models import MemoryType

NEAR_A = "I prefer dark mode for coding"
NEAR_B = "I prefer dark mode for reading"  # 5 of 6 words shared


class TestWordOverlap:
    def test_identical(self):
        assert word_overlap("Alex writes Rust code", "Alex writes Rust code") == 1.0

    def test_case_insensitive(self):
        assert word_overlap("Alex Writes RUST", "alex writes rust") == 1.0

    def test_divides_by_larger_set(self):
        assert word_overlap("one two three four", "one two") == 0.5

    def test_empty_strings(self):
        assert word_overlap("", "") == 0.0
        assert word_overlap("something", "") == 0.0

    def test_repeated_words_count_once(self):
        assert word_overlap("go go go now", "go now") == 1.0

    def test_near_pair_sits_between_gates(self):
        overlap = word_overlap(NEAR_A, NEAR_B)
        assert overlap == pytest.approx(5 / 6)
        assert CONSOLIDATION_THRESHOLD <= overlap < EXTRACTION_THRESHOLD


class TestDeduplicator:
    def test_flags_high_overlap(self, make_memory):
        existing = [make_memory("I work as a senior backend engineer at Acme")]
        check = Deduplicator().find_similar(
            "I work as a senior backend engineer at Acme Corp", existing
        )
        assert check.has_similar is True
        assert check.similarity == pytest.approx(0.9)
        assert check.similar_memory.id == existing[0].id

    def test_near_pair_not_flagged_at_extraction_gate(self, make_memory):
        existing = [make_memory(NEAR_A, memory_type=MemoryType.PREFERENCE)]
        check = Deduplicator().find_similar(NEAR_B, existing)
        assert check.has_similar is False
        assert check.similar_memory is None
        assert check.similarity == 0.0

    def test_near_pair_flagged_at_consolidation_gate(self, make_memory):
        existing = [make_memory(NEAR_A, memory_type=MemoryType.PREFERENCE)]
        check = Deduplicator().find_similar(
            NEAR_B, existing, threshold=CONSOLIDATION_THRESHOLD
        )
        assert check.has_similar is True

    def test_first_match_wins(self, make_memory):
        first = make_memory("User lives in Berlin Germany")
        second = make_memory("User lives in Berlin Germany")
        check = Deduplicator().find_similar("User lives in Berlin Germany", [first, second])
        assert check.similar_memory.id == first.id

    def test_no_existing(self):
        assert Deduplicator().find_similar("anything at all here", []).has_similar is False

    def test_is_duplicate(self):
        dedup = Deduplicator(threshold=0.5)
        assert dedup.is_duplicate("one two three four", "one two") is True
        assert dedup.is_duplicate("one two three four", "one five") is False
