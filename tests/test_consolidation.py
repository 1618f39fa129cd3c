"""Tests for near-duplicate consolidation.

Covers:
- Single-link clustering per memory type
- LLM merge with max importance and tag union
- Originals deleted after the merged record is stored
- Skipped clusters on malformed LLM output
- Finishing interrupted deletes
"""

from __future__ import annotations

import json

import pytest

from memory_engine.consolidation import (
    ABSORBED_IDS_KEY,
    MemoryConsolidator,
    cluster_memories,
)
from memory_engine.errors import ConfigurationError
from memory_engine.models import MemoryType, SourceType, StepState

NEAR_A = "I prefer dark mode for coding"
NEAR_B = "I prefer dark mode for reading"
MERGED = "User prefers dark mode for coding and reading"


class TestClusterMemories:
    def test_near_pair_clusters(self, make_memory):
        a = make_memory(NEAR_A, memory_type=MemoryType.PREFERENCE)
        b = make_memory(NEAR_B, memory_type=MemoryType.PREFERENCE)
        clusters = cluster_memories([a, b], threshold=0.70)
        assert [[m.id for m in c] for c in clusters] == [[a.id, b.id]]

    def test_types_never_mix(self, make_memory):
        a = make_memory(NEAR_A, memory_type=MemoryType.PREFERENCE)
        b = make_memory(NEAR_B, memory_type=MemoryType.CONTEXT)
        clusters = cluster_memories([a, b], threshold=0.70)
        assert len(clusters) == 2

    def test_single_link_chains(self, make_memory):
        # a~b and b~c reach 0.75, a~c is only 0.5
        a = make_memory("alpha beta gamma delta")
        b = make_memory("alpha beta gamma omega")
        c = make_memory("alpha beta sigma omega")
        clusters = cluster_memories([a, c, b], threshold=0.70)
        assert len(clusters) == 1
        assert {m.id for m in clusters[0]} == {a.id, b.id, c.id}

    def test_unrelated_stay_apart(self, make_memory):
        a = make_memory("User's name is Alex")
        b = make_memory("User lives in Lisbon Portugal")
        assert len(cluster_memories([a, b], threshold=0.70)) == 2


class TestMemoryConsolidator:
    async def _seed_near_pair(self, store, embedder, make_memory):
        a = make_memory(
            NEAR_A, importance=0.6, memory_type=MemoryType.PREFERENCE,
            tags=["ui", "coding"], embedding=await embedder.embed(NEAR_A),
        )
        b = make_memory(
            NEAR_B, importance=0.8, memory_type=MemoryType.PREFERENCE,
            tags=["ui", "reading"], embedding=await embedder.embed(NEAR_B),
        )
        other = make_memory(
            "User's name is Alex", importance=0.9,
            embedding=await embedder.embed("User's name is Alex"),
        )
        for m in (a, b, other):
            await store.create_memory(m)
        return a, b, other

    @pytest.mark.asyncio
    async def test_merges_and_deletes_originals(self, store, embedder, mock_llm, make_memory):
        a, b, other = await self._seed_near_pair(store, embedder, make_memory)
        mock_llm.complete.return_value = json.dumps({"content": MERGED})
        consolidator = MemoryConsolidator(store, mock_llm, embedder)

        outcome = await consolidator.consolidate("user-1")

        assert outcome.success is True
        assert outcome.consolidations_performed == 1
        consolidation = outcome.consolidations[0]
        assert consolidation.original_ids == [a.id, b.id]
        assert consolidation.consolidated_content == MERGED

        assert await store.get_memory(a.id) is None
        assert await store.get_memory(b.id) is None
        assert await store.get_memory(other.id) is not None

        merged = await store.get_memory(consolidation.consolidated_id)
        assert merged.importance == pytest.approx(0.8)
        assert merged.tags == ["ui", "coding", "reading"]
        assert merged.memory_type is MemoryType.PREFERENCE
        assert merged.source_type is SourceType.CONSOLIDATION
        assert merged.step_state is StepState.DONE
        assert merged.metadata[ABSORBED_IDS_KEY] == [a.id, b.id]
        assert merged.has_embedding

    @pytest.mark.asyncio
    async def test_merge_call_parameters(self, store, embedder, mock_llm, make_memory):
        await self._seed_near_pair(store, embedder, make_memory)
        mock_llm.complete.return_value = json.dumps({"content": MERGED})

        await MemoryConsolidator(store, mock_llm, embedder).consolidate("user-1")

        kwargs = mock_llm.complete.call_args.kwargs
        assert kwargs["max_tokens"] == 200
        assert f"1. {NEAR_A}\n2. {NEAR_B}" in kwargs["user"]

    @pytest.mark.asyncio
    async def test_nothing_to_merge(self, store, embedder, mock_llm, make_memory):
        await store.create_memory(make_memory("User's name is Alex"))

        outcome = await MemoryConsolidator(store, mock_llm, embedder).consolidate("user-1")

        assert outcome.consolidations_performed == 0
        mock_llm.complete.assert_not_called()

    @pytest.mark.asyncio
    async def test_type_filter(self, store, embedder, mock_llm, make_memory):
        await self._seed_near_pair(store, embedder, make_memory)

        outcome = await MemoryConsolidator(store, mock_llm, embedder).consolidate(
            "user-1", MemoryType.FACT
        )

        assert outcome.consolidations_performed == 0
        mock_llm.complete.assert_not_called()

    @pytest.mark.asyncio
    async def test_malformed_response_skips_cluster(self, store, embedder, mock_llm, make_memory):
        a, b, _ = await self._seed_near_pair(store, embedder, make_memory)
        mock_llm.complete.return_value = "I merged them for you!"

        outcome = await MemoryConsolidator(store, mock_llm, embedder).consolidate("user-1")

        assert outcome.success is True
        assert outcome.consolidations_performed == 0
        assert outcome.clusters_skipped == 1
        assert await store.get_memory(a.id) is not None
        assert await store.get_memory(b.id) is not None

    @pytest.mark.asyncio
    async def test_embedding_failure_skips_cluster(self, store, embedder, mock_llm, make_memory):
        a, b, _ = await self._seed_near_pair(store, embedder, make_memory)
        mock_llm.complete.return_value = json.dumps({"content": MERGED})
        embedder.fail = True

        outcome = await MemoryConsolidator(store, mock_llm, embedder).consolidate("user-1")

        assert outcome.clusters_skipped == 1
        assert len(await store.get_user_memories("user-1")) == 3

    @pytest.mark.asyncio
    async def test_configuration_error_aborts_pass(self, store, embedder, mock_llm, make_memory):
        a, b, _ = await self._seed_near_pair(store, embedder, make_memory)
        mock_llm.complete.side_effect = ConfigurationError("OPENAI_API_KEY not configured")

        with pytest.raises(ConfigurationError):
            await MemoryConsolidator(store, mock_llm, embedder).consolidate("user-1")

        assert await store.get_memory(a.id) is not None
        assert await store.get_memory(b.id) is not None

    @pytest.mark.asyncio
    async def test_finish_pending_deletes(self, store, embedder, mock_llm, make_memory):
        original = make_memory(NEAR_A, memory_type=MemoryType.PREFERENCE)
        await store.create_memory(original)
        merged = make_memory(
            MERGED,
            memory_type=MemoryType.PREFERENCE,
            source_type=SourceType.CONSOLIDATION,
            step_state=StepState.PENDING_DELETE_ORIGINALS,
            metadata={ABSORBED_IDS_KEY: [original.id, "already-gone"]},
        )
        await store.create_memory(merged)
        consolidator = MemoryConsolidator(store, mock_llm, embedder)

        deleted, done = await consolidator.finish_pending_deletes(merged)

        assert (deleted, done) == (1, True)
        assert (await store.get_memory(merged.id)).step_state is StepState.DONE
