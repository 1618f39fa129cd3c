"""Near-duplicate memory consolidation.

Same-type memories are grouped by single-link clustering on word overlap
(0.70 by default); each multi-member cluster is summarized by the LLM into
one statement that keeps the highest importance and the union of tags.
The merged record is written first and the originals are deleted after, so
an interrupted pass can leave duplicates. The merged record carries
``pending_delete_originals`` and the absorbed ids until the deletes finish,
which lets a recovery sweep complete the job.
"""

from __future__ import annotations

import json
from typing import Sequence

import pydantic
from loguru import logger

from .config import ConsolidationConfig, LLMConfig
from .dedup import word_overlap
from .errors import ConfigurationError, MalformedResponseError, MemoryEngineError
from .extraction import strip_code_fence
from .interfaces import Embedder, LLMClient, MemoryStore
from .models import (
    Consolidation,
    ConsolidationOutcome,
    MemoryRecord,
    MemoryType,
    SourceType,
    StepState,
)

CONSOLIDATION_SYSTEM_PROMPT = """\
You are consolidating similar memories about a user. Merge the provided similar \
memory entries into a single, comprehensive memory that captures all the \
important information without redundancy.

Rules:
1. Combine all unique information from the provided memories
2. Remove redundancy and contradictions
3. Keep the most specific and accurate information
4. Maintain the same tone and perspective
5. Ensure the result is a single, clear statement

Respond ONLY in valid JSON format:
{"content": "the consolidated memory statement"}
"""

ABSORBED_IDS_KEY = "absorbed_ids"


def cluster_memories(
    memories: Sequence[MemoryRecord],
    threshold: float,
) -> list[list[MemoryRecord]]:
    """Single-link clustering of same-type memories by word overlap.

    A memory joins a cluster when it reaches ``threshold`` against any member
    already in it. Input order decides cluster seeds and member order.
    """
    clusters: list[list[MemoryRecord]] = []
    by_type: dict[MemoryType, list[MemoryRecord]] = {}
    for memory in memories:
        by_type.setdefault(memory.memory_type, []).append(memory)

    for group in by_type.values():
        unassigned = list(group)
        while unassigned:
            cluster = [unassigned.pop(0)]
            grew = True
            while grew:
                grew = False
                for candidate in list(unassigned):
                    if any(
                        word_overlap(candidate.content, member.content) >= threshold
                        for member in cluster
                    ):
                        cluster.append(candidate)
                        unassigned.remove(candidate)
                        grew = True
            clusters.append(cluster)

    return clusters


class MemoryConsolidator:
    """Merges clusters of near-duplicate memories into single records."""

    def __init__(
        self,
        store: MemoryStore,
        llm: LLMClient,
        embedder: Embedder,
        config: ConsolidationConfig | None = None,
        llm_config: LLMConfig | None = None,
    ):
        self._store = store
        self._llm = llm
        self._embedder = embedder
        self._config = config or ConsolidationConfig()
        self._llm_config = llm_config or LLMConfig()

    async def merge_contents(self, contents: Sequence[str]) -> str:
        """Ask the LLM for one statement covering ``contents``.

        Raises:
            MalformedResponseError: the response is not ``{"content": str}``
        """
        numbered = "\n".join(f"{i}. {c}" for i, c in enumerate(contents, 1))
        raw = await self._llm.complete(
            system=CONSOLIDATION_SYSTEM_PROMPT,
            user=f"Consolidate these similar memories:\n\n{numbered}",
            temperature=self._llm_config.consolidation_temperature,
            max_tokens=self._llm_config.consolidation_max_tokens,
        )
        try:
            data = json.loads(strip_code_fence(raw))
        except json.JSONDecodeError as e:
            raise MalformedResponseError(
                f"Failed to parse consolidation response as JSON: {e}", raw=raw
            ) from e

        content = data.get("content") if isinstance(data, dict) else None
        if not isinstance(content, str) or not content.strip():
            raise MalformedResponseError(
                "Invalid consolidation response: content missing", raw=raw
            )
        return content.strip()

    async def consolidate(
        self,
        user_id: str,
        memory_type: MemoryType | None = None,
    ) -> ConsolidationOutcome:
        memories = await self._store.get_user_memories(user_id, memory_type)
        clusters = [
            c for c in cluster_memories(memories, self._config.similarity_threshold)
            if len(c) > 1
        ]
        logger.debug(
            f"Consolidation for user {user_id}: {len(clusters)} clusters "
            f"from {len(memories)} memories"
        )

        consolidations: list[Consolidation] = []
        skipped = 0
        for cluster in clusters:
            try:
                consolidation = await self._merge_cluster(user_id, cluster)
            except ConfigurationError:
                raise
            except (MemoryEngineError, pydantic.ValidationError) as e:
                skipped += 1
                logger.warning(
                    f"Skipped merging {len(cluster)} memories "
                    f"({cluster[0].memory_type.value}): {e}"
                )
                continue
            consolidations.append(consolidation)

        logger.info(
            f"Consolidated {len(consolidations)} clusters for user {user_id} "
            f"(skipped={skipped})"
        )
        return ConsolidationOutcome(
            success=True,
            consolidations_performed=len(consolidations),
            consolidations=consolidations,
            clusters_skipped=skipped,
        )

    async def _merge_cluster(
        self, user_id: str, cluster: list[MemoryRecord]
    ) -> Consolidation:
        content = await self.merge_contents([m.content for m in cluster])
        embedding = await self._embedder.embed(content)

        tags: list[str] = []
        for member in cluster:
            tags.extend(member.tags)
        original_ids = [m.id for m in cluster]

        merged = MemoryRecord(
            user_id=user_id,
            content=content,
            memory_type=cluster[0].memory_type,
            importance=max(m.importance for m in cluster),
            tags=tags,
            embedding=embedding,
            source_id=cluster[0].source_id,
            source_type=SourceType.CONSOLIDATION,
            step_state=StepState.PENDING_DELETE_ORIGINALS,
            metadata={ABSORBED_IDS_KEY: original_ids},
        )
        await self._store.create_memory(merged)
        await self.finish_pending_deletes(merged)

        return Consolidation(
            consolidated_id=merged.id,
            original_ids=original_ids,
            consolidated_content=content,
        )

    async def finish_pending_deletes(self, merged: MemoryRecord) -> tuple[int, bool]:
        """Delete the originals a merged record absorbed, then mark it done.

        The record stays ``pending_delete_originals`` if any delete fails.

        Returns:
            (number of originals deleted, whether the record reached done)
        """
        deleted = 0
        failed = False
        for original_id in merged.metadata.get(ABSORBED_IDS_KEY, []):
            try:
                if await self._store.delete_memory(original_id):
                    deleted += 1
            except Exception as e:
                failed = True
                logger.warning(
                    f"Failed to delete absorbed memory {original_id} "
                    f"for merged {merged.id}: {e}"
                )
        if failed:
            return deleted, False
        await self._store.set_step_state(merged.id, StepState.DONE)
        return deleted, True
