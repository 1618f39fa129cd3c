"""Capacity and importance-floor eviction."""

from __future__ import annotations

from typing import Sequence

from loguru import logger

from .config import CleanupConfig
from .interfaces import MemoryStore
from .models import CleanupResult, MemoryRecord


def select_for_eviction(
    memories: Sequence[MemoryRecord],
    max_memories: int,
    min_importance: float,
) -> list[MemoryRecord]:
    """Choose memories to delete.

    Memories are ordered by (importance, created_at) ascending. Everything
    below ``min_importance`` goes first regardless of count; if more than
    ``max_memories`` remain, the least important and then oldest of the
    rest are evicted down to the cap. Importance outranks recency.
    """
    ordered = sorted(memories, key=lambda m: (m.importance, m.created_at))

    below_floor = [m for m in ordered if m.importance < min_importance]
    remaining = [m for m in ordered if m.importance >= min_importance]

    excess: list[MemoryRecord] = []
    if len(remaining) > max_memories:
        excess = remaining[: len(remaining) - max_memories]

    return below_floor + excess


class MemoryCleaner:
    """Enforces the per-user memory cap and importance floor."""

    def __init__(self, store: MemoryStore, config: CleanupConfig | None = None):
        self._store = store
        self._config = config or CleanupConfig()

    async def cleanup(
        self,
        user_id: str,
        max_memories: int | None = None,
        min_importance: float | None = None,
    ) -> CleanupResult:
        max_memories = self._config.max_memories if max_memories is None else max_memories
        min_importance = (
            self._config.min_importance if min_importance is None else min_importance
        )

        memories = await self._store.get_user_memories(user_id)
        to_delete = select_for_eviction(memories, max_memories, min_importance)

        deleted_ids: list[str] = []
        for memory in to_delete:
            try:
                if await self._store.delete_memory(memory.id):
                    deleted_ids.append(memory.id)
            except Exception as e:
                logger.warning(f"Failed to evict memory {memory.id}: {e}")

        logger.info(
            f"Cleanup for user {user_id}: deleted {len(deleted_ids)} of "
            f"{len(memories)} (max={max_memories}, min_importance={min_importance})"
        )
        return CleanupResult(
            cleaned=len(deleted_ids),
            remaining=len(memories) - len(deleted_ids),
            deleted_ids=deleted_ids,
        )
