"""Relevance-ranked memory retrieval.

Memories are scored as ``similarity * importance``: cosine similarity between
the query and memory embeddings, weighted by the importance assigned at
extraction time. The product suppresses textually close but unimportant
memories as well as important but unrelated ones.
"""

from __future__ import annotations

import asyncio
from typing import Sequence

from loguru import logger

from .config import RetrievalConfig
from .embedding import cosine_similarity
from .interfaces import Embedder, MemoryStore
from .models import MemoryRecord, RetrievalResult, ScoredMemory


def score_memories(
    query_embedding: list[float],
    memories: Sequence[MemoryRecord],
) -> list[ScoredMemory]:
    """Score memories against a query vector, highest relevance first.

    Memories without an embedding are skipped.
    """
    scored: list[ScoredMemory] = []
    for memory in memories:
        if not memory.embedding:
            continue
        similarity = cosine_similarity(query_embedding, memory.embedding)
        scored.append(ScoredMemory(
            id=memory.id,
            content=memory.content,
            memory_type=memory.memory_type,
            importance=memory.importance,
            similarity=similarity,
            relevance_score=similarity * memory.importance,
            tags=memory.tags,
            created_at=memory.created_at,
        ))

    scored.sort(key=lambda m: m.relevance_score, reverse=True)
    return scored


class MemoryRetriever:
    """Ranks a user's stored memories against a query.

    Sits on the response-generation path, so failures are reported in the
    result instead of raised.
    """

    def __init__(
        self,
        store: MemoryStore,
        embedder: Embedder,
        config: RetrievalConfig | None = None,
    ):
        """Initialize retriever.

        Args:
            store: Memory persistence store
            embedder: Embedding provider for query encoding
            config: Retrieval configuration
        """
        self._store = store
        self._embedder = embedder
        self._config = config or RetrievalConfig()
        self._access_tasks: set[asyncio.Task] = set()

    async def retrieve(
        self,
        query: str,
        user_id: str,
        limit: int | None = None,
        min_importance: float | None = None,
    ) -> RetrievalResult:
        """Return the top ``limit`` memories by relevance score.

        Args:
            query: Query text
            user_id: Owner of the memories to search
            limit: Number of results (defaults to config.limit)
            min_importance: Importance floor (defaults to config.min_importance)
        """
        limit = self._config.limit if limit is None else limit
        min_importance = (
            self._config.min_importance if min_importance is None else min_importance
        )

        try:
            query_embedding = await self._embedder.embed(query)
        except Exception as e:
            logger.warning(f"Query embedding failed: {e}")
            return RetrievalResult(error=str(e))

        try:
            memories = await self._store.get_user_memories(user_id)
        except Exception as e:
            logger.warning(f"Failed to load memories for {user_id}: {e}")
            return RetrievalResult(error=str(e))

        candidates = [
            m for m in memories
            if m.importance >= min_importance and m.embedding
        ]
        relevant = score_memories(query_embedding, candidates)[: max(limit, 0)]

        if self._config.await_access_updates:
            await self._record_access([m.id for m in relevant])
        elif relevant:
            task = asyncio.create_task(self._record_access([m.id for m in relevant]))
            self._access_tasks.add(task)
            task.add_done_callback(self._access_tasks.discard)

        logger.info(
            f"Retrieved {len(relevant)} memories for user {user_id} "
            f"({len(candidates)} candidates of {len(memories)})"
        )
        return RetrievalResult(memories=relevant, total_found=len(relevant))

    async def _record_access(self, memory_ids: list[str]) -> None:
        for memory_id in memory_ids:
            try:
                await self._store.record_access(memory_id)
            except Exception as e:
                logger.warning(f"Failed to record access for memory {memory_id}: {e}")

    async def drain(self) -> None:
        """Wait for background access updates to finish."""
        if self._access_tasks:
            await asyncio.gather(*list(self._access_tasks))
