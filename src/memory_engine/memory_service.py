"""Memory Service - Facade for the per-user memory engine.

This module provides the main MemoryService class that chat applications use.
Provides memory extraction from new messages and chat history, relevance
retrieval with context formatting, consolidation, eviction and statistics.
"""

from __future__ import annotations

import asyncio
import weakref
from datetime import datetime, timedelta, timezone
from typing import Sequence

from loguru import logger

from .cleanup import MemoryCleaner
from .config import MemoryConfig
from .consolidation import MemoryConsolidator
from .context_formatter import FormattableMemory, format_memories_for_context
from .dedup import Deduplicator
from .embedding import EmbeddingService
from .errors import ConfigurationError, NotFoundError
from .extraction import MemoryExtractor
from .interfaces import ChatStore, Embedder, LLMClient, MemoryStore, UserStore
from .llm import OpenAIChatClient
from .models import (
    CleanupResult,
    ConsolidationOutcome,
    ConversationOutcome,
    CreatedMemory,
    ExtractedMemory,
    ExtractionOutcome,
    HistoryOutcome,
    MemoryContext,
    MemoryRecord,
    MemoryStats,
    MemoryType,
    MessageOutcome,
    ProcessOutcome,
    RecoveryReport,
    RetrievalResult,
    SimilarityCheck,
    SourceType,
    StepState,
)
from .retrieval import MemoryRetriever
from .storage.sqlite_store import SQLiteMemoryStore

RECENT_WINDOW = timedelta(days=7)

REASON_NOT_USER_MESSAGE = "Not a user message, skipped"
REASON_DISABLED_BY_USER = "Memory extraction disabled by user"
REASON_DISABLED = "Memory extraction disabled"
REASON_TOO_SHORT = "Message too short for memory extraction"
REASON_NO_USER_MESSAGES = "No user messages found"


class MemoryService:
    """Main memory service facade.

    Provides:
    - Extraction from a single message, a set of messages, or a chat backlog
    - Extraction-time deduplication under a per-user lock
    - Relevance retrieval (similarity x importance) and context formatting
    - Consolidation of near-duplicates and capacity/importance eviction
    - A recovery sweep for records left mid-way through a write sequence

    Collaborators can be injected; missing ones are built from config on
    first use. Operations on the write path report failures in their result
    objects instead of raising.
    """

    def __init__(
        self,
        config: MemoryConfig | None = None,
        *,
        store: MemoryStore | None = None,
        llm: LLMClient | None = None,
        embedder: Embedder | None = None,
        chat_store: ChatStore | None = None,
        user_store: UserStore | None = None,
    ):
        """Initialize memory service.

        Args:
            config: Memory configuration (uses defaults if not provided)
            store: Memory persistence store (SQLite from config if omitted)
            llm: Chat-completion client (OpenAI from config if omitted)
            embedder: Embedding provider (EmbeddingService if omitted)
            chat_store: Conversation store, required for message operations
            user_store: User/preferences store, required by process_new_message
        """
        self.config = config or MemoryConfig()
        self._store = store
        self._store_initialized = store is not None
        self._owns_store = store is None
        self._llm = llm
        self._embedder = embedder
        self._chat_store = chat_store
        self._user_store = user_store

        self._deduplicator = Deduplicator(self.config.extraction.dedup_threshold)
        self._extractor: MemoryExtractor | None = None
        self._retriever: MemoryRetriever | None = None
        self._consolidator: MemoryConsolidator | None = None
        self._cleaner: MemoryCleaner | None = None
        # Entries vanish once no coroutine holds or awaits the lock
        self._user_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

        safe_config = self.config.model_dump(
            exclude={"llm": {"api_key"}, "embedding": {"api_key"}}
        )
        logger.debug(f"MemoryService full config: {safe_config}")
        logger.info(
            f"MemoryService initialized: extraction_enabled={self.config.extraction.enabled}, "
            f"sqlite_db_path={self.config.storage.sqlite_db_path!r}"
        )

    # ------------------------------------------------------------------
    # Lazy component construction
    # ------------------------------------------------------------------

    async def _ensure_store(self) -> MemoryStore:
        """Lazy initialization of the SQLite store."""
        if self._store is None:
            self._store = SQLiteMemoryStore(db_path=self.config.storage.sqlite_db_path)
        if not self._store_initialized:
            await self._store.initialize()
            self._store_initialized = True
            logger.debug(f"SQLiteMemoryStore initialized at {self.config.storage.sqlite_db_path}")
        return self._store

    def _ensure_llm(self) -> LLMClient:
        if self._llm is None:
            self._llm = OpenAIChatClient(config=self.config.llm)
            logger.debug("OpenAIChatClient initialized")
        return self._llm

    def _ensure_embedder(self) -> Embedder:
        if self._embedder is None:
            self._embedder = EmbeddingService(config=self.config.embedding)
            logger.debug("EmbeddingService initialized")
        return self._embedder

    def _ensure_extractor(self) -> MemoryExtractor:
        if self._extractor is None:
            self._extractor = MemoryExtractor(
                llm=self._ensure_llm(),
                config=self.config.extraction,
                llm_config=self.config.llm,
            )
            logger.debug("MemoryExtractor initialized")
        return self._extractor

    async def _ensure_retriever(self) -> MemoryRetriever:
        if self._retriever is None:
            self._retriever = MemoryRetriever(
                store=await self._ensure_store(),
                embedder=self._ensure_embedder(),
                config=self.config.retrieval,
            )
            logger.debug("MemoryRetriever initialized")
        return self._retriever

    async def _ensure_consolidator(self) -> MemoryConsolidator:
        if self._consolidator is None:
            self._consolidator = MemoryConsolidator(
                store=await self._ensure_store(),
                llm=self._ensure_llm(),
                embedder=self._ensure_embedder(),
                config=self.config.consolidation,
                llm_config=self.config.llm,
            )
            logger.debug("MemoryConsolidator initialized")
        return self._consolidator

    async def _ensure_cleaner(self) -> MemoryCleaner:
        if self._cleaner is None:
            self._cleaner = MemoryCleaner(
                store=await self._ensure_store(), config=self.config.cleanup
            )
            logger.debug("MemoryCleaner initialized")
        return self._cleaner

    def _require_chat_store(self) -> ChatStore:
        if self._chat_store is None:
            raise ConfigurationError("MemoryService has no chat store configured")
        return self._chat_store

    def _require_user_store(self) -> UserStore:
        if self._user_store is None:
            raise ConfigurationError("MemoryService has no user store configured")
        return self._user_store

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._user_locks[user_id] = lock
        return lock

    async def close(self) -> None:
        """Close resources (SQLite connection, pending access updates)."""
        if self._retriever is not None:
            await self._retriever.drain()
        if self._owns_store and self._store is not None and self._store_initialized:
            await self._store.close()
            self._store_initialized = False
            logger.info("MemoryService: SQLiteMemoryStore closed")

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    async def extract_memories_from_message(
        self,
        message_id: str,
        chat_id: str,
        user_id: str,
        content: str,
    ) -> ExtractionOutcome:
        """Extract, deduplicate, persist and embed memories from one message.

        Runs under the user's lock; the existing memories are re-read for
        every candidate so duplicates proposed in the same call are caught.

        Args:
            message_id: Source message, stored as the memory's source_id
            chat_id: Chat the message belongs to
            user_id: Owner of the extracted memories
            content: Message text to analyze
        """
        async with self._lock_for(user_id):
            try:
                chat_store = self._require_chat_store()
                chat = await chat_store.get_chat(chat_id)
                if chat is None:
                    raise NotFoundError("chat", chat_id)

                recent = await chat_store.get_recent_messages(
                    chat_id, self.config.extraction.context_messages
                )
                store = await self._ensure_store()
                existing = await store.get_user_memories(user_id)
                result = await self._ensure_extractor().extract(
                    content,
                    recent_messages=recent,
                    existing_memories=[m.content for m in existing],
                )
            except Exception as e:
                logger.error(f"Memory extraction failed for message {message_id}: {e}")
                return ExtractionOutcome(success=False, error=str(e))

            created: list[CreatedMemory] = []
            for candidate in result.memories:
                memory = await self._store_candidate(store, user_id, message_id, candidate)
                if memory is not None:
                    created.append(memory)

        logger.info(
            f"Extracted {len(created)} memories for user {user_id} "
            f"from message {message_id} ({len(result.memories)} candidates)"
        )
        return ExtractionOutcome(
            success=True,
            memories_extracted=len(created),
            memories=created,
            analysis_reasoning=result.analysis_reasoning,
        )

    async def _store_candidate(
        self,
        store: MemoryStore,
        user_id: str,
        message_id: str,
        candidate: ExtractedMemory,
    ) -> CreatedMemory | None:
        """Dedup-gate, insert and embed one candidate.

        A record whose embedding fails stays ``pending_embedding`` for the
        recovery sweep and is not reported as created.
        """
        try:
            same_type = await store.get_user_memories(user_id, candidate.memory_type)
            check = self._deduplicator.find_similar(candidate.content, same_type)
            if check.has_similar:
                logger.debug(
                    f"Skipping duplicate memory '{candidate.content[:50]}' "
                    f"(overlap {check.similarity:.2f} with {check.similar_memory.id})"
                )
                return None

            record = MemoryRecord(
                user_id=user_id,
                content=candidate.content,
                memory_type=candidate.memory_type,
                importance=candidate.importance,
                tags=candidate.tags,
                source_id=message_id,
                source_type=SourceType.CHAT,
                step_state=StepState.PENDING_EMBEDDING,
                metadata={"reasoning": candidate.reasoning} if candidate.reasoning else {},
            )
            await store.create_memory(record)
        except Exception as e:
            logger.warning(f"Failed to store memory '{candidate.content[:50]}': {e}")
            return None

        try:
            embedding = await self._ensure_embedder().embed(record.content)
            await store.set_embedding(record.id, embedding, StepState.DONE)
        except Exception as e:
            logger.warning(
                f"Failed to embed memory {record.id}, left pending_embedding: {e}"
            )
            return None

        return CreatedMemory(id=record.id, **candidate.model_dump())

    async def extract_memories_from_conversation(
        self,
        chat_id: str,
        user_id: str,
        message_ids: Sequence[str],
    ) -> ConversationOutcome:
        """Extract sequentially from several messages of one chat.

        Missing and non-user messages are skipped; a failing message does
        not stop the rest.
        """
        results: list[MessageOutcome] = []
        total = 0
        for message_id in message_ids:
            try:
                message = await self._require_chat_store().get_message_by_id(message_id)
            except Exception as e:
                logger.warning(f"Failed to load message {message_id}: {e}")
                results.append(MessageOutcome(message_id=message_id, success=False, error=str(e)))
                continue

            if message is None or message.role != "user":
                continue

            outcome = await self.extract_memories_from_message(
                message_id=message.id,
                chat_id=chat_id,
                user_id=user_id,
                content=message.content,
            )
            results.append(MessageOutcome(message_id=message.id, **outcome.model_dump()))
            total += outcome.memories_extracted

        return ConversationOutcome(
            success=True,
            messages_processed=len(message_ids),
            total_memories_extracted=total,
            results=results,
        )

    async def process_new_message(self, message_id: str) -> ProcessOutcome:
        """Hook run after a chat message is saved.

        Skips (successfully, with a reason) non-user messages, users who
        disabled memory and messages under the minimum length, without
        calling the LLM.
        """
        try:
            chat_store = self._require_chat_store()
            message = await chat_store.get_message_by_id(message_id)
            if message is None or message.role != "user":
                return ProcessOutcome(success=True, reason=REASON_NOT_USER_MESSAGE)

            if not self.config.extraction.enabled:
                return ProcessOutcome(success=True, reason=REASON_DISABLED)

            chat = await chat_store.get_chat(message.chat_id)
            if chat is None:
                raise NotFoundError("chat", message.chat_id)

            user_store = self._require_user_store()
            user = None
            if message.wallet_address:
                user = await user_store.get_user_by_wallet(message.wallet_address)
            if user is None:
                raise NotFoundError("user", message.wallet_address or "<no wallet>")

            preferences = await user_store.get_preferences(user.id)
            if preferences is not None and not preferences.enable_memory:
                return ProcessOutcome(success=True, reason=REASON_DISABLED_BY_USER)

            if len(message.content) < self.config.extraction.min_message_length:
                return ProcessOutcome(success=True, reason=REASON_TOO_SHORT)

            outcome = await self.extract_memories_from_message(
                message_id=message.id,
                chat_id=message.chat_id,
                user_id=user.id,
                content=message.content,
            )
        except Exception as e:
            logger.error(f"Error processing message {message_id} for memories: {e}")
            return ProcessOutcome(success=False, error=str(e))

        return ProcessOutcome(
            success=outcome.success,
            memories_extracted=outcome.memories_extracted,
            error=outcome.error,
        )

    async def process_chat_history(
        self,
        chat_id: str,
        user_id: str,
        limit: int | None = None,
    ) -> HistoryOutcome:
        """Backfill memories from a chat's recent user messages.

        Messages are processed in batches of ``batch.batch_size`` with
        ``batch.inter_batch_delay`` seconds between batches.
        """
        limit = self.config.batch.history_limit if limit is None else limit
        batch_size = self.config.batch.batch_size
        try:
            messages = (
                await self._require_chat_store().get_recent_messages(chat_id, limit)
                if limit > 0
                else []
            )
            user_messages = [m for m in messages if m.role == "user"]
            if not user_messages:
                return HistoryOutcome(success=True, reason=REASON_NO_USER_MESSAGES)

            processed = 0
            extracted = 0
            for start in range(0, len(user_messages), batch_size):
                batch = user_messages[start : start + batch_size]
                result = await self.extract_memories_from_conversation(
                    chat_id, user_id, [m.id for m in batch]
                )
                processed += result.messages_processed
                extracted += result.total_memories_extracted
                # Self-throttle between batches for provider rate limits
                if start + batch_size < len(user_messages):
                    await asyncio.sleep(self.config.batch.inter_batch_delay)
        except Exception as e:
            logger.error(f"Error processing chat history for {chat_id}: {e}")
            return HistoryOutcome(success=False, error=str(e))

        logger.info(
            f"Processed {processed} messages from chat {chat_id}: "
            f"{extracted} memories extracted"
        )
        return HistoryOutcome(
            success=True, messages_processed=processed, memories_extracted=extracted
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def consolidate_memories(
        self,
        user_id: str,
        memory_type: MemoryType | None = None,
    ) -> ConsolidationOutcome:
        """Merge near-duplicate memories of a user, optionally one type only."""
        async with self._lock_for(user_id):
            try:
                consolidator = await self._ensure_consolidator()
                return await consolidator.consolidate(user_id, memory_type)
            except Exception as e:
                logger.error(f"Memory consolidation failed for user {user_id}: {e}")
                return ConsolidationOutcome(success=False, error=str(e))

    async def cleanup_memories(
        self,
        user_id: str,
        max_memories: int | None = None,
        min_importance: float | None = None,
    ) -> CleanupResult:
        """Evict memories below the importance floor, then down to the cap."""
        async with self._lock_for(user_id):
            try:
                cleaner = await self._ensure_cleaner()
                return await cleaner.cleanup(user_id, max_memories, min_importance)
            except Exception as e:
                logger.error(f"Memory cleanup failed for user {user_id}: {e}")
                return CleanupResult(error=str(e))

    async def recover_incomplete(self, user_id: str | None = None) -> RecoveryReport:
        """Finish write sequences that were interrupted.

        ``pending_embedding`` records get their embedding;
        ``pending_delete_originals`` records get their absorbed originals
        deleted. Records that still fail stay in their state.
        """
        store = await self._ensure_store()
        consolidator = await self._ensure_consolidator()
        report = RecoveryReport()

        for record in await store.get_incomplete_memories(user_id):
            async with self._lock_for(record.user_id):
                if record.step_state is StepState.PENDING_EMBEDDING:
                    try:
                        embedding = await self._ensure_embedder().embed(record.content)
                        await store.set_embedding(record.id, embedding, StepState.DONE)
                        report.embedded += 1
                    except Exception as e:
                        logger.warning(f"Recovery embedding failed for {record.id}: {e}")
                        report.failed += 1
                elif record.step_state is StepState.PENDING_DELETE_ORIGINALS:
                    deleted, done = await consolidator.finish_pending_deletes(record)
                    report.originals_deleted += deleted
                    if done:
                        report.finalized += 1
                    else:
                        report.failed += 1

        logger.info(
            f"Recovery sweep: embedded={report.embedded}, "
            f"originals_deleted={report.originals_deleted}, "
            f"finalized={report.finalized}, failed={report.failed}"
        )
        return report

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    async def get_relevant_memories(
        self,
        user_id: str,
        query: str,
        limit: int | None = None,
        min_importance: float | None = None,
    ) -> RetrievalResult:
        """Top memories by similarity x importance; errors go in the result."""
        try:
            retriever = await self._ensure_retriever()
        except Exception as e:
            logger.error(f"Memory retrieval unavailable: {e}")
            return RetrievalResult(error=str(e))
        return await retriever.retrieve(
            query, user_id, limit=limit, min_importance=min_importance
        )

    async def get_memory_context(
        self,
        user_id: str,
        query: str,
        limit: int | None = None,
    ) -> MemoryContext:
        """Retrieve relevant memories and render them for prompt injection."""
        result = await self.get_relevant_memories(
            user_id,
            query,
            limit=self.config.retrieval.context_limit if limit is None else limit,
        )
        return MemoryContext(
            context=format_memories_for_context(result.memories),
            memories_used=len(result.memories),
        )

    @staticmethod
    def format_memories_for_context(memories: Sequence[FormattableMemory]) -> str:
        return format_memories_for_context(memories)

    async def check_similar_memory(
        self,
        user_id: str,
        content: str,
        memory_type: MemoryType,
        threshold: float | None = None,
    ) -> SimilarityCheck:
        """First same-type memory whose word overlap reaches ``threshold``."""
        store = await self._ensure_store()
        existing = await store.get_user_memories(user_id, memory_type)
        return self._deduplicator.find_similar(content, existing, threshold)

    async def get_memory_stats(self, user_id: str) -> MemoryStats:
        """Counts by type, average importance, accesses and recent additions."""
        store = await self._ensure_store()
        memories = await store.get_user_memories(user_id)
        if not memories:
            return MemoryStats()

        by_type: dict[str, int] = {}
        for memory in memories:
            by_type[memory.memory_type.value] = by_type.get(memory.memory_type.value, 0) + 1

        cutoff = datetime.now(timezone.utc) - RECENT_WINDOW
        return MemoryStats(
            total=len(memories),
            by_type=by_type,
            average_importance=sum(m.importance for m in memories) / len(memories),
            total_accesses=sum(m.access_count for m in memories),
            recent_memories=sum(1 for m in memories if m.created_at >= cutoff),
        )

    async def get_user_memories(
        self,
        user_id: str,
        memory_type: MemoryType | None = None,
    ) -> list[MemoryRecord]:
        store = await self._ensure_store()
        return await store.get_user_memories(user_id, memory_type)

    async def delete_memory(self, memory_id: str) -> bool:
        store = await self._ensure_store()
        return await store.delete_memory(memory_id)
