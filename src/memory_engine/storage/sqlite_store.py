"""SQLite storage backend for the memory engine.

Persists memory records with aiosqlite. Embeddings are stored as float32
BLOBs; similarity search happens in-process in the retriever.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite
from loguru import logger

from ..embedding import EmbeddingService
from ..models import MemoryRecord, MemoryType, SourceType, StepState

_COLUMNS = (
    "id, user_id, content, memory_type, importance, tags, embedding, "
    "source_id, source_type, access_count, last_accessed, created_at, "
    "updated_at, step_state, metadata"
)


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    # UTC keeps ISO strings ordered for ORDER BY created_at
    return value.astimezone(timezone.utc).isoformat()


def _parse_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SQLiteMemoryStore:
    """``MemoryStore`` implementation on SQLite.

    Uses WAL mode for concurrent reads.
    """

    def __init__(self, db_path: str = "./memory/memories.db"):
        """Initialize SQLite store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None
        logger.info(f"SQLiteMemoryStore initialized with db_path: {db_path}")

    async def initialize(self) -> None:
        """Create the memories table and indexes if they don't exist."""
        db_dir = Path(self.db_path).parent
        db_dir.mkdir(parents=True, exist_ok=True)

        self._db = await aiosqlite.connect(self.db_path)
        await self._db.execute("PRAGMA journal_mode=WAL")

        types = ", ".join(f"'{t.value}'" for t in MemoryType)
        states = ", ".join(f"'{s.value}'" for s in StepState)
        await self._db.execute(f"""
            CREATE TABLE IF NOT EXISTS memories (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                content TEXT NOT NULL,
                memory_type TEXT NOT NULL CHECK (memory_type IN ({types})),
                importance REAL NOT NULL CHECK (importance >= 0.0 AND importance <= 1.0),
                tags TEXT NOT NULL DEFAULT '[]',
                embedding BLOB,
                source_id TEXT,
                source_type TEXT NOT NULL DEFAULT 'chat',
                access_count INTEGER NOT NULL DEFAULT 0,
                last_accessed TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                step_state TEXT NOT NULL DEFAULT 'done' CHECK (step_state IN ({states})),
                metadata TEXT NOT NULL DEFAULT '{{}}'
            )
        """)
        await self._db.execute(
            "CREATE INDEX IF NOT EXISTS idx_memories_user ON memories(user_id)"
        )
        await self._db.execute(
            "CREATE INDEX IF NOT EXISTS idx_memories_user_type "
            "ON memories(user_id, memory_type)"
        )
        await self._db.execute(
            "CREATE INDEX IF NOT EXISTS idx_memories_step_state ON memories(step_state)"
        )
        await self._db.commit()
        logger.info("SQLite memory database initialized successfully")

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    def _conn(self) -> aiosqlite.Connection:
        if not self._db:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._db

    @staticmethod
    def _row_to_memory(row: tuple) -> MemoryRecord:
        blob = row[6]
        return MemoryRecord(
            id=row[0],
            user_id=row[1],
            content=row[2],
            memory_type=MemoryType(row[3]),
            importance=row[4],
            tags=json.loads(row[5] or "[]"),
            embedding=EmbeddingService.deserialize_embedding(blob) if blob else None,
            source_id=row[7],
            source_type=SourceType(row[8]),
            access_count=row[9],
            last_accessed=_parse_dt(row[10]),
            created_at=_parse_dt(row[11]),
            updated_at=_parse_dt(row[12]),
            step_state=StepState(row[13]),
            metadata=json.loads(row[14] or "{}"),
        )

    async def create_memory(self, memory: MemoryRecord) -> str:
        """Insert a memory record.

        Returns:
            Memory ID
        """
        db = self._conn()
        await db.execute(
            f"INSERT INTO memories ({_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                memory.id,
                memory.user_id,
                memory.content,
                memory.memory_type.value,
                memory.importance,
                json.dumps(memory.tags),
                EmbeddingService.serialize_embedding(memory.embedding)
                if memory.embedding else None,
                memory.source_id,
                memory.source_type.value,
                memory.access_count,
                _iso(memory.last_accessed),
                _iso(memory.created_at),
                _iso(memory.updated_at),
                memory.step_state.value,
                json.dumps(memory.metadata),
            ),
        )
        await db.commit()
        logger.debug(f"Memory inserted: {memory.id} ({memory.memory_type.value})")
        return memory.id

    async def get_memory(self, memory_id: str) -> MemoryRecord | None:
        db = self._conn()
        async with db.execute(
            f"SELECT {_COLUMNS} FROM memories WHERE id = ?", (memory_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return self._row_to_memory(row) if row else None

    async def get_user_memories(
        self,
        user_id: str,
        memory_type: MemoryType | None = None,
    ) -> list[MemoryRecord]:
        """Get a user's memories, oldest first.

        Args:
            user_id: Owner identifier
            memory_type: Optional type filter
        """
        db = self._conn()
        if memory_type is not None:
            query = (
                f"SELECT {_COLUMNS} FROM memories "
                "WHERE user_id = ? AND memory_type = ? ORDER BY created_at, rowid"
            )
            params: tuple = (user_id, memory_type.value)
        else:
            query = (
                f"SELECT {_COLUMNS} FROM memories "
                "WHERE user_id = ? ORDER BY created_at, rowid"
            )
            params = (user_id,)

        async with db.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_memory(row) for row in rows]

    async def set_embedding(
        self,
        memory_id: str,
        embedding: list[float],
        step_state: StepState = StepState.DONE,
    ) -> None:
        """Store the embedding BLOB and advance the step state."""
        db = self._conn()
        await db.execute(
            "UPDATE memories SET embedding = ?, step_state = ?, updated_at = ? "
            "WHERE id = ?",
            (
                EmbeddingService.serialize_embedding(embedding),
                step_state.value,
                _iso(datetime.now(timezone.utc)),
                memory_id,
            ),
        )
        await db.commit()

    async def set_step_state(self, memory_id: str, step_state: StepState) -> None:
        db = self._conn()
        await db.execute(
            "UPDATE memories SET step_state = ?, updated_at = ? WHERE id = ?",
            (step_state.value, _iso(datetime.now(timezone.utc)), memory_id),
        )
        await db.commit()

    async def get_incomplete_memories(
        self, user_id: str | None = None
    ) -> list[MemoryRecord]:
        """Records whose write sequence did not reach ``done``."""
        db = self._conn()
        if user_id:
            query = (
                f"SELECT {_COLUMNS} FROM memories "
                "WHERE step_state != 'done' AND user_id = ? ORDER BY created_at"
            )
            params: tuple = (user_id,)
        else:
            query = (
                f"SELECT {_COLUMNS} FROM memories "
                "WHERE step_state != 'done' ORDER BY created_at"
            )
            params = ()

        async with db.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_memory(row) for row in rows]

    async def record_access(self, memory_id: str) -> None:
        """Increment access_count and set last_accessed to now."""
        db = self._conn()
        await db.execute(
            """
            UPDATE memories
            SET last_accessed = ?,
                access_count = access_count + 1
            WHERE id = ?
            """,
            (_iso(datetime.now(timezone.utc)), memory_id),
        )
        await db.commit()

    async def delete_memory(self, memory_id: str) -> bool:
        """Delete a single memory by ID.

        Returns:
            True if the memory was deleted, False if not found
        """
        db = self._conn()
        cursor = await db.execute("DELETE FROM memories WHERE id = ?", (memory_id,))
        await db.commit()
        deleted = cursor.rowcount > 0
        if deleted:
            logger.debug(f"Memory deleted: {memory_id}")
        return deleted

    async def delete_user_memories(self, user_id: str) -> int:
        """Delete every memory owned by ``user_id``.

        Returns:
            Number of deleted memories
        """
        db = self._conn()
        cursor = await db.execute("DELETE FROM memories WHERE user_id = ?", (user_id,))
        await db.commit()
        count = cursor.rowcount
        logger.info(f"Deleted {count} memories for user {user_id}")
        return count
