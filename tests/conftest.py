"""
Memory engine test fixtures.

In-process doubles for the chat/user stores, the LLM and the embedder,
plus a temporary SQLite memory store.
"""

from __future__ import annotations

import os
import re
import tempfile
import zlib
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from memory_engine.errors import MemoryEngineError, TransientProviderError
from memory_engine.models import (
    Chat,
    ChatMessage,
    MemoryRecord,
    MemoryType,
    UserPreferences,
    UserRecord,
)
from memory_engine.storage.sqlite_store import SQLiteMemoryStore

USER_ID = "user-1"
CHAT_ID = "chat-1"
WALLET = "0xabc123"


class FakeEmbedder:
    """Deterministic bag-of-words embedder.

    Each word is hashed into one of ``dimension`` buckets, so texts sharing
    words have positive cosine similarity and disjoint texts usually score 0.
    """

    def __init__(self, dimension: int = 256):
        self._dimension = dimension
        self.fail = False
        self.calls: list[str] = []

    @property
    def dimension(self) -> int:
        return self._dimension

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.fail:
            raise TransientProviderError("embedding provider unavailable")
        words = re.findall(r"\w+", text.lower())
        if not words:
            raise MemoryEngineError("Text cannot be empty")
        vector = [0.0] * self._dimension
        for word in words:
            vector[zlib.crc32(word.encode()) % self._dimension] += 1.0
        return vector


class InMemoryChatStore:
    def __init__(self):
        self.chats: dict[str, Chat] = {}
        self.messages: list[ChatMessage] = []

    def add_chat(self, chat_id: str = CHAT_ID) -> Chat:
        chat = Chat(id=chat_id, owner_id=USER_ID, title="Test chat")
        self.chats[chat_id] = chat
        return chat

    def add_message(
        self,
        message_id: str,
        content: str,
        role: str = "user",
        chat_id: str = CHAT_ID,
        wallet_address: str | None = WALLET,
    ) -> ChatMessage:
        base = datetime(2026, 1, 1, tzinfo=timezone.utc)
        message = ChatMessage(
            id=message_id,
            chat_id=chat_id,
            role=role,
            content=content,
            wallet_address=wallet_address,
            created_at=base + timedelta(seconds=len(self.messages)),
        )
        self.messages.append(message)
        return message

    async def get_chat(self, chat_id: str) -> Chat | None:
        return self.chats.get(chat_id)

    async def get_recent_messages(self, chat_id: str, limit: int) -> list[ChatMessage]:
        in_chat = [m for m in self.messages if m.chat_id == chat_id]
        return in_chat[-limit:]

    async def get_message_by_id(self, message_id: str) -> ChatMessage | None:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None


class InMemoryUserStore:
    def __init__(self):
        self.users: dict[str, UserRecord] = {}
        self.preferences: dict[str, UserPreferences] = {}

    def add_user(
        self, user_id: str = USER_ID, wallet: str = WALLET, enable_memory: bool = True
    ) -> UserRecord:
        user = UserRecord(id=user_id, wallet_address=wallet)
        self.users[wallet] = user
        self.preferences[user_id] = UserPreferences(enable_memory=enable_memory)
        return user

    async def get_user_by_wallet(self, wallet_address: str) -> UserRecord | None:
        return self.users.get(wallet_address)

    async def get_preferences(self, user_id: str) -> UserPreferences | None:
        return self.preferences.get(user_id)


def make_llm_mock(response: str = '{"memories": []}') -> MagicMock:
    """LLM client double whose ``complete`` returns *response*."""
    mock = MagicMock()
    mock.complete = AsyncMock(return_value=response)
    return mock


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def mock_llm():
    return make_llm_mock()


@pytest.fixture
def chat_store():
    store = InMemoryChatStore()
    store.add_chat()
    return store


@pytest.fixture
def user_store():
    store = InMemoryUserStore()
    store.add_user()
    return store


@pytest.fixture
async def store():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = os.path.join(tmpdir, "test.db")
        s = SQLiteMemoryStore(db_path=db_path)
        await s.initialize()
        yield s
        await s.close()


@pytest.fixture
def make_memory():
    """Factory for MemoryRecord instances with test defaults."""
    base = datetime(2026, 1, 1, tzinfo=timezone.utc)
    counter = {"n": 0}

    def _make(
        content: str,
        importance: float = 0.5,
        memory_type: MemoryType = MemoryType.FACT,
        user_id: str = USER_ID,
        embedding: list[float] | None = None,
        **kwargs,
    ) -> MemoryRecord:
        counter["n"] += 1
        kwargs.setdefault("created_at", base + timedelta(minutes=counter["n"]))
        return MemoryRecord(
            user_id=user_id,
            content=content,
            memory_type=memory_type,
            importance=importance,
            embedding=embedding,
            **kwargs,
        )

    return _make
