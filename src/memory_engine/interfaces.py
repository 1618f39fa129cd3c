"""
Collaborator interfaces.

The engine depends on these protocols rather than on concrete chat, user,
provider or storage implementations.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from .models import (
    Chat,
    ChatMessage,
    MemoryRecord,
    MemoryType,
    StepState,
    UserPreferences,
    UserRecord,
)


@runtime_checkable
class ChatStore(Protocol):
    """Conversation store owned by the chat application."""

    async def get_chat(self, chat_id: str) -> Chat | None:
        ...

    async def get_recent_messages(
        self, chat_id: str, limit: int
    ) -> list[ChatMessage]:
        """Return up to ``limit`` most recent messages, oldest first."""
        ...

    async def get_message_by_id(self, message_id: str) -> ChatMessage | None:
        ...


@runtime_checkable
class UserStore(Protocol):
    """User identity and preference store."""

    async def get_user_by_wallet(self, wallet_address: str) -> UserRecord | None:
        ...

    async def get_preferences(self, user_id: str) -> UserPreferences | None:
        ...


@runtime_checkable
class LLMClient(Protocol):
    """Chat-completion provider. Implementations own their retry policy."""

    async def complete(
        self,
        system: str,
        user: str,
        temperature: float,
        max_tokens: int,
    ) -> str:
        """Return the completion text.

        Raises:
            TransientProviderError: after the retry budget is exhausted
            ConfigurationError: when credentials are missing
        """
        ...


@runtime_checkable
class Embedder(Protocol):
    """Text to fixed-dimension vector provider."""

    @property
    def dimension(self) -> int:
        ...

    async def embed(self, text: str) -> list[float]:
        ...


@runtime_checkable
class MemoryStore(Protocol):
    """Persistence for memory records."""

    async def create_memory(self, memory: MemoryRecord) -> str:
        ...

    async def get_memory(self, memory_id: str) -> MemoryRecord | None:
        ...

    async def get_user_memories(
        self,
        user_id: str,
        memory_type: MemoryType | None = None,
    ) -> list[MemoryRecord]:
        ...

    async def set_embedding(
        self,
        memory_id: str,
        embedding: list[float],
        step_state: StepState = StepState.DONE,
    ) -> None:
        ...

    async def set_step_state(self, memory_id: str, step_state: StepState) -> None:
        ...

    async def get_incomplete_memories(
        self, user_id: str | None = None
    ) -> list[MemoryRecord]:
        ...

    async def record_access(self, memory_id: str) -> None:
        """Increment access_count and set last_accessed to now."""
        ...

    async def delete_memory(self, memory_id: str) -> bool:
        ...
