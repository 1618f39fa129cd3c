"""Memory engine data models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

MIN_CONTENT_LENGTH = 10


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid4())


class MemoryType(str, Enum):
    FACT = "fact"
    PREFERENCE = "preference"
    SKILL = "skill"
    GOAL = "goal"
    CONTEXT = "context"


class SourceType(str, Enum):
    CHAT = "chat"
    DOCUMENT = "document"
    MANUAL = "manual"
    CONSOLIDATION = "consolidation"


class StepState(str, Enum):
    """Progress of the non-atomic write sequences a record takes part in."""

    PENDING_EMBEDDING = "pending_embedding"
    PENDING_DELETE_ORIGINALS = "pending_delete_originals"
    DONE = "done"


def _normalize_tags(value: Any) -> list[str]:
    if value is None:
        return []
    seen: list[str] = []
    for tag in value:
        tag = str(tag).strip()
        if tag and tag not in seen:
            seen.append(tag)
    return seen


class MemoryRecord(BaseModel):
    """A stored statement about a user."""

    id: str = Field(default_factory=_uuid)
    user_id: str
    content: str
    memory_type: MemoryType
    importance: float = Field(ge=0.0, le=1.0)
    tags: list[str] = Field(default_factory=list)
    embedding: list[float] | None = None
    source_id: str | None = None
    source_type: SourceType = SourceType.CHAT
    access_count: int = Field(default=0, ge=0)
    last_accessed: datetime | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    step_state: StepState = StepState.DONE
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("user_id")
    @classmethod
    def _owner_required(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("user_id must be set")
        return value

    @field_validator("content")
    @classmethod
    def _content_length(cls, value: str) -> str:
        value = value.strip()
        if len(value) <= MIN_CONTENT_LENGTH:
            raise ValueError(
                f"content must be longer than {MIN_CONTENT_LENGTH} characters"
            )
        return value

    @field_validator("tags", mode="before")
    @classmethod
    def _dedupe_tags(cls, value: Any) -> list[str]:
        return _normalize_tags(value)

    @property
    def has_embedding(self) -> bool:
        return bool(self.embedding)


class ExtractedMemory(BaseModel):
    """A candidate memory proposed by the extraction LLM."""

    content: str
    memory_type: MemoryType
    importance: float = Field(ge=0.0, le=1.0)
    tags: list[str] = Field(default_factory=list)
    reasoning: str = ""

    @field_validator("tags", mode="before")
    @classmethod
    def _dedupe_tags(cls, value: Any) -> list[str]:
        return _normalize_tags(value)


class ExtractionResult(BaseModel):
    """Candidates and overall reasoning from one extraction call."""

    memories: list[ExtractedMemory] = Field(default_factory=list)
    analysis_reasoning: str = "Memory extraction completed"


class CreatedMemory(ExtractedMemory):
    """An extracted candidate that was persisted."""

    id: str


class ExtractionOutcome(BaseModel):
    success: bool
    memories_extracted: int = 0
    memories: list[CreatedMemory] = Field(default_factory=list)
    analysis_reasoning: str = ""
    error: str | None = None


class MessageOutcome(ExtractionOutcome):
    message_id: str


class ConversationOutcome(BaseModel):
    success: bool
    messages_processed: int = 0
    total_memories_extracted: int = 0
    results: list[MessageOutcome] = Field(default_factory=list)


class ProcessOutcome(BaseModel):
    """Result of the after-message-saved hook."""

    success: bool
    memories_extracted: int = 0
    error: str | None = None
    reason: str | None = None


class HistoryOutcome(BaseModel):
    success: bool
    messages_processed: int = 0
    memories_extracted: int = 0
    error: str | None = None
    reason: str | None = None


class SimilarityCheck(BaseModel):
    has_similar: bool
    similar_memory: MemoryRecord | None = None
    similarity: float = 0.0


class ScoredMemory(BaseModel):
    """A retrieved memory with its ranking signals."""

    id: str
    content: str
    memory_type: MemoryType
    importance: float
    similarity: float
    relevance_score: float
    tags: list[str] = Field(default_factory=list)
    created_at: datetime


class RetrievalResult(BaseModel):
    memories: list[ScoredMemory] = Field(default_factory=list)
    total_found: int = 0
    error: str | None = None


class MemoryContext(BaseModel):
    context: str = ""
    memories_used: int = 0


class Consolidation(BaseModel):
    consolidated_id: str
    original_ids: list[str]
    consolidated_content: str


class ConsolidationOutcome(BaseModel):
    success: bool
    consolidations_performed: int = 0
    consolidations: list[Consolidation] = Field(default_factory=list)
    clusters_skipped: int = 0
    error: str | None = None


class CleanupResult(BaseModel):
    cleaned: int = 0
    remaining: int = 0
    deleted_ids: list[str] = Field(default_factory=list)
    error: str | None = None


class MemoryStats(BaseModel):
    total: int = 0
    by_type: dict[str, int] = Field(default_factory=dict)
    average_importance: float = 0.0
    total_accesses: int = 0
    recent_memories: int = 0  # created in the last 7 days


class RecoveryReport(BaseModel):
    embedded: int = 0
    originals_deleted: int = 0
    finalized: int = 0
    failed: int = 0


# Collaborator-owned shapes


class ChatMessage(BaseModel):
    id: str
    chat_id: str
    role: str  # "user", "assistant", "system"
    content: str
    wallet_address: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)


class Chat(BaseModel):
    id: str
    owner_id: str | None = None
    title: str | None = None


class UserRecord(BaseModel):
    id: str
    wallet_address: str


class UserPreferences(BaseModel):
    enable_memory: bool = True
