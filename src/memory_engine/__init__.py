"""
Memory Engine - per-user long-term memory for chat assistants

Extracts durable facts, preferences, skills, goals and context from chat
messages with an LLM, deduplicates and stores them with embeddings, ranks
them by similarity x importance for prompt injection, and keeps each user's
store small through consolidation and eviction.
"""

from .config import MemoryConfig, load_config
from .errors import (
    ConfigurationError,
    MalformedResponseError,
    MemoryEngineError,
    NotFoundError,
    TransientProviderError,
    ValidationError,
)
from .models import MemoryRecord, MemoryType, SourceType, StepState
from .embedding import EmbeddingService
from .llm import OpenAIChatClient, RetryPolicy
from .dedup import Deduplicator
from .extraction import MemoryExtractor
from .retrieval import MemoryRetriever
from .consolidation import MemoryConsolidator
from .cleanup import MemoryCleaner
from .context_formatter import format_memories_for_context
from .memory_service import MemoryService
from .storage import SQLiteMemoryStore

__all__ = [
    "MemoryConfig",
    "load_config",
    "MemoryEngineError",
    "ConfigurationError",
    "TransientProviderError",
    "MalformedResponseError",
    "NotFoundError",
    "ValidationError",
    "MemoryRecord",
    "MemoryType",
    "SourceType",
    "StepState",
    "EmbeddingService",
    "OpenAIChatClient",
    "RetryPolicy",
    "Deduplicator",
    "MemoryExtractor",
    "MemoryRetriever",
    "MemoryConsolidator",
    "MemoryCleaner",
    "format_memories_for_context",
    "MemoryService",
    "SQLiteMemoryStore",
]
