"""Storage backends for the memory engine."""

from __future__ import annotations

from .sqlite_store import SQLiteMemoryStore

__all__ = ["SQLiteMemoryStore"]
