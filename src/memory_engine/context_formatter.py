"""Renders retrieved memories into a prompt-injectable text block."""

from __future__ import annotations

from typing import Protocol, Sequence

from .models import MemoryType

CONTEXT_HEADER = (
    "# User Context\n\n"
    "Based on previous conversations, here is what I know about the user:\n\n"
)
CONTEXT_FOOTER = (
    "Please use this context to provide more personalized and relevant responses.\n\n"
)
MAX_PER_TYPE = 5

TYPE_LABELS: dict[MemoryType, str] = {
    MemoryType.FACT: "Facts",
    MemoryType.PREFERENCE: "Preferences",
    MemoryType.SKILL: "Skills & Knowledge",
    MemoryType.GOAL: "Goals & Objectives",
    MemoryType.CONTEXT: "Current Context",
}


class FormattableMemory(Protocol):
    content: str
    memory_type: MemoryType


def format_memories_for_context(memories: Sequence[FormattableMemory]) -> str:
    """Group memories by type under fixed headings, at most 5 per type.

    Input order is kept within each group. An empty input yields an empty
    string with no header.
    """
    if not memories:
        return ""

    grouped: dict[MemoryType, list[str]] = {}
    for memory in memories:
        grouped.setdefault(memory.memory_type, []).append(memory.content)

    parts = [CONTEXT_HEADER]
    for memory_type, label in TYPE_LABELS.items():
        contents = grouped.get(memory_type)
        if not contents:
            continue
        parts.append(f"## {label}\n")
        parts.extend(f"- {content}\n" for content in contents[:MAX_PER_TYPE])
        parts.append("\n")
    parts.append(CONTEXT_FOOTER)
    return "".join(parts)
