"""LLM-based memory extraction.

A single classification prompt turns a new message, its recent conversation
window and the user's existing memory strings into candidate memories.
The response must be a JSON object; anything else is a hard failure that is
not retried. Candidates below the importance floor, with an unknown type or
with content of 10 characters or fewer are dropped.
"""

from __future__ import annotations

import json
import math
from typing import Any, Sequence

from loguru import logger

from .config import ExtractionConfig, LLMConfig
from .errors import MalformedResponseError, ValidationError
from .interfaces import LLMClient
from .models import ChatMessage, ExtractedMemory, ExtractionResult, MemoryType

EXTRACTION_SYSTEM_PROMPT = """\
You are an expert memory extraction system for an AI chat application. Your job \
is to analyze conversations and extract important, memorable information about \
the user.

MEMORY TYPES to extract:
- fact: Concrete information about the user (name, location, job, family, etc.)
- preference: User's likes, dislikes, opinions, choices (tools, methods, styles, etc.)
- skill: User's abilities, knowledge areas, experience levels, technologies they know
- goal: User's objectives, aspirations, things they want to learn or achieve
- context: Important situational information, ongoing projects, current focuses

IMPORTANCE SCORING (0.0 to 1.0):
- 0.9-1.0: Critical personal info (name, core identity, major goals, key preferences)
- 0.7-0.9: Important patterns (frequently mentioned preferences, ongoing projects)
- 0.5-0.7: Useful context (tools used, learning interests, work context)
- 0.3-0.5: Minor details worth noting (occasional preferences, small facts)
- 0.0-0.3: Trivial information (don't extract these)

EXTRACTION RULES:
1. Extract only information ABOUT THE USER, not general knowledge
2. Focus on lasting information, not temporary states
3. Be specific and concrete - avoid vague generalizations
4. Each memory should be a single, clear fact/preference/skill/goal
5. Avoid duplicating existing memories
6. Only extract memories with importance >= {min_importance}

EXISTING MEMORIES to avoid duplicating:
{existing}

Respond ONLY in valid JSON format:
{{
  "memories": [
    {{
      "content": "Specific memory content (clear, concise statement)",
      "type": "fact|preference|skill|goal|context",
      "importance": 0.5,
      "tags": ["relevant", "keywords"],
      "reasoning": "Why this is important/relevant"
    }}
  ],
  "analysisReasoning": "Brief explanation of your extraction decisions"
}}
"""

EXTRACTION_USER_PROMPT = """\
CONVERSATION CONTEXT:
{context}

CONTENT TO ANALYZE:
{content}

Extract memorable information about the user from this content. Focus on \
lasting facts, preferences, skills, goals, and important context. Remember to \
avoid duplicating existing memories and only extract information with \
importance >= {min_importance}."""

# Phrases that signal durable information, per memory type
IMPORTANT_KEYWORDS: dict[MemoryType, tuple[str, ...]] = {
    MemoryType.FACT: (
        "my name is", "i am", "i live in", "i work", "my job", "my role", "my company",
    ),
    MemoryType.PREFERENCE: (
        "i prefer", "i like", "i love", "i hate", "i dislike", "i choose", "my favorite",
    ),
    MemoryType.SKILL: (
        "i know", "i can", "experienced in", "expert in", "proficient",
        "i learned", "i studied",
    ),
    MemoryType.GOAL: (
        "i want to", "my goal", "i aim to", "i plan to", "i hope to",
        "trying to learn", "working towards",
    ),
    MemoryType.CONTEXT: (
        "currently working", "my project", "focusing on", "dealing with", "my situation",
    ),
}
TECH_TERMS = (
    "javascript", "typescript", "python", "rust", "react", "node", "sql",
    "aws", "docker", "kubernetes", "ai", "ml",
)
PERSONAL_TERMS = ("my", "me", "i am", "i work", "i live")
MAX_KEYWORD_BOOST = 0.5


def keyword_importance_boost(content: str, memory_type: MemoryType) -> float:
    """Score boost from high-value phrases, capped at 0.5."""
    text = content.lower()
    words = set(text.split())
    boost = 0.2 * sum(1 for kw in IMPORTANT_KEYWORDS[memory_type] if kw in text)

    if memory_type is MemoryType.SKILL:
        boost += 0.1 * sum(1 for term in TECH_TERMS if term in words)
    elif memory_type is MemoryType.FACT:
        boost += 0.1 * sum(
            1 for term in PERSONAL_TERMS
            if (term in words if " " not in term else term in text)
        )

    return min(boost, MAX_KEYWORD_BOOST)


def format_conversation(messages: Sequence[ChatMessage]) -> str:
    """Render messages as ``role: content`` lines."""
    return "\n".join(f"{m.role}: {m.content}" for m in messages)


def strip_code_fence(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        first_newline = text.find("\n")
        if first_newline != -1:
            text = text[first_newline + 1:]
        if text.endswith("```"):
            text = text[:-3].strip()
    return text


class MemoryExtractor:
    """Extracts candidate memories from a message with a classification LLM."""

    def __init__(
        self,
        llm: LLMClient,
        config: ExtractionConfig | None = None,
        llm_config: LLMConfig | None = None,
    ):
        """Initialize extractor.

        Args:
            llm: Chat-completion client (owns its retry policy)
            config: Extraction thresholds
            llm_config: Temperature and token limits for the extraction call
        """
        self._llm = llm
        self._config = config or ExtractionConfig()
        self._llm_config = llm_config or LLMConfig()

    def build_prompts(
        self,
        content: str,
        recent_messages: Sequence[ChatMessage],
        existing_memories: Sequence[str],
    ) -> tuple[str, str]:
        """Return the (system, user) prompt pair for one extraction call."""
        existing = (
            "- " + "\n- ".join(existing_memories) if existing_memories else "None"
        )
        system = EXTRACTION_SYSTEM_PROMPT.format(
            min_importance=self._config.min_importance,
            existing=existing,
        )
        user = EXTRACTION_USER_PROMPT.format(
            context=format_conversation(recent_messages) or "(no prior messages)",
            content=content,
            min_importance=self._config.min_importance,
        )
        return system, user

    async def extract(
        self,
        content: str,
        recent_messages: Sequence[ChatMessage] = (),
        existing_memories: Sequence[str] = (),
    ) -> ExtractionResult:
        """Extract candidate memories from ``content``.

        Raises:
            TransientProviderError: provider still failing after its retries
            MalformedResponseError: the response is not the expected JSON
        """
        system, user = self.build_prompts(content, recent_messages, existing_memories)
        raw = await self._llm.complete(
            system=system,
            user=user,
            temperature=self._llm_config.extraction_temperature,
            max_tokens=self._llm_config.extraction_max_tokens,
        )
        result = self.parse_response(raw)
        logger.info(
            f"Extracted {len(result.memories)} candidate memories "
            f"from '{content[:50]}'"
        )
        return result

    def parse_response(self, raw: str) -> ExtractionResult:
        """Parse and filter the LLM's JSON payload."""
        text = strip_code_fence(raw)
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            logger.debug(f"Raw extraction response: {raw[:500]}")
            raise MalformedResponseError(
                f"Failed to parse LLM response as JSON: {e}", raw=raw
            ) from e

        if not isinstance(data, dict) or not isinstance(data.get("memories"), list):
            raise MalformedResponseError(
                "Invalid response format: memories array missing", raw=raw
            )

        memories: list[ExtractedMemory] = []
        for item in data["memories"]:
            try:
                memories.append(self._validate_candidate(item))
            except ValidationError as e:
                logger.debug(f"Dropped extraction candidate: {e}")

        reasoning = data.get("analysisReasoning")
        return ExtractionResult(
            memories=memories,
            analysis_reasoning=(
                reasoning if isinstance(reasoning, str) and reasoning
                else "Memory extraction completed"
            ),
        )

    def _validate_candidate(self, item: Any) -> ExtractedMemory:
        if not isinstance(item, dict):
            raise ValidationError("memory", "not an object")

        content = item.get("content")
        if not isinstance(content, str):
            raise ValidationError("content", "missing")
        content = content.strip()
        if len(content) <= self._config.min_content_length:
            raise ValidationError(
                "content", f"length {len(content)} <= {self._config.min_content_length}"
            )

        try:
            memory_type = MemoryType(item.get("type"))
        except ValueError:
            raise ValidationError("type", f"unknown type {item.get('type')!r}")

        importance = item.get("importance")
        if isinstance(importance, bool) or not isinstance(importance, (int, float)):
            raise ValidationError("importance", f"not a number: {importance!r}")
        if not math.isfinite(importance):
            raise ValidationError("importance", f"not finite: {importance!r}")
        importance = min(1.0, float(importance))
        if importance < self._config.min_importance:
            raise ValidationError(
                "importance", f"{importance} < {self._config.min_importance}"
            )

        if self._config.keyword_boost:
            importance = min(1.0, importance + keyword_importance_boost(content, memory_type))

        tags = item.get("tags")
        if not isinstance(tags, list):
            tags = []

        reasoning = item.get("reasoning")
        return ExtractedMemory(
            content=content,
            memory_type=memory_type,
            importance=importance,
            tags=[str(t) for t in tags],
            reasoning=reasoning if isinstance(reasoning, str) else "",
        )
