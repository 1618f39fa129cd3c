"""OpenAI chat-completion adapter with a small retry budget.

The adapter owns transport, credential checks and retry/backoff so the
extractor and consolidator only deal with prompt text and JSON payloads.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import openai
from loguru import logger
from openai import AsyncOpenAI

from .config import LLMConfig
from .errors import (
    ConfigurationError,
    MalformedResponseError,
    MemoryEngineError,
    TransientProviderError,
)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and delays for transient provider failures.

    Rate-limited failures back off exponentially (``base_delay * 2**attempt``);
    other transient failures wait ``base_delay``. No delay follows the last
    attempt.
    """

    max_attempts: int = 2
    base_delay: float = 1.0

    def delay_for(self, attempt: int, error: TransientProviderError) -> float:
        if error.rate_limited:
            return self.base_delay * (2**attempt)
        return self.base_delay


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    label: str = "provider call",
) -> T:
    """Run ``operation``, retrying only ``TransientProviderError``.

    Raises:
        TransientProviderError: the last failure once the budget is spent
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except TransientProviderError as e:
            if attempt + 1 >= policy.max_attempts:
                logger.error(f"{label} failed after {attempt + 1} attempts: {e}")
                raise
            delay = policy.delay_for(attempt, e)
            logger.warning(
                f"{label} failed (attempt {attempt + 1}/{policy.max_attempts}, "
                f"rate_limited={e.rate_limited}): {e}; retrying in {delay:.1f}s"
            )
            await asyncio.sleep(delay)
            attempt += 1


def translate_openai_error(error: Exception) -> MemoryEngineError:
    """Map an openai SDK exception onto the engine taxonomy."""
    if isinstance(error, MemoryEngineError):
        return error
    if isinstance(error, openai.RateLimitError):
        return TransientProviderError(f"OpenAI rate limit: {error}", rate_limited=True)
    if isinstance(error, openai.APIConnectionError):
        # includes APITimeoutError
        return TransientProviderError(f"OpenAI connection error: {error}")
    if isinstance(error, openai.InternalServerError):
        return TransientProviderError(f"OpenAI server error: {error}")
    if isinstance(error, openai.AuthenticationError):
        return ConfigurationError(f"OpenAI authentication failed: {error}")
    return MemoryEngineError(f"OpenAI API error: {error}")


def build_openai_client(api_key: str, base_url: str) -> AsyncOpenAI:
    """Create an AsyncOpenAI client with SDK-level retries disabled."""
    if not api_key:
        raise ConfigurationError("OPENAI_API_KEY not configured")
    return AsyncOpenAI(api_key=api_key, base_url=base_url, max_retries=0)


class OpenAIChatClient:
    """``LLMClient`` implementation backed by the OpenAI chat completions API."""

    def __init__(self, config: LLMConfig | None = None, client=None):
        """Initialize the adapter.

        Args:
            config: LLM configuration (model, credentials, retry budget)
            client: Optional pre-built AsyncOpenAI client
        """
        self._config = config or LLMConfig()
        self._client = client
        self._policy = RetryPolicy(
            max_attempts=self._config.max_attempts,
            base_delay=self._config.retry_base_delay,
        )

    def _ensure_client(self):
        if self._client is None:
            self._client = build_openai_client(
                self._config.api_key, self._config.base_url
            )
            logger.debug(f"OpenAI chat client created for model {self._config.model}")
        return self._client

    async def complete(
        self,
        system: str,
        user: str,
        temperature: float,
        max_tokens: int,
    ) -> str:
        client = self._ensure_client()

        async def _request() -> str:
            try:
                response = await client.chat.completions.create(
                    model=self._config.model,
                    messages=[
                        {"role": "system", "content": system},
                        {"role": "user", "content": user},
                    ],
                    temperature=temperature,
                    max_tokens=max_tokens,
                )
            except Exception as e:
                raise translate_openai_error(e) from e

            content = response.choices[0].message.content if response.choices else None
            if not content:
                raise MalformedResponseError("No content returned from LLM")
            return content

        return await call_with_retry(_request, self._policy, label="LLM completion")
