"""Embedding service for the memory engine.

Provides fixed-dimension vectors for memory content and queries, either
through the OpenAI embeddings API or a local sentence-transformers model.
The local model is lazy-loaded on first use to avoid startup overhead.
"""

from __future__ import annotations

import asyncio
import struct
from typing import TYPE_CHECKING

import numpy as np
from loguru import logger

from .config import EmbeddingConfig
from .errors import MalformedResponseError, MemoryEngineError
from .llm import RetryPolicy, build_openai_client, call_with_retry, translate_openai_error

if TYPE_CHECKING:
    from openai import AsyncOpenAI

MAX_BATCH_SIZE = 100  # OpenAI's max inputs per request
BATCH_DELAY_SECONDS = 0.5


class EmbeddingService:
    """``Embedder`` implementation.

    Features:
    - ``api`` provider: OpenAI embeddings with its own retry budget
    - ``local`` provider: sentence-transformers, encoded off the event loop
    - Dimension check on every returned vector
    - Serialization helpers for SQLite BLOB storage
    """

    def __init__(self, config: EmbeddingConfig | None = None, client: AsyncOpenAI | None = None):
        """Initialize embedding service.

        Args:
            config: Embedding configuration
            client: Optional pre-built AsyncOpenAI client (api provider)
        """
        self._config = config or EmbeddingConfig()
        self._client = client
        self._model = None
        self._dimension = self._config.dimension
        self._policy = RetryPolicy(
            max_attempts=self._config.max_attempts,
            base_delay=self._config.retry_base_delay,
        )

    @property
    def dimension(self) -> int:
        return self._dimension

    def _clean(self, text: str) -> str:
        cleaned = text.strip()[: self._config.max_input_chars]
        if not cleaned:
            raise MemoryEngineError("Text cannot be empty")
        return cleaned

    def _ensure_model(self) -> None:
        """Lazy-load the sentence-transformers model."""
        if self._model is not None:
            return

        try:
            from sentence_transformers import SentenceTransformer
        except ImportError:
            raise ImportError(
                "sentence-transformers is required for the local embedding provider. "
                "Install with: pip install sentence-transformers"
            )

        logger.info(f"Loading embedding model: {self._config.model}")
        self._model = SentenceTransformer(
            self._config.model,
            trust_remote_code=self._config.trust_remote_code,
        )
        # Update dimension from actual model
        self._dimension = self._model.get_sentence_embedding_dimension()
        logger.info(f"Embedding model loaded: dim={self._dimension}")

    def _ensure_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = build_openai_client(
                self._config.api_key, self._config.base_url
            )
        return self._client

    def _check_dimension(self, embedding: list[float]) -> list[float]:
        if len(embedding) != self._dimension:
            raise MalformedResponseError(
                f"Invalid embedding dimensions: expected {self._dimension}, "
                f"got {len(embedding)}"
            )
        return embedding

    async def embed(self, text: str) -> list[float]:
        """Embed a single text.

        Raises:
            MemoryEngineError: empty text or provider failure
            MalformedResponseError: wrong vector dimension
        """
        results = await self.embed_many([text])
        return results[0]

    async def embed_many(self, texts: list[str]) -> list[list[float]]:
        """Embed several texts, batching API requests."""
        if not texts:
            return []

        cleaned = [self._clean(t) for t in texts]

        if self._config.provider == "local":
            return await self._encode_local(cleaned)

        results: list[list[float]] = []
        for start in range(0, len(cleaned), MAX_BATCH_SIZE):
            batch = cleaned[start : start + MAX_BATCH_SIZE]
            results.extend(await self._encode_api(batch))
            # Small delay between batches to avoid rate limiting
            if start + MAX_BATCH_SIZE < len(cleaned):
                await asyncio.sleep(BATCH_DELAY_SECONDS)
        return results

    async def _encode_api(self, batch: list[str]) -> list[list[float]]:
        client = self._ensure_client()

        async def _request() -> list[list[float]]:
            try:
                response = await client.embeddings.create(
                    model=self._config.model,
                    input=batch,
                    dimensions=self._config.dimension,
                )
            except Exception as e:
                raise translate_openai_error(e) from e
            return [self._check_dimension(list(item.embedding)) for item in response.data]

        return await call_with_retry(_request, self._policy, label="Embedding request")

    async def _encode_local(self, texts: list[str]) -> list[list[float]]:
        self._ensure_model()

        def _encode() -> list[list[float]]:
            embeddings: np.ndarray = self._model.encode(
                texts, batch_size=32, show_progress_bar=False,
                normalize_embeddings=True,
            )
            return embeddings.tolist()

        vectors = await asyncio.to_thread(_encode)
        return [self._check_dimension(v) for v in vectors]

    @staticmethod
    def serialize_embedding(embedding: list[float]) -> bytes:
        """Serialize embedding to bytes for SQLite BLOB storage.

        Args:
            embedding: Embedding vector as list of floats

        Returns:
            Packed bytes (little-endian float32)
        """
        return struct.pack(f"<{len(embedding)}f", *embedding)

    @staticmethod
    def deserialize_embedding(blob: bytes) -> list[float]:
        """Deserialize embedding from SQLite BLOB.

        Args:
            blob: Packed bytes from SQLite

        Returns:
            Embedding vector as list of floats
        """
        count = len(blob) // 4  # float32 = 4 bytes
        return list(struct.unpack(f"<{count}f", blob))


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine similarity ``dot(a, b) / (|a| * |b|)``.

    Zero vectors and vectors of different lengths score 0.0.
    """
    if len(a) != len(b) or not a:
        return 0.0

    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    norm_a = float(np.linalg.norm(va))
    norm_b = float(np.linalg.norm(vb))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return float(np.dot(va, vb) / (norm_a * norm_b))
