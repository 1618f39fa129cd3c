"""Memory engine configuration models."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Literal

import yaml
from loguru import logger
from pydantic import BaseModel, Field, ValidationError, model_validator

from . import env_config
from .errors import ConfigurationError


class StorageConfig(BaseModel):
    """Storage paths configuration."""

    sqlite_db_path: str = Field(default_factory=env_config.memory_db_path)

    @model_validator(mode="after")
    def _validate_paths(self) -> "StorageConfig":
        normalized = os.path.normpath(self.sqlite_db_path)
        parts = normalized.replace("\\", "/").split("/")
        if ".." in parts:
            raise ValueError(
                f"sqlite_db_path must not contain '..' components: "
                f"{self.sqlite_db_path!r}"
            )
        self.sqlite_db_path = normalized
        return self


class LLMConfig(BaseModel):
    """Chat-completion provider configuration."""

    model: str = "gpt-4o-mini"
    api_key: str = Field(default_factory=env_config.openai_api_key, repr=False)
    base_url: str = Field(default_factory=env_config.openai_base_url)
    extraction_temperature: float = 0.3
    extraction_max_tokens: int = 2000
    consolidation_temperature: float = 0.3
    consolidation_max_tokens: int = 200
    max_attempts: int = Field(default=2, ge=1)
    retry_base_delay: float = Field(default=1.0, ge=0.0)


class EmbeddingConfig(BaseModel):
    """Embedding model configuration."""

    provider: Literal["api", "local"] = Field(
        default_factory=env_config.embedding_provider
    )
    model: str = "text-embedding-3-small"
    dimension: int = Field(default=1536, gt=0)
    api_key: str = Field(default_factory=env_config.openai_api_key, repr=False)
    base_url: str = Field(default_factory=env_config.openai_base_url)
    max_input_chars: int = 8192
    max_attempts: int = Field(default=3, ge=1)
    retry_base_delay: float = Field(default=1.0, ge=0.0)
    trust_remote_code: bool = False


class ExtractionConfig(BaseModel):
    """Memory extraction configuration."""

    enabled: bool = True
    min_importance: float = Field(default=0.3, ge=0.0, le=1.0)
    min_content_length: int = 10
    min_message_length: int = 20
    dedup_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    context_messages: int = 5
    keyword_boost: bool = False


class RetrievalConfig(BaseModel):
    """Retrieval configuration."""

    limit: int = Field(default=10, gt=0)
    min_importance: float = Field(default=0.3, ge=0.0, le=1.0)
    context_limit: int = Field(default=8, gt=0)
    await_access_updates: bool = True


class ConsolidationConfig(BaseModel):
    """Memory consolidation configuration."""

    similarity_threshold: float = Field(default=0.70, ge=0.0, le=1.0)


class CleanupConfig(BaseModel):
    """Capacity and importance-floor eviction configuration."""

    max_memories: int = Field(default=1000, ge=0)
    min_importance: float = Field(default=0.2, ge=0.0, le=1.0)


class BatchConfig(BaseModel):
    """Chat history backfill throttling."""

    batch_size: int = Field(default=5, gt=0)
    inter_batch_delay: float = Field(default=1.0, ge=0.0)  # seconds
    history_limit: int = Field(default=50, gt=0)


class MemoryConfig(BaseModel):
    """Top-level memory engine configuration."""

    storage: StorageConfig = Field(default_factory=StorageConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    consolidation: ConsolidationConfig = Field(default_factory=ConsolidationConfig)
    cleanup: CleanupConfig = Field(default_factory=CleanupConfig)
    batch: BatchConfig = Field(default_factory=BatchConfig)


_ENV_PATTERN = re.compile(r"\$\{(\w+)\}")


def read_yaml(config_path: str | Path) -> dict[str, Any]:
    """
    Read a YAML configuration file with environment variable substitution.

    ``${VAR}`` placeholders are replaced from the environment; unknown
    variables are left as-is.

    Raises:
        FileNotFoundError: If the configuration file is not found.
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    content = path.read_text(encoding="utf-8")

    def replacer(match: re.Match) -> str:
        return os.getenv(match.group(1), match.group(0))

    content = _ENV_PATTERN.sub(replacer, content)

    try:
        return yaml.safe_load(content) or {}
    except yaml.YAMLError as e:
        logger.critical(f"Error parsing YAML file: {e}")
        raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e


def _format_validation_error(error: ValidationError) -> str:
    lines = []
    for err in error.errors():
        location = " -> ".join(str(loc) for loc in err["loc"])
        lines.append(f"  - '{location}': {err['msg']}")
    return "\n".join(lines)


def load_config(config_path: str | Path) -> MemoryConfig:
    """Load and validate a MemoryConfig from a YAML file.

    The file may either hold the config at its root or under a ``memory`` key.
    """
    data = read_yaml(config_path)
    if "memory" in data and isinstance(data["memory"], dict):
        data = data["memory"]

    try:
        config = MemoryConfig.model_validate(data)
    except ValidationError as e:
        message = _format_validation_error(e)
        logger.error(f"Invalid memory configuration:\n{message}")
        raise ConfigurationError(f"Invalid memory configuration:\n{message}") from e

    logger.info(f"Loaded memory configuration from {config_path}")
    return config
