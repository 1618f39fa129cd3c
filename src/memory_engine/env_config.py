"""
Environment configuration module.

Centralizes environment variable access for provider credentials and
storage paths. Values are read from a .env file or the process environment.
"""

import os

from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()


def get_env(key: str, default: str = "") -> str:
    """Get environment variable with default fallback."""
    return os.getenv(key, default)


def openai_api_key() -> str:
    return get_env("OPENAI_API_KEY")


def openai_base_url() -> str:
    return get_env("OPENAI_BASE_URL", "https://api.openai.com/v1")


def memory_db_path() -> str:
    return get_env("MEMORY_DB_PATH", "./memory/memories.db")


def embedding_provider() -> str:
    return get_env("MEMORY_EMBEDDING_PROVIDER", "api")
