"""
Memory engine exceptions.

Provider, storage and validation failures are raised as these types so the
service facade can decide which ones are retried, which are surfaced, and
which are converted into result objects.
"""


class MemoryEngineError(Exception):
    """Base exception for the memory engine."""

    pass


class ConfigurationError(MemoryEngineError):
    """Missing or invalid configuration (credentials, config file)."""

    pass


class TransientProviderError(MemoryEngineError):
    """Rate limit or network failure from an LLM or embedding provider."""

    def __init__(self, message: str, rate_limited: bool = False):
        self.rate_limited = rate_limited
        super().__init__(message)


class MalformedResponseError(MemoryEngineError):
    """Provider output that is not valid JSON or does not match the schema."""

    def __init__(self, message: str, raw: str = ""):
        self.raw = raw[:500]
        super().__init__(message)


class NotFoundError(MemoryEngineError):
    """Missing chat, message or user."""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind.capitalize()} not found: {identifier}")


class ValidationError(MemoryEngineError):
    """A candidate memory failed the importance/type/length filter."""

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"Validation error for '{field}': {message}")
