"""memloom exception hierarchy."""

from __future__ import annotations


class MemloomError(Exception):
    """Base class for all memloom errors."""


class StorageError(MemloomError):
    """Persistence failure or inconsistent stored state."""


class EmbeddingInputError(MemloomError, ValueError):
    """Texts rejected before any provider call."""


class SchemaValidationError(MemloomError):
    """Model output failed to parse or validate against its schema."""

    def __init__(self, stage: str, message: str) -> None:
        self.stage = stage
        super().__init__(f"[{stage}] {message}")


class ProviderError(MemloomError):
    """A remote provider call failed."""

    def __init__(self, provider: str, stage: str, message: str, *, attempts: int = 1) -> None:
        self.provider = provider
        self.stage = stage
        self.attempts = attempts
        super().__init__(f"{provider} {stage} failed after {attempts} attempt(s): {message}")


class EmbeddingProviderError(ProviderError):
    pass


class CompletionError(ProviderError):
    pass


class ProviderThrottled(MemloomError):
    """Provider reported throttling inside an otherwise well-formed response."""

    def __init__(self, provider: str, code: str) -> None:
        self.provider = provider
        self.code = code
        super().__init__(f"{provider} throttled: {code}")


class EmbeddingResponseError(MemloomError):
    """Provider returned a response that does not match the request."""
