from __future__ import annotations


class PubArchiveError(Exception):
    """Base exception for all pub-archive errors."""


class ValidationError(PubArchiveError):
    """Raised when a record lacks the identity fields required for storage."""

    def __init__(self, reason: str, field: str | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.field = field


class FetchError(PubArchiveError):
    """Base for failures talking to the remote community."""


class TransientNetworkError(FetchError):
    """Raised for timeouts, connection resets and rate-limit responses."""


class NonRetryableError(FetchError):
    """Raised for authentication failures and malformed API responses."""


class StorageError(PubArchiveError):
    """Raised when a durable-store write fails."""


class BatchExistsError(StorageError):
    """Raised when an export batch name is already recorded."""
