"""Typed errors for Ephemera."""

from __future__ import annotations


class EphemeraError(Exception):
    """Base exception for all Ephemera errors."""


class NotFoundError(EphemeraError):
    """Raised when no usable entry exists for an id.

    Deliberately covers malformed, absent, expired and exhausted ids alike
    so callers cannot tell them apart.
    """

    def __init__(self, entry_id: str) -> None:
        self.entry_id = entry_id
        super().__init__("Entry not found")


class ConflictError(EphemeraError):
    """Raised when a freshly generated id is already taken."""

    def __init__(self, entry_id: str) -> None:
        self.entry_id = entry_id
        super().__init__(f"Entry id collision: {entry_id}")


class StorageError(EphemeraError):
    """Raised when the blob directory or the metadata index fails.

    Always carries the name of the failing operation.
    """

    def __init__(self, operation: str, cause: BaseException) -> None:
        self.operation = operation
        self.cause = cause
        super().__init__(f"{operation}: {cause}")


class LimitExceededError(EphemeraError):
    """Raised when a per-file limit is malformed or above the global limit."""


class BlobTooLargeError(LimitExceededError):
    """Raised when an upload exceeds the configured maximum blob size."""

    def __init__(self, max_size: int) -> None:
        self.max_size = max_size
        super().__init__(f"Blob exceeds maximum size of {max_size} bytes")
