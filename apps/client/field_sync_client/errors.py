"""Error taxonomy for the sync client.

None of these escape a drain cycle: the orchestrator records them on the
offline record (``last_error``) and the UI polls record status instead.
"""
from __future__ import annotations


class SyncError(Exception):
    """Base class for everything the sync client records on a record."""


class TransientNetworkError(SyncError):
    """Network-class failure; retried with backoff up to the abandonment threshold."""


class ValidationError(SyncError):
    """The server rejected the submission; never retried."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ConflictError(SyncError):
    """The idempotency key was already resolved server-side; treated as success."""

    def __init__(self, message: str, ticket_number: str | None = None) -> None:
        super().__init__(message)
        self.ticket_number = ticket_number


class StorageCorruption(SyncError):
    """A stored record could not be read back; it is quarantined."""

    def __init__(self, local_id: str, reason: str) -> None:
        super().__init__(f"{local_id}: {reason}")
        self.local_id = local_id
        self.reason = reason


class InvalidTransition(SyncError):
    """A status change that the record state machine does not allow."""
