"""
Exception taxonomy for the sync engine.

Source adapters translate their transport failures into these types so the
engine can decide, per class, whether to count, retry, fall back or abort.
"""
from typing import Optional


class SyncError(Exception):
    """Base class for every sync-related failure."""


class TransientSourceError(SyncError):
    """Rate limit, 5xx or network failure. Counted per item; retried by the queue."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class AuthExpiredError(SyncError):
    """Credential missing, expired or revoked. The subject needs re-authorization."""


class CursorExpiredError(SyncError):
    """The stored cursor is too old for the change log. Triggers a full sync."""


class PerItemExtractionError(SyncError):
    """The classifier failed on one item. Counted, never aborts the run."""

    def __init__(self, item_id: str, message: str):
        self.item_id = item_id
        super().__init__(f"{item_id}: {message}")


class LockContentionError(SyncError):
    """Another invocation holds a valid lease on the subject."""

    def __init__(self, subject_id: str):
        self.subject_id = subject_id
        super().__init__(f"Sync already in progress for subject {subject_id}")


class CircuitBreakerOpen(SyncError):
    """Too many consecutive errors; the subject is cooling down."""

    def __init__(self, subject_id: str, remaining_seconds: float):
        self.subject_id = subject_id
        self.remaining_seconds = remaining_seconds
        minutes = max(1, int(-(-remaining_seconds // 60)))
        super().__init__(
            f"Sync paused for subject {subject_id} due to repeated errors. "
            f"Try again in {minutes} minutes"
        )
