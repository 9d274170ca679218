"""Sync bookkeeping models: per-subject checkpoint, work queue, audit log."""
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Column, Index, text
from sqlmodel import Field, SQLModel

TRIGGERS = ("scheduled", "manual", "webhook")
QUEUE_ACTIVE = ("pending", "processing")
QUEUE_TERMINAL = ("completed", "failed")


class SyncSubject(SQLModel, table=True):
    """Durable sync checkpoint for one account. Never deleted."""

    id: Optional[int] = Field(default=None, primary_key=True)
    subject_id: str = Field(unique=True, index=True)

    # Position in the external change stream; None means "never fully synced"
    cursor: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    next_scheduled_sync: Optional[datetime] = Field(default=None, index=True)

    # Cumulative counters
    total_items_processed: int = 0
    total_records_created: int = 0
    created_by_type: Dict[str, int] = Field(
        default_factory=dict, sa_column=Column(JSON, nullable=False, default=dict)
    )

    # Error tracking (circuit breaker input)
    consecutive_error_count: int = 0
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None
    needs_reauth: bool = False

    # Lease
    lease_held: bool = Field(default=False, index=True)
    lease_owner: Optional[str] = None
    lease_started_at: Optional[datetime] = None

    extractor_version: Optional[str] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class QueueItem(SQLModel, table=True):
    """One scheduled unit of sync work for a subject."""

    __table_args__ = (
        Index("ix_queueitem_claim", "status", "scheduled_for", "priority"),
        # At most one pending/processing item per subject
        Index(
            "uq_queueitem_active_subject",
            "subject_id",
            unique=True,
            sqlite_where=text("status IN ('pending', 'processing')"),
            postgresql_where=text("status IN ('pending', 'processing')"),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    subject_id: str = Field(index=True)
    status: str = "pending"  # "pending", "processing", "completed", "failed"
    priority: int = 0
    attempts: int = 0
    max_attempts: int = 3

    enqueued_at: datetime = Field(default_factory=datetime.utcnow)
    scheduled_for: datetime = Field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None

    triggered_by: str = "scheduled"  # "scheduled", "manual", "webhook"
    last_error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in QUEUE_TERMINAL


class SyncLog(SQLModel, table=True):
    """Immutable audit record of one executed sync attempt."""

    id: Optional[int] = Field(default=None, primary_key=True)
    subject_id: str = Field(index=True)
    triggered_by: str = "manual"
    mode: str = "incremental"  # "full", "incremental"

    started_at: datetime = Field(default_factory=datetime.utcnow, index=True)
    completed_at: datetime = Field(default_factory=datetime.utcnow)
    duration_ms: int = 0

    status: str = "success"  # "success", "partial", "failed"
    items_fetched: int = 0
    records_created: int = 0
    records_updated: int = 0
    items_skipped: int = 0
    records_tombstoned: int = 0

    api_calls: int = 0
    quota_units: int = 0

    cursor_before: Optional[str] = None
    cursor_after: Optional[str] = None
    fell_back_to_full: bool = False

    errors: List[Dict[str, Any]] = Field(
        default_factory=list, sa_column=Column(JSON, nullable=False, default=list)
    )
