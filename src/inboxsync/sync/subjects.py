"""SyncSubject lookup, creation and the read-only status query."""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from inboxsync.models.sync import SyncSubject
from inboxsync.sync.audit import latest_log_entry

logger = logging.getLogger(__name__)


def get_subject(engine, subject_id: str) -> Optional[SyncSubject]:
    with Session(engine) as s:
        return s.exec(
            select(SyncSubject).where(SyncSubject.subject_id == subject_id)
        ).first()


def get_or_create_subject(engine, subject_id: str) -> SyncSubject:
    """Return the subject's checkpoint row, inserting an empty one on first use.

    Two invocations racing on the first sync both end up with the same row:
    the loser's insert trips the unique constraint and re-reads.
    """
    existing = get_subject(engine, subject_id)
    if existing:
        return existing

    with Session(engine) as s:
        subject = SyncSubject(subject_id=subject_id)
        s.add(subject)
        try:
            s.commit()
        except IntegrityError:
            s.rollback()
        else:
            s.refresh(subject)
            logger.info("Registered sync subject %s", subject_id)
            return subject

    return get_subject(engine, subject_id)


def subject_status(
    engine, subject_id: str, stale_after: timedelta
) -> Optional[Dict[str, Any]]:
    """
    Subject metadata plus its most recent log entry, or None if unknown.

    `syncing` reflects only a valid lease; a lease older than `stale_after`
    reads as not syncing.
    """
    from inboxsync.sync.lock import LeaseManager

    subject = get_subject(engine, subject_id)
    if subject is None:
        return None

    now = datetime.utcnow()
    syncing = LeaseManager(engine, stale_after).is_locked(subject_id)
    next_sync_in = None
    if subject.next_scheduled_sync is not None:
        next_sync_in = max(0.0, (subject.next_scheduled_sync - now).total_seconds())

    last = latest_log_entry(engine, subject_id)
    return {
        "subject_id": subject.subject_id,
        "syncing": syncing,
        "cursor": subject.cursor,
        "last_sync_at": subject.last_sync_at,
        "next_scheduled_sync": subject.next_scheduled_sync,
        "next_sync_in_seconds": next_sync_in,
        "total_items_processed": subject.total_items_processed,
        "total_records_created": subject.total_records_created,
        "created_by_type": dict(subject.created_by_type or {}),
        "consecutive_error_count": subject.consecutive_error_count,
        "last_error": subject.last_error,
        "last_error_at": subject.last_error_at,
        "needs_reauth": subject.needs_reauth,
        "extractor_version": subject.extractor_version,
        "last_sync": last.model_dump() if last else None,
    }
