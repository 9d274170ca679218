"""Immutable sync log entries: write, look up the latest, purge expired."""
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete
from sqlmodel import Session, select

from inboxsync.models.sync import SyncLog

logger = logging.getLogger(__name__)


def write_log_entry(engine, entry: SyncLog) -> SyncLog:
    """Insert one log entry. Entries are never updated afterwards."""
    with Session(engine) as s:
        s.add(entry)
        s.commit()
        s.refresh(entry)
    return entry


def latest_log_entry(engine, subject_id: str) -> Optional[SyncLog]:
    with Session(engine) as s:
        return s.exec(
            select(SyncLog)
            .where(SyncLog.subject_id == subject_id)
            .order_by(SyncLog.started_at.desc(), SyncLog.id.desc())
        ).first()


def purge_logs(engine, retention_days: int) -> int:
    """Delete log entries older than the retention window. Returns the count."""
    cutoff = datetime.utcnow() - timedelta(days=retention_days)
    with Session(engine) as s:
        result = s.execute(delete(SyncLog).where(SyncLog.started_at < cutoff))
        s.commit()
    if result.rowcount:
        logger.info("Purged %d sync log entries older than %d days", result.rowcount, retention_days)
    return result.rowcount
