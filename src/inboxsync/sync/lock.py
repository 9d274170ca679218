"""
Lease-based mutual exclusion per subject.

The lease lives on the SyncSubject row (lease_held / lease_owner /
lease_started_at) so stateless invocations coordinate through the database
rather than process memory. Every state change is a single conditional
UPDATE, so two callers can never both see their acquire succeed.

A lease older than the staleness threshold counts as free: an invocation
that crashed before release() is healed either by the next acquire() or by
the clear_stale_locks() sweep at the start of every batch.
"""
import logging
from datetime import datetime, timedelta

from sqlalchemy import and_, or_, update
from sqlmodel import Session, select

from inboxsync.models.sync import SyncSubject
from inboxsync.sync.subjects import get_or_create_subject

logger = logging.getLogger(__name__)


class LeaseManager:
    """Acquire, release and sweep per-subject leases."""

    def __init__(self, engine, stale_after: timedelta):
        self.engine = engine
        self.stale_after = stale_after

    def acquire(self, subject_id: str, owner: str) -> bool:
        """
        Take the subject's lease if it is free or stale.

        Returns:
            True if this caller now holds the lease, False if another valid
            lease exists (state is left untouched in that case).
        """
        get_or_create_subject(self.engine, subject_id)

        now = datetime.utcnow()
        cutoff = now - self.stale_after
        with Session(self.engine) as s:
            previous = s.exec(
                select(SyncSubject).where(SyncSubject.subject_id == subject_id)
            ).first()
            prev_held = previous.lease_held if previous else False
            prev_owner = previous.lease_owner if previous else None
            prev_started = previous.lease_started_at if previous else None

            result = s.execute(
                update(SyncSubject)
                .where(SyncSubject.subject_id == subject_id)
                .where(
                    or_(
                        SyncSubject.lease_held == False,  # noqa: E712
                        SyncSubject.lease_started_at.is_(None),
                        SyncSubject.lease_started_at < cutoff,
                    )
                )
                .values(lease_held=True, lease_owner=owner, lease_started_at=now)
                .execution_options(synchronize_session=False)
            )
            s.commit()

        if result.rowcount == 1:
            if prev_held:
                logger.warning(
                    "Took over stale lease on %s (previous owner %s, started %s)",
                    subject_id, prev_owner, prev_started,
                )
            logger.debug("Lease acquired on %s by %s", subject_id, owner)
            return True

        logger.warning("Sync already in progress for %s (owner %s)", subject_id, prev_owner)
        return False

    def release(self, subject_id: str) -> None:
        """Clear the lease unconditionally. Safe to call when not held."""
        with Session(self.engine) as s:
            s.execute(
                update(SyncSubject)
                .where(SyncSubject.subject_id == subject_id)
                .values(lease_held=False, lease_owner=None, lease_started_at=None)
            )
            s.commit()
        logger.debug("Lease released on %s", subject_id)

    def is_locked(self, subject_id: str) -> bool:
        """True iff a lease is held and younger than the staleness threshold."""
        with Session(self.engine) as s:
            subject = s.exec(
                select(SyncSubject).where(SyncSubject.subject_id == subject_id)
            ).first()
        if subject is None or not subject.lease_held:
            return False
        if subject.lease_started_at is None:
            return False
        return datetime.utcnow() - subject.lease_started_at <= self.stale_after

    def clear_stale_locks(self) -> int:
        """Release every lease older than the threshold. Returns how many."""
        cutoff = datetime.utcnow() - self.stale_after
        with Session(self.engine) as s:
            result = s.execute(
                update(SyncSubject)
                .where(
                    and_(
                        SyncSubject.lease_held == True,  # noqa: E712
                        SyncSubject.lease_started_at < cutoff,
                    )
                )
                .values(lease_held=False, lease_owner=None, lease_started_at=None)
            )
            s.commit()
        if result.rowcount:
            logger.info("Cleared %d stale leases", result.rowcount)
        return result.rowcount
