"""
Durable priority queue of per-subject sync jobs.

Items move pending -> processing -> completed | failed. A failed attempt
goes back to pending with its scheduled_for pushed out by the backoff table
until max_attempts is reached, then it becomes terminal. Retries therefore
survive process restarts and are visible as rows rather than sleeping loops.
"""
import logging
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from sqlalchemy import delete, func, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from inboxsync.models.sync import QUEUE_ACTIVE, QUEUE_TERMINAL, TRIGGERS, QueueItem

logger = logging.getLogger(__name__)

DEFAULT_BACKOFF_SECONDS = (5, 15, 60, 300)

# How many claim candidates to try before giving up on a contended dequeue
_CLAIM_CANDIDATES = 5


def backoff(attempts: int, table: Sequence[int] = DEFAULT_BACKOFF_SECONDS) -> timedelta:
    """Delay before the next attempt after `attempts` failures.

    The table is indexed from the first failure and clamped to its last
    value, so the sequence is non-decreasing for a sorted table.
    """
    if not table:
        return timedelta(0)
    index = min(max(attempts, 1), len(table)) - 1
    return timedelta(seconds=table[index])


class SyncQueue:
    """Enqueue, claim and settle sync jobs stored in the QueueItem table."""

    def __init__(
        self,
        engine,
        max_attempts: int = 3,
        backoff_table: Sequence[int] = DEFAULT_BACKOFF_SECONDS,
    ):
        self.engine = engine
        self.max_attempts = max_attempts
        self.backoff_table = list(backoff_table)

    def enqueue(
        self,
        subject_id: str,
        triggered_by: str,
        priority: int = 0,
        scheduled_for: Optional[datetime] = None,
    ) -> int:
        """
        Add a job for the subject, or return the one already waiting.

        Returns:
            The id of the new or existing non-terminal QueueItem.
        """
        if triggered_by not in TRIGGERS:
            raise ValueError(f"Unknown trigger {triggered_by!r}")

        existing = self._active_item(subject_id)
        if existing is not None:
            logger.info("Subject %s already has queued job %s", subject_id, existing.id)
            return existing.id

        now = datetime.utcnow()
        item = QueueItem(
            subject_id=subject_id,
            status="pending",
            priority=priority,
            attempts=0,
            max_attempts=self.max_attempts,
            enqueued_at=now,
            scheduled_for=scheduled_for or now,
            triggered_by=triggered_by,
        )
        with Session(self.engine) as s:
            s.add(item)
            try:
                s.commit()
            except IntegrityError:
                # Lost a race with another enqueue for the same subject
                s.rollback()
                item = None
            else:
                s.refresh(item)

        if item is None:
            existing = self._active_item(subject_id)
            return existing.id

        logger.info(
            "Enqueued job %s for %s (trigger=%s, priority=%d)",
            item.id, subject_id, triggered_by, priority,
        )
        return item.id

    def dequeue_next(self) -> Optional[QueueItem]:
        """
        Claim the best runnable pending job.

        Ordering is priority desc, then enqueued_at asc, among items whose
        scheduled_for has passed. The claim is a conditional UPDATE guarded
        on status='pending', so two drivers never both win the same item.
        """
        now = datetime.utcnow()
        with Session(self.engine) as s:
            candidates = s.exec(
                select(QueueItem.id)
                .where(QueueItem.status == "pending")
                .where(QueueItem.scheduled_for <= now)
                .order_by(QueueItem.priority.desc(), QueueItem.enqueued_at.asc(), QueueItem.id.asc())
                .limit(_CLAIM_CANDIDATES)
            ).all()

            for item_id in candidates:
                result = s.execute(
                    update(QueueItem)
                    .where(QueueItem.id == item_id)
                    .where(QueueItem.status == "pending")
                    .values(
                        status="processing",
                        attempts=QueueItem.attempts + 1,
                        started_at=now,
                        last_attempt_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                s.commit()
                if result.rowcount == 1:
                    item = s.get(QueueItem, item_id)
                    logger.info(
                        "Claimed job %s for %s (attempt %d/%d)",
                        item.id, item.subject_id, item.attempts, item.max_attempts,
                    )
                    return item
        return None

    def complete(self, item_id: int) -> None:
        with Session(self.engine) as s:
            s.execute(
                update(QueueItem)
                .where(QueueItem.id == item_id)
                .values(status="completed", completed_at=datetime.utcnow())
            )
            s.commit()
        logger.info("Job %s completed", item_id)

    def fail(self, item_id: int, message: str, retry: bool = True) -> None:
        """
        Record a failed attempt.

        Reschedules with backoff while attempts remain (and `retry` is set);
        otherwise marks the item terminally failed.
        """
        now = datetime.utcnow()
        with Session(self.engine) as s:
            item = s.get(QueueItem, item_id)
            if item is None:
                logger.error("Job %s not found while recording failure", item_id)
                return

            item.last_error = message
            item.last_attempt_at = now
            if retry and item.attempts < item.max_attempts:
                delay = backoff(item.attempts, self.backoff_table)
                item.status = "pending"
                item.scheduled_for = now + delay
                logger.warning(
                    "Job %s for %s failed (attempt %d/%d), retrying in %ds: %s",
                    item.id, item.subject_id, item.attempts, item.max_attempts,
                    delay.total_seconds(), message,
                )
            else:
                item.status = "failed"
                item.completed_at = now
                logger.error(
                    "Job %s for %s failed permanently after %d attempts: %s",
                    item.id, item.subject_id, item.attempts, message,
                )
            s.add(item)
            s.commit()

    def cancel(self, item_id: int) -> bool:
        """Cancel a job that has not started. Returns True if it was pending."""
        with Session(self.engine) as s:
            result = s.execute(
                update(QueueItem)
                .where(QueueItem.id == item_id)
                .where(QueueItem.status == "pending")
                .values(status="failed", last_error="Cancelled", completed_at=datetime.utcnow())
            )
            s.commit()
        return result.rowcount > 0

    def cleanup(self, retention_days: int) -> int:
        """Delete terminal jobs that finished before the retention window."""
        cutoff = datetime.utcnow() - timedelta(days=retention_days)
        with Session(self.engine) as s:
            result = s.execute(
                delete(QueueItem)
                .where(QueueItem.status.in_(QUEUE_TERMINAL))
                .where(QueueItem.completed_at < cutoff)
            )
            s.commit()
        if result.rowcount:
            logger.info("Cleaned up %d old queue items", result.rowcount)
        return result.rowcount

    def pending_count(self) -> int:
        return self._count("pending")

    def processing_count(self) -> int:
        return self._count("processing")

    def get(self, item_id: int) -> Optional[QueueItem]:
        with Session(self.engine) as s:
            return s.get(QueueItem, item_id)

    def list_items(self, subject_id: str) -> List[QueueItem]:
        with Session(self.engine) as s:
            return list(
                s.exec(
                    select(QueueItem)
                    .where(QueueItem.subject_id == subject_id)
                    .order_by(QueueItem.enqueued_at)
                ).all()
            )

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _active_item(self, subject_id: str) -> Optional[QueueItem]:
        with Session(self.engine) as s:
            return s.exec(
                select(QueueItem)
                .where(QueueItem.subject_id == subject_id)
                .where(QueueItem.status.in_(QUEUE_ACTIVE))
            ).first()

    def _count(self, status: str) -> int:
        with Session(self.engine) as s:
            return s.exec(
                select(func.count()).select_from(QueueItem).where(QueueItem.status == status)
            ).one()
