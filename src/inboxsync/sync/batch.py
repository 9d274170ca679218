"""
Time-boxed batch driver for scheduled runs.

One invocation: sweep stale leases, then claim and run queued subjects one at
a time until the queue is empty or the time budget is spent. A sync that is
already running when the budget expires is allowed to finish; the driver only
stops starting new ones. Whatever is still pending waits for the next run.
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List

from sqlalchemy import or_
from sqlmodel import Session, select

from inboxsync.models.sync import SyncSubject
from inboxsync.sync.engine import SyncEngine
from inboxsync.sync.errors import AuthExpiredError, CircuitBreakerOpen, LockContentionError
from inboxsync.sync.lock import LeaseManager
from inboxsync.sync.queue import SyncQueue

logger = logging.getLogger(__name__)


@dataclass
class BatchReport:
    stale_locks_cleared: int = 0
    processed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    budget_exhausted: bool = False
    duration_seconds: float = 0.0


def enqueue_due_subjects(queue: SyncQueue, engine, priority: int = 0) -> int:
    """Enqueue every subject whose next scheduled sync is due (or unset)."""
    now = datetime.utcnow()
    with Session(engine) as s:
        subject_ids = s.exec(
            select(SyncSubject.subject_id).where(
                or_(
                    SyncSubject.next_scheduled_sync.is_(None),
                    SyncSubject.next_scheduled_sync <= now,
                )
            )
        ).all()

    for subject_id in subject_ids:
        queue.enqueue(subject_id, "scheduled", priority)
    logger.info("Enqueued %d due subjects", len(subject_ids))
    return len(subject_ids)


async def run_batch(
    queue: SyncQueue,
    sync_engine: SyncEngine,
    time_budget_seconds: float,
    clock: Callable[[], float] = time.monotonic,
) -> BatchReport:
    """
    Drain the queue until it is empty or `time_budget_seconds` have elapsed.

    Args:
        queue: Queue to claim jobs from.
        sync_engine: Engine used to run each claimed subject.
        time_budget_seconds: Wall-clock budget for starting new subjects.
        clock: Monotonic clock (injectable for tests).

    Returns:
        BatchReport with per-subject outcomes.
    """
    start = clock()
    report = BatchReport()

    locks = LeaseManager(
        sync_engine.engine,
        stale_after=timedelta(seconds=sync_engine.settings.stale_lock_seconds),
    )
    report.stale_locks_cleared = locks.clear_stale_locks()

    while True:
        if clock() - start >= time_budget_seconds:
            report.budget_exhausted = True
            logger.info("Batch time budget of %.0fs exhausted", time_budget_seconds)
            break

        item = queue.dequeue_next()
        if item is None:
            break

        try:
            result = await sync_engine.sync_subject(item.subject_id, item.triggered_by)
        except AuthExpiredError as exc:
            queue.fail(item.id, f"Re-authorization required: {exc}", retry=False)
            report.failed.append(item.subject_id)
        except (LockContentionError, CircuitBreakerOpen) as exc:
            queue.fail(item.id, str(exc))
            report.failed.append(item.subject_id)
        except Exception as exc:
            logger.exception("Sync failed for queued subject %s", item.subject_id)
            queue.fail(item.id, str(exc) or exc.__class__.__name__)
            report.failed.append(item.subject_id)
        else:
            if result.success:
                queue.complete(item.id)
                report.processed.append(item.subject_id)
            else:
                queue.fail(item.id, result.errors[0]["error"] if result.errors else result.status)
                report.failed.append(item.subject_id)

    report.duration_seconds = clock() - start
    logger.info(
        "Batch finished: %d processed, %d failed, %d stale leases cleared (%.1fs)",
        len(report.processed), len(report.failed), report.stale_locks_cleared,
        report.duration_seconds,
    )
    return report
