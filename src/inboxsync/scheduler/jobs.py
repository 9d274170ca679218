"""
APScheduler jobs for background sync.

batch_sync (interval): enqueue every subject whose next sync is due, then
drain the queue within the batch time budget. Manual and webhook triggers
share the same queue, so this job also picks those up.

cleanup (daily cron): drop settled queue items and old log entries, and
clear leases left behind by crashed runs.

Both jobs catch and log every exception so the scheduler stays alive.
"""
import logging
from datetime import datetime, timedelta

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from inboxsync.config import get_settings
from inboxsync.sync.audit import purge_logs
from inboxsync.sync.batch import enqueue_due_subjects, run_batch
from inboxsync.sync.lock import LeaseManager

logger = logging.getLogger(__name__)


def build_scheduler(engine) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        engine: SQLAlchemy engine shared by the jobs.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = get_settings()
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _batch_sync,
        trigger="interval",
        minutes=settings.batch_interval_minutes,
        id="batch_sync",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        kwargs={"engine": engine},
    )
    scheduler.add_job(
        _cleanup,
        trigger="cron",
        hour=settings.cleanup_hour,
        minute=0,
        id="cleanup",
        replace_existing=True,
        kwargs={"engine": engine},
    )

    return scheduler


async def _batch_sync(engine) -> None:
    """Enqueue due subjects and run one time-boxed batch."""
    from inboxsync.sync.factory import build_queue, build_sync_engine

    settings = get_settings()
    logger.info("Batch sync starting at %s", datetime.utcnow().isoformat())

    try:
        queue = build_queue(engine, settings)
        enqueue_due_subjects(queue, engine)
        async with httpx.AsyncClient(timeout=30.0) as client:
            sync_engine = build_sync_engine(engine, client, settings)
            await run_batch(queue, sync_engine, settings.batch_time_budget_seconds)
    except Exception as exc:
        logger.error("Batch sync failed: %s", exc)


async def _cleanup(engine) -> None:
    """Daily retention sweep."""
    from inboxsync.sync.factory import build_queue

    settings = get_settings()
    try:
        removed_items = build_queue(engine, settings).cleanup(settings.queue_retention_days)
        removed_logs = purge_logs(engine, settings.log_retention_days)
        cleared = LeaseManager(
            engine, stale_after=timedelta(seconds=settings.stale_lock_seconds)
        ).clear_stale_locks()
        logger.info(
            "Cleanup: %d queue items, %d log entries removed, %d stale leases cleared",
            removed_items, removed_logs, cleared,
        )
    except Exception as exc:
        logger.error("Cleanup failed: %s", exc)
