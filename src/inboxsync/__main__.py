"""
Main entrypoint: runs the APScheduler batch and cleanup jobs in one process.

FastAPI runs separately under uvicorn (for run-now, webhook and cron calls).

Usage:
    python -m inboxsync authorize SUBJECT   # store a subject's access token
    python -m inboxsync batch               # run one batch and exit
    python -m inboxsync cleanup-locks       # clear stale leases and exit
    python -m inboxsync                     # starts the scheduler
    uvicorn inboxsync.api.main:app --host 0.0.0.0 --port 8000  # starts API
"""
import asyncio
import logging
import sys

from inboxsync.config import get_settings

logging.basicConfig(
    level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


def _run_authorize(subject_id: str) -> None:
    from inboxsync.scripts.authorize import run_authorize
    run_authorize(subject_id)


def _run_cleanup_locks() -> None:
    from datetime import timedelta

    from inboxsync.db.engine import get_engine
    from inboxsync.sync.lock import LeaseManager

    settings = get_settings()
    locks = LeaseManager(get_engine(), stale_after=timedelta(seconds=settings.stale_lock_seconds))
    cleared = locks.clear_stale_locks()
    print(f"Cleared {cleared} stale lease(s).")


async def _run_batch() -> None:
    import httpx

    from inboxsync.db.engine import get_engine
    from inboxsync.sync.batch import enqueue_due_subjects, run_batch
    from inboxsync.sync.factory import build_queue, build_sync_engine

    settings = get_settings()
    engine = get_engine()
    queue = build_queue(engine, settings)
    enqueue_due_subjects(queue, engine)
    async with httpx.AsyncClient(timeout=30.0) as client:
        report = await run_batch(
            queue, build_sync_engine(engine, client, settings), settings.batch_time_budget_seconds
        )
    print(
        f"Processed {len(report.processed)}, failed {len(report.failed)}, "
        f"{queue.pending_count()} still pending."
    )


async def _run_scheduler() -> None:
    from inboxsync.db.engine import get_engine
    from inboxsync.scheduler.jobs import build_scheduler

    settings = get_settings()
    scheduler = build_scheduler(get_engine())
    scheduler.start()
    logger.info(
        "Scheduler started (batch every %d min, cleanup at %02d:00 UTC)",
        settings.batch_interval_minutes, settings.cleanup_hour,
    )

    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Shutting down...")
    finally:
        scheduler.shutdown()
        logger.info("Goodbye.")


if __name__ == "__main__":
    # Dispatch on first argument; no argument starts the scheduler
    command = sys.argv[1] if len(sys.argv) > 1 else None
    if command == "authorize":
        if len(sys.argv) != 3:
            print("Usage: python -m inboxsync authorize SUBJECT_ID")
            sys.exit(2)
        _run_authorize(sys.argv[2])
    elif command == "batch":
        asyncio.run(_run_batch())
    elif command == "cleanup-locks":
        _run_cleanup_locks()
    elif command is None:
        asyncio.run(_run_scheduler())
    else:
        print(__doc__)
        sys.exit(2)
