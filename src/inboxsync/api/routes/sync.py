"""Sync trigger, enqueue, status and batch routes."""
import logging
import math
import secrets
from dataclasses import asdict
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import BaseModel
from sqlmodel import Session

from inboxsync.config import Settings, get_settings
from inboxsync.db.engine import get_session
from inboxsync.models.sync import TRIGGERS
from inboxsync.sync.batch import enqueue_due_subjects, run_batch
from inboxsync.sync.engine import SyncEngine
from inboxsync.sync.errors import AuthExpiredError, CircuitBreakerOpen, LockContentionError
from inboxsync.sync.factory import build_queue, build_sync_engine
from inboxsync.sync.queue import SyncQueue
from inboxsync.sync.subjects import get_subject, subject_status

logger = logging.getLogger(__name__)

router = APIRouter()


class EnqueueRequest(BaseModel):
    triggered_by: str = "webhook"
    priority: int = 0


def get_sync_engine(
    request: Request,
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> SyncEngine:
    return build_sync_engine(session.get_bind(), request.app.state.http_client, settings)


def get_queue(
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> SyncQueue:
    return build_queue(session.get_bind(), settings)


@router.post("/subjects/{subject_id}")
async def sync_now(
    subject_id: str,
    force_full: bool = False,
    sync_engine: SyncEngine = Depends(get_sync_engine),
):
    """Run one sync for the subject immediately and return its result."""
    try:
        result = await sync_engine.sync_subject(subject_id, "manual", force_full=force_full)
    except LockContentionError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except CircuitBreakerOpen as exc:
        raise HTTPException(
            status_code=429,
            detail=str(exc),
            headers={"Retry-After": str(math.ceil(exc.remaining_seconds))},
        )
    except AuthExpiredError as exc:
        raise HTTPException(status_code=401, detail=f"Re-authorization required: {exc}")
    return result.to_dict()


@router.post("/subjects/{subject_id}/enqueue")
def enqueue_subject(
    subject_id: str,
    request: Optional[EnqueueRequest] = None,
    session: Session = Depends(get_session),
    queue: SyncQueue = Depends(get_queue),
):
    """Queue a sync for a known subject (webhook / push trigger)."""
    request = request or EnqueueRequest()
    if request.triggered_by not in TRIGGERS:
        raise HTTPException(status_code=422, detail=f"Unknown trigger {request.triggered_by!r}")
    if get_subject(session.get_bind(), subject_id) is None:
        raise HTTPException(status_code=404, detail="Subject not found")
    item_id = queue.enqueue(subject_id, request.triggered_by, request.priority)
    return {"queue_item_id": item_id, "subject_id": subject_id}


@router.get("/subjects/{subject_id}/status")
def get_status(
    subject_id: str,
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
):
    """Subject checkpoint plus the most recent log entry."""
    status = subject_status(
        session.get_bind(), subject_id, timedelta(seconds=settings.stale_lock_seconds)
    )
    if status is None:
        raise HTTPException(status_code=404, detail="Subject not found")
    return status


@router.post("/batch")
async def batch(
    authorization: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
    queue: SyncQueue = Depends(get_queue),
    sync_engine: SyncEngine = Depends(get_sync_engine),
):
    """
    Scheduled entry point (external cron): enqueue due subjects, then drain
    the queue within the configured time budget.

    Requires `Authorization: Bearer <cron_secret>`.
    """
    expected = f"Bearer {settings.cron_secret}"
    if not settings.cron_secret or not secrets.compare_digest(authorization or "", expected):
        logger.warning("Rejected batch request with a bad or missing secret")
        raise HTTPException(status_code=401, detail="Unauthorized")

    enqueued = enqueue_due_subjects(queue, sync_engine.engine)
    report = await run_batch(queue, sync_engine, settings.batch_time_budget_seconds)
    return {"enqueued": enqueued, **asdict(report)}
