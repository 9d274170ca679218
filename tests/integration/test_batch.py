"""Integration tests for the time-boxed batch driver."""
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlmodel import Session, select

from conftest import FakeChangeSource, fake_extractor
from inboxsync.models.sync import SyncSubject
from inboxsync.sync.batch import enqueue_due_subjects, run_batch
from inboxsync.sync.engine import SyncEngine, SyncResult
from inboxsync.sync.errors import AuthExpiredError, LockContentionError
from inboxsync.sync.lock import LeaseManager
from inboxsync.sync.queue import SyncQueue
from inboxsync.sync.subjects import get_or_create_subject, get_subject


@pytest.fixture
def queue(engine):
    return SyncQueue(engine, max_attempts=3)


def _mock_engine(engine, settings, side_effect=None, status="success"):
    """SyncEngine double whose sync_subject is an AsyncMock."""
    sync_engine = MagicMock()
    sync_engine.engine = engine
    sync_engine.settings = settings
    if side_effect is None:
        def side_effect(subject_id, triggered_by="manual"):
            return SyncResult(
                subject_id=subject_id,
                triggered_by=triggered_by,
                started_at=datetime.utcnow(),
                status=status,
                errors=[] if status == "success" else [{"error": "item failed"}],
            )
    sync_engine.sync_subject = AsyncMock(side_effect=side_effect)
    return sync_engine


class FakeClock:
    """Monotonic clock that advances a fixed step per reading."""

    def __init__(self, step):
        self.now = 0.0
        self.step = step

    def __call__(self):
        value = self.now
        self.now += self.step
        return value


class TestRunBatch:
    @pytest.mark.asyncio
    async def test_drains_queue_with_real_engine(self, engine, queue, settings):
        sources = {
            "acct-1": FakeChangeSource({"a": {"kind": "sale", "amount": 5.0}}, cursor="X1"),
            "acct-2": FakeChangeSource({"b": {"kind": "expense", "amount": 2.0}}, cursor="Y1"),
        }
        sync_engine = SyncEngine(engine, sources.__getitem__, fake_extractor, settings)
        first = queue.enqueue("acct-1", "scheduled")
        second = queue.enqueue("acct-2", "manual")

        report = await run_batch(queue, sync_engine, time_budget_seconds=60)

        assert report.processed == ["acct-1", "acct-2"]
        assert report.failed == []
        assert report.budget_exhausted is False
        assert queue.get(first).status == "completed"
        assert queue.get(second).status == "completed"
        assert get_subject(engine, "acct-1").cursor == "X1"
        assert get_subject(engine, "acct-2").cursor == "Y1"

    @pytest.mark.asyncio
    async def test_empty_queue(self, engine, queue, settings):
        report = await run_batch(queue, _mock_engine(engine, settings), time_budget_seconds=60)
        assert report.processed == []
        assert report.budget_exhausted is False

    @pytest.mark.asyncio
    async def test_budget_stops_new_work(self, engine, queue, settings):
        for subject_id in ("a", "b", "c"):
            queue.enqueue(subject_id, "scheduled")
        sync_engine = _mock_engine(engine, settings)

        # start=0, check=10 (ok, run "a"), check=20 (>= 15, stop)
        report = await run_batch(queue, sync_engine, time_budget_seconds=15, clock=FakeClock(10))

        assert report.processed == ["a"]
        assert report.budget_exhausted is True
        assert sync_engine.sync_subject.await_count == 1
        assert queue.pending_count() == 2

    @pytest.mark.asyncio
    async def test_partial_result_is_retried(self, engine, queue, settings):
        item_id = queue.enqueue("acct-1", "scheduled")
        report = await run_batch(queue, _mock_engine(engine, settings, status="partial"), 60)

        item = queue.get(item_id)
        assert report.failed == ["acct-1"]
        assert item.status == "pending"
        assert item.last_error == "item failed"

    @pytest.mark.asyncio
    async def test_auth_expired_is_terminal(self, engine, queue, settings):
        item_id = queue.enqueue("acct-1", "scheduled")
        sync_engine = _mock_engine(engine, settings, side_effect=AuthExpiredError("revoked"))

        report = await run_batch(queue, sync_engine, 60)

        assert report.failed == ["acct-1"]
        item = queue.get(item_id)
        assert item.status == "failed"
        assert "Re-authorization required" in item.last_error

    @pytest.mark.asyncio
    async def test_lock_contention_is_retried(self, engine, queue, settings):
        item_id = queue.enqueue("acct-1", "scheduled")
        sync_engine = _mock_engine(engine, settings, side_effect=LockContentionError("acct-1"))

        await run_batch(queue, sync_engine, 60)
        assert queue.get(item_id).status == "pending"

    @pytest.mark.asyncio
    async def test_unexpected_error_does_not_stop_batch(self, engine, queue, settings):
        queue.enqueue("bad", "scheduled", priority=5)
        queue.enqueue("good", "scheduled")

        def side_effect(subject_id, triggered_by="manual"):
            if subject_id == "bad":
                raise RuntimeError("boom")
            return SyncResult(subject_id=subject_id, triggered_by=triggered_by, started_at=datetime.utcnow())

        report = await run_batch(queue, _mock_engine(engine, settings, side_effect=side_effect), 60)
        assert report.failed == ["bad"]
        assert report.processed == ["good"]

    @pytest.mark.asyncio
    async def test_clears_stale_locks_first(self, engine, queue, settings):
        LeaseManager(engine, timedelta(minutes=10)).acquire("crashed", "old-run")
        with Session(engine) as s:
            subject = s.exec(select(SyncSubject)).first()
            subject.lease_started_at = datetime.utcnow() - timedelta(hours=1)
            s.add(subject)
            s.commit()

        report = await run_batch(queue, _mock_engine(engine, settings), 60)
        assert report.stale_locks_cleared == 1
        assert get_subject(engine, "crashed").lease_held is False


class TestEnqueueDueSubjects:
    def test_enqueues_due_and_unscheduled(self, engine, queue):
        for subject_id in ("never", "due", "later"):
            get_or_create_subject(engine, subject_id)
        with Session(engine) as s:
            for subject in s.exec(select(SyncSubject)).all():
                if subject.subject_id == "due":
                    subject.next_scheduled_sync = datetime.utcnow() - timedelta(minutes=1)
                elif subject.subject_id == "later":
                    subject.next_scheduled_sync = datetime.utcnow() + timedelta(hours=1)
                s.add(subject)
            s.commit()

        assert enqueue_due_subjects(queue, engine) == 2
        queued = {item.subject_id for item in queue.list_items("never") + queue.list_items("due")}
        assert queued == {"never", "due"}
        assert queue.list_items("later") == []
        assert queue.list_items("due")[0].triggered_by == "scheduled"

    def test_does_not_duplicate_waiting_items(self, engine, queue):
        get_or_create_subject(engine, "acct-1")
        enqueue_due_subjects(queue, engine)
        enqueue_due_subjects(queue, engine)
        assert queue.pending_count() == 1
