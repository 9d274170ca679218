"""Tests for LeaseManager: acquire / release / staleness / sweep."""
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta

import pytest
from sqlmodel import Session, SQLModel, create_engine, select

from inboxsync.models.sync import SyncSubject
from inboxsync.sync.lock import LeaseManager
from inboxsync.sync.subjects import get_or_create_subject


@pytest.fixture
def locks(engine):
    return LeaseManager(engine, stale_after=timedelta(minutes=10))


def _subject(engine, subject_id):
    with Session(engine) as s:
        return s.exec(select(SyncSubject).where(SyncSubject.subject_id == subject_id)).first()


def _age_lease(engine, subject_id, minutes):
    with Session(engine) as s:
        subject = s.exec(select(SyncSubject).where(SyncSubject.subject_id == subject_id)).first()
        subject.lease_started_at = datetime.utcnow() - timedelta(minutes=minutes)
        s.add(subject)
        s.commit()


class TestAcquire:
    def test_creates_subject_and_takes_lease(self, locks, engine):
        assert locks.acquire("acct-1", "owner-a") is True
        subject = _subject(engine, "acct-1")
        assert subject.lease_held is True
        assert subject.lease_owner == "owner-a"
        assert subject.lease_started_at is not None

    def test_second_acquire_is_refused(self, locks, engine):
        assert locks.acquire("acct-1", "owner-a") is True
        assert locks.acquire("acct-1", "owner-b") is False
        # Holder is unchanged
        assert _subject(engine, "acct-1").lease_owner == "owner-a"

    def test_stale_lease_is_taken_over(self, locks, engine):
        locks.acquire("acct-1", "crashed")
        _age_lease(engine, "acct-1", minutes=11)
        assert locks.acquire("acct-1", "fresh") is True
        assert _subject(engine, "acct-1").lease_owner == "fresh"

    def test_lease_just_inside_threshold_is_respected(self, locks, engine):
        locks.acquire("acct-1", "owner-a")
        _age_lease(engine, "acct-1", minutes=9)
        assert locks.acquire("acct-1", "owner-b") is False

    def test_leases_are_per_subject(self, locks):
        assert locks.acquire("acct-1", "a") is True
        assert locks.acquire("acct-2", "b") is True


class TestConcurrentAcquire:
    """Threads racing on a file-backed database: exactly one wins each round."""

    THREADS = 8
    ROUNDS = 10

    @pytest.fixture
    def file_engine(self, tmp_path):
        engine = create_engine(
            f"sqlite:///{tmp_path / 'leases.db'}",
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        SQLModel.metadata.create_all(engine)
        yield engine
        engine.dispose()

    def test_exactly_one_winner(self, file_engine):
        locks = LeaseManager(file_engine, stale_after=timedelta(minutes=10))
        get_or_create_subject(file_engine, "acct-1")

        for round_no in range(self.ROUNDS):
            barrier = threading.Barrier(self.THREADS)

            def contend(n):
                barrier.wait()
                return locks.acquire("acct-1", f"owner-{round_no}-{n}")

            with ThreadPoolExecutor(max_workers=self.THREADS) as pool:
                outcomes = list(pool.map(contend, range(self.THREADS)))

            assert outcomes.count(True) == 1
            winner = f"owner-{round_no}-{outcomes.index(True)}"
            assert _subject(file_engine, "acct-1").lease_owner == winner
            locks.release("acct-1")


class TestRelease:
    def test_release_frees_lease(self, locks, engine):
        locks.acquire("acct-1", "owner-a")
        locks.release("acct-1")
        subject = _subject(engine, "acct-1")
        assert subject.lease_held is False
        assert subject.lease_owner is None
        assert locks.acquire("acct-1", "owner-b") is True

    def test_release_is_idempotent(self, locks):
        locks.release("never-seen")
        locks.acquire("acct-1", "a")
        locks.release("acct-1")
        locks.release("acct-1")
        assert locks.is_locked("acct-1") is False


class TestIsLocked:
    def test_unknown_subject_not_locked(self, locks):
        assert locks.is_locked("nobody") is False

    def test_fresh_lease_is_locked(self, locks):
        locks.acquire("acct-1", "a")
        assert locks.is_locked("acct-1") is True

    def test_stale_lease_reads_unlocked(self, locks, engine):
        locks.acquire("acct-1", "a")
        _age_lease(engine, "acct-1", minutes=30)
        assert locks.is_locked("acct-1") is False


class TestClearStaleLocks:
    def test_clears_only_stale(self, locks, engine):
        locks.acquire("old", "a")
        locks.acquire("new", "b")
        _age_lease(engine, "old", minutes=20)

        assert locks.clear_stale_locks() == 1
        assert _subject(engine, "old").lease_held is False
        assert _subject(engine, "new").lease_held is True

    def test_nothing_to_clear(self, locks):
        assert locks.clear_stale_locks() == 0
