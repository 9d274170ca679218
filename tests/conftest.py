"""Shared test fixtures."""
from datetime import datetime
from typing import Any, Dict, Generator, List, Optional

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

# Import all models so SQLModel.metadata knows about them
from inboxsync.models.record import DerivedRecord  # noqa: F401
from inboxsync.models.sync import QueueItem, SyncLog, SyncSubject  # noqa: F401
from inboxsync.config import Settings
from inboxsync.source.protocol import ChangeSet, ClassifiedRecord
from inboxsync.sync.engine import SyncEngine


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    """Provides a DB session connected to in-memory SQLite."""
    with Session(engine) as session:
        yield session


@pytest.fixture(name="settings")
def settings_fixture(tmp_path) -> Settings:
    """Settings with no inter-request delay and a throwaway token dir."""
    return Settings(
        database_url="sqlite:///:memory:",
        cron_secret="s3cret",
        token_dir=tmp_path / "tokens",
        request_delay_seconds=0,
        fetch_batch_size=2,
    )


# ─── Fake change source ───────────────────────────────────────────────────────

class FakeChangeSource:
    """
    In-memory ChangeSource.

    items:   id -> raw item returned by fetch() and listed by enumerate_all()
    changes: cursor -> ChangeSet (or an exception to raise)
    fetch_errors: id -> exception raised by fetch()
    Every call is appended to `calls`.
    """

    def __init__(self, items: Optional[Dict[str, Dict]] = None, cursor: str = "C1"):
        self.items: Dict[str, Dict[str, Any]] = dict(items or {})
        self.cursor = cursor
        self.changes: Dict[str, Any] = {}
        self.fetch_errors: Dict[str, Exception] = {}
        self.calls: List[tuple] = []

    async def list_changes_since(self, cursor: str) -> ChangeSet:
        self.calls.append(("list_changes_since", cursor))
        outcome = self.changes.get(cursor)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome or ChangeSet(cursor=cursor)

    async def current_cursor(self) -> str:
        self.calls.append(("current_cursor",))
        return self.cursor

    async def fetch(self, item_id: str) -> Dict[str, Any]:
        self.calls.append(("fetch", item_id))
        if item_id in self.fetch_errors:
            raise self.fetch_errors[item_id]
        return self.items[item_id]

    async def enumerate_all(self, query: str):
        self.calls.append(("enumerate_all", query))
        for item_id in list(self.items):
            yield item_id

    def fetched_ids(self) -> List[str]:
        return [c[1] for c in self.calls if c[0] == "fetch"]


def fake_extractor(raw: Dict[str, Any]) -> Optional[ClassifiedRecord]:
    """{"kind": "sale", "amount": 12.5} -> sale record; "broken" raises; else None."""
    if raw.get("broken"):
        raise ValueError("unparseable body")
    if raw.get("kind") not in ("sale", "expense"):
        return None
    return ClassifiedRecord(
        record_type=raw["kind"],
        amount=raw.get("amount"),
        currency="EUR",
        title=raw.get("title"),
        occurred_at=datetime(2026, 10, 1, 12, 0),
    )


@pytest.fixture(name="source")
def source_fixture() -> FakeChangeSource:
    return FakeChangeSource()


@pytest.fixture(name="sync_engine")
def sync_engine_fixture(engine, source, settings) -> SyncEngine:
    return SyncEngine(
        engine,
        source_factory=lambda subject_id: source,
        extractor=fake_extractor,
        settings=settings,
    )
