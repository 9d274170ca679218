"""
SyncEngine: per-subject sync of a change source into DerivedRecord rows.

Flow for one subject:
  1. Circuit breaker: too many recent consecutive errors -> CircuitBreakerOpen
     (no source calls are made)
  2. Acquire the subject's lease, or raise LockContentionError
  3. No cursor -> full sync: read the source's current cursor, then enumerate
     all ids and fetch + classify + upsert each one
     Cursor    -> incremental sync: list changes since the cursor; an expired
     cursor falls back to a full sync for this run
  4. changed = added - deleted; fetch + classify + upsert each changed id,
     tombstone each deleted id
  5. Update the SyncSubject checkpoint and write one SyncLog entry
  6. Release the lease (always, via finally)

On any exception: write a "failed" SyncLog, bump the subject's error
counters, release the lease and re-raise.

Per-item failures (fetch errors, classifier errors) are recorded on the
result and never abort the run; only AuthExpiredError does.
"""
import asyncio
import logging
import uuid
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlmodel import Session, select

from inboxsync.config import Settings, get_settings
from inboxsync.models.sync import SyncLog, SyncSubject
from inboxsync.source.protocol import ChangeSet, ChangeSource, ClassifiedRecord, Extractor
from inboxsync.sync.audit import write_log_entry
from inboxsync.sync.errors import (
    AuthExpiredError,
    CircuitBreakerOpen,
    CursorExpiredError,
    LockContentionError,
    PerItemExtractionError,
    TransientSourceError,
)
from inboxsync.sync.lock import LeaseManager
from inboxsync.sync.persistence import CREATED, RecordStore
from inboxsync.sync.subjects import get_or_create_subject

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    """Outcome of one sync_subject() call; mirrors the SyncLog row it writes."""

    subject_id: str
    triggered_by: str
    started_at: datetime
    mode: str = "incremental"  # "full", "incremental"
    status: str = "success"  # "success", "partial", "failed"
    completed_at: Optional[datetime] = None
    duration_ms: int = 0

    items_fetched: int = 0
    records_created: int = 0
    records_updated: int = 0
    items_skipped: int = 0
    records_tombstoned: int = 0
    created_by_type: Dict[str, int] = field(default_factory=dict)

    api_calls: int = 0
    quota_units: int = 0

    cursor_before: Optional[str] = None
    cursor_after: Optional[str] = None
    fell_back_to_full: bool = False

    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status == "success"

    @property
    def has_transient_errors(self) -> bool:
        return any(e.get("retriable") for e in self.errors)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["success"] = self.success
        return data


class SyncEngine:
    """Orchestrates change-source -> DB sync for one subject at a time."""

    def __init__(
        self,
        engine,
        source_factory: Callable[[str], ChangeSource],
        extractor: Extractor,
        settings: Optional[Settings] = None,
    ):
        """
        Args:
            engine: SQLAlchemy engine (SQLModel create_engine result).
            source_factory: Builds the ChangeSource for a subject id
                (AsyncMock-backed fakes in tests).
            extractor: Classifies one raw item, returning None for items
                that are not records.
            settings: Defaults to get_settings().
        """
        self.engine = engine
        self.source_factory = source_factory
        self.extractor = extractor
        self.settings = settings or get_settings()
        self.locks = LeaseManager(
            engine, stale_after=timedelta(seconds=self.settings.stale_lock_seconds)
        )
        self.records = RecordStore(engine, extractor_version=self.settings.extractor_version)

    async def sync_subject(
        self,
        subject_id: str,
        triggered_by: str = "manual",
        force_full: bool = False,
    ) -> SyncResult:
        """
        Run one sync for a subject.

        Returns:
            The SyncResult (also persisted as a SyncLog row).

        Raises:
            CircuitBreakerOpen: the subject is cooling down after repeated errors.
            LockContentionError: another invocation holds a valid lease.
            Any exception from the source or store (after logging the failure
            and releasing the lease).
        """
        subject = get_or_create_subject(self.engine, subject_id)
        self._check_circuit_breaker(subject)

        owner = f"{triggered_by}-{uuid.uuid4().hex[:12]}"
        if not self.locks.acquire(subject_id, owner):
            raise LockContentionError(subject_id)

        result = SyncResult(
            subject_id=subject_id,
            triggered_by=triggered_by,
            started_at=datetime.utcnow(),
            cursor_before=subject.cursor,
        )
        logger.info("Sync started for %s (trigger=%s)", subject_id, triggered_by)

        try:
            source = self.source_factory(subject_id)
            if force_full or subject.cursor is None:
                await self._full_sync(source, result)
            else:
                try:
                    changes = await self._call(
                        result, "list_changes", source.list_changes_since(subject.cursor)
                    )
                except CursorExpiredError:
                    logger.warning(
                        "Cursor %s expired for %s, falling back to full sync",
                        subject.cursor, subject_id,
                    )
                    result.fell_back_to_full = True
                    await self._full_sync(source, result)
                else:
                    await self._incremental_sync(source, result, changes)

            self._finish(result)
            self._save_checkpoint(result)
            write_log_entry(self.engine, self._log_entry(result))

        except Exception as exc:
            result.status = "failed"
            result.errors.append(_error_entry(None, exc))
            self._finish(result, status="failed")
            logger.error("Sync failed for %s: %s", subject_id, exc)
            self._save_failure(subject_id, exc)
            write_log_entry(self.engine, self._log_entry(result))
            raise

        finally:
            self.locks.release(subject_id)

        logger.info(
            "Sync completed for %s: status=%s mode=%s fetched=%d created=%d "
            "updated=%d skipped=%d tombstoned=%d errors=%d quota=%d (%dms)",
            subject_id, result.status, result.mode, result.items_fetched,
            result.records_created, result.records_updated, result.items_skipped,
            result.records_tombstoned, len(result.errors), result.quota_units,
            result.duration_ms,
        )
        if result.duration_ms > self.settings.slow_sync_threshold_seconds * 1000:
            logger.warning(
                "Slow sync for %s: %dms (threshold %.0fs)",
                subject_id, result.duration_ms, self.settings.slow_sync_threshold_seconds,
            )
        return result

    # ─── Sync modes ───────────────────────────────────────────────────────────

    async def _full_sync(self, source: ChangeSource, result: SyncResult) -> None:
        result.mode = "full"
        # Read before enumerating: anything arriving mid-enumeration is above
        # the stored cursor and replays on the next incremental run.
        result.cursor_after = await self._call(result, "current_cursor", source.current_cursor())

        self._meter(result, "enumerate")
        ids: Dict[str, None] = {}
        async for item_id in source.enumerate_all(self.settings.full_sync_query):
            ids[item_id] = None

        logger.info("Full sync for %s: %d items", result.subject_id, len(ids))
        await self._process_items(source, result, list(ids))

    async def _incremental_sync(
        self, source: ChangeSource, result: SyncResult, changes: ChangeSet
    ) -> None:
        result.mode = "incremental"
        if changes.is_empty:
            logger.info("No new changes for %s", result.subject_id)
        else:
            logger.info(
                "Processing changes for %s: %d added, %d deleted",
                result.subject_id, len(changes.added), len(changes.deleted),
            )
        # Ids both added and deleted in this batch are never fetched
        await self._process_items(source, result, changes.changed())
        result.records_tombstoned = self.records.tombstone(result.subject_id, changes.deleted)
        result.cursor_after = changes.cursor

    # ─── Per-item processing ──────────────────────────────────────────────────

    async def _process_items(
        self, source: ChangeSource, result: SyncResult, item_ids: List[str]
    ) -> None:
        """Fetch, classify and upsert items in small concurrent batches."""
        batch_size = max(1, self.settings.fetch_batch_size)
        result.items_fetched += len(item_ids)

        for start in range(0, len(item_ids), batch_size):
            if start:
                await asyncio.sleep(self.settings.request_delay_seconds)
            chunk = item_ids[start:start + batch_size]
            outcomes = await asyncio.gather(
                *(self._fetch_and_classify(source, result, item_id) for item_id in chunk),
                return_exceptions=True,
            )
            for item_id, outcome in zip(chunk, outcomes):
                if isinstance(outcome, AuthExpiredError):
                    raise outcome
                if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
                    raise outcome
                if isinstance(outcome, Exception):
                    self._item_error(result, item_id, outcome)
                    continue
                self._persist(result, item_id, outcome)

    async def _fetch_and_classify(
        self, source: ChangeSource, result: SyncResult, item_id: str
    ) -> Optional[ClassifiedRecord]:
        raw = await self._call(result, "fetch", source.fetch(item_id))
        try:
            return self.extractor(raw)
        except Exception as exc:
            raise PerItemExtractionError(item_id, str(exc)) from exc

    def _persist(
        self, result: SyncResult, item_id: str, record: Optional[ClassifiedRecord]
    ) -> None:
        if record is None:
            result.items_skipped += 1
            return
        try:
            outcome = self.records.upsert(result.subject_id, item_id, record)
        except Exception as exc:
            self._item_error(result, item_id, exc)
            return
        if outcome == CREATED:
            result.records_created += 1
            result.created_by_type[record.record_type] = (
                result.created_by_type.get(record.record_type, 0) + 1
            )
        else:
            result.records_updated += 1

    def _item_error(self, result: SyncResult, item_id: str, exc: Exception) -> None:
        logger.error("Error processing item %s for %s: %s", item_id, result.subject_id, exc)
        result.errors.append(_error_entry(item_id, exc))

    # ─── API call accounting ──────────────────────────────────────────────────

    def _meter(self, result: SyncResult, op: str) -> None:
        result.api_calls += 1
        result.quota_units += self.settings.quota_units.get(op, 0)

    async def _call(self, result: SyncResult, op: str, awaitable):
        self._meter(result, op)
        return await awaitable

    # ─── Checkpoint / log ─────────────────────────────────────────────────────

    def _check_circuit_breaker(self, subject: SyncSubject) -> None:
        if subject.consecutive_error_count < self.settings.max_consecutive_errors:
            return
        if subject.last_error_at is None:
            return
        elapsed = (datetime.utcnow() - subject.last_error_at).total_seconds()
        remaining = self.settings.error_cooldown_seconds - elapsed
        if remaining > 0:
            logger.warning(
                "Circuit breaker open for %s (%d consecutive errors, %.0fs remaining)",
                subject.subject_id, subject.consecutive_error_count, remaining,
            )
            raise CircuitBreakerOpen(subject.subject_id, remaining)

    @staticmethod
    def _finish(result: SyncResult, status: Optional[str] = None) -> None:
        result.completed_at = datetime.utcnow()
        result.duration_ms = int((result.completed_at - result.started_at).total_seconds() * 1000)
        if status is not None:
            result.status = status
        elif not result.errors:
            result.status = "success"
        elif len(result.errors) < result.items_fetched:
            result.status = "partial"
        else:
            result.status = "failed"

    def _save_checkpoint(self, result: SyncResult) -> None:
        """Fold a finished run into the subject's durable checkpoint."""
        now = datetime.utcnow()
        with Session(self.engine) as s:
            subject = s.exec(
                select(SyncSubject).where(SyncSubject.subject_id == result.subject_id)
            ).first()

            # Retriable fetch failures keep the old cursor so the queue retry
            # sees the same changes again.
            if not result.has_transient_errors:
                subject.cursor = result.cursor_after
            subject.last_sync_at = now
            subject.next_scheduled_sync = now + timedelta(
                minutes=self.settings.sync_interval_minutes
            )
            subject.total_items_processed += result.items_fetched
            subject.total_records_created += result.records_created
            subject.created_by_type = dict(
                Counter(subject.created_by_type or {}) + Counter(result.created_by_type)
            )
            if result.errors:
                subject.consecutive_error_count += 1
                subject.last_error = result.errors[0]["error"]
                subject.last_error_at = now
            else:
                subject.consecutive_error_count = 0
            subject.needs_reauth = False
            subject.extractor_version = self.settings.extractor_version
            subject.updated_at = now
            s.add(subject)
            s.commit()

    def _save_failure(self, subject_id: str, exc: Exception) -> None:
        now = datetime.utcnow()
        with Session(self.engine) as s:
            subject = s.exec(
                select(SyncSubject).where(SyncSubject.subject_id == subject_id)
            ).first()
            subject.consecutive_error_count += 1
            subject.last_error = str(exc) or exc.__class__.__name__
            subject.last_error_at = now
            if isinstance(exc, AuthExpiredError):
                subject.needs_reauth = True
            subject.updated_at = now
            s.add(subject)
            s.commit()

    @staticmethod
    def _log_entry(result: SyncResult) -> SyncLog:
        return SyncLog(
            subject_id=result.subject_id,
            triggered_by=result.triggered_by,
            mode=result.mode,
            started_at=result.started_at,
            completed_at=result.completed_at,
            duration_ms=result.duration_ms,
            status=result.status,
            items_fetched=result.items_fetched,
            records_created=result.records_created,
            records_updated=result.records_updated,
            items_skipped=result.items_skipped,
            records_tombstoned=result.records_tombstoned,
            api_calls=result.api_calls,
            quota_units=result.quota_units,
            cursor_before=result.cursor_before,
            cursor_after=result.cursor_after,
            fell_back_to_full=result.fell_back_to_full,
            errors=[dict(e) for e in result.errors],
        )


def _error_entry(item_id: Optional[str], exc: Exception) -> Dict[str, Any]:
    return {
        "item_id": item_id,
        "error": str(exc) or exc.__class__.__name__,
        "type": exc.__class__.__name__,
        "retriable": isinstance(exc, TransientSourceError),
        "timestamp": datetime.utcnow().isoformat(),
    }
