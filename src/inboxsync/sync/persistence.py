"""
Idempotent persistence for DerivedRecord rows.

Every write is keyed by (subject_id, external_id). Repeat delivery of the
same external item updates the existing row in place; the unique constraint
is the backstop when two runs race on a first insert (the loser retries as
an update). Deletions only ever tombstone.
"""
import json
import logging
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from inboxsync.models.record import DerivedRecord
from inboxsync.source.protocol import ClassifiedRecord

logger = logging.getLogger(__name__)

CREATED = "created"
UPDATED = "updated"


class RecordStore:
    """Upsert and tombstone derived records."""

    def __init__(self, engine, extractor_version: Optional[str] = None):
        self.engine = engine
        self.extractor_version = extractor_version

    def upsert(self, subject_id: str, external_id: str, record: ClassifiedRecord) -> str:
        """
        Create the record on first sight, update it in place afterwards.

        Returns:
            "created" or "updated".
        """
        fields = self._fields(record)

        with Session(self.engine) as s:
            existing = self._find(s, subject_id, external_id)
            if existing is not None:
                self._apply(s, existing, fields)
                return UPDATED

            s.add(DerivedRecord(subject_id=subject_id, external_id=external_id, **fields))
            try:
                s.commit()
                return CREATED
            except IntegrityError:
                s.rollback()
                logger.info(
                    "Insert conflict on %s/%s, retrying as update", subject_id, external_id
                )

        with Session(self.engine) as s:
            existing = self._find(s, subject_id, external_id)
            self._apply(s, existing, fields)
        return UPDATED

    def tombstone(self, subject_id: str, external_ids: Iterable[str]) -> int:
        """Soft-delete live records for the given ids. Returns how many changed."""
        ids = list(external_ids)
        if not ids:
            return 0

        now = datetime.utcnow()
        count = 0
        with Session(self.engine) as s:
            rows = s.exec(
                select(DerivedRecord)
                .where(DerivedRecord.subject_id == subject_id)
                .where(DerivedRecord.external_id.in_(ids))
                .where(DerivedRecord.deleted == False)  # noqa: E712
            ).all()
            for row in rows:
                row.deleted = True
                row.deleted_at = now
                row.updated_at = now
                s.add(row)
                count += 1
            s.commit()
        return count

    def get(self, subject_id: str, external_id: str) -> Optional[DerivedRecord]:
        with Session(self.engine) as s:
            return self._find(s, subject_id, external_id)

    def list_records(self, subject_id: str, include_deleted: bool = False) -> List[DerivedRecord]:
        with Session(self.engine) as s:
            query = select(DerivedRecord).where(DerivedRecord.subject_id == subject_id)
            if not include_deleted:
                query = query.where(DerivedRecord.deleted == False)  # noqa: E712
            return list(s.exec(query.order_by(DerivedRecord.occurred_at.desc())).all())

    # ─── Internal helpers ─────────────────────────────────────────────────────

    @staticmethod
    def _find(s: Session, subject_id: str, external_id: str) -> Optional[DerivedRecord]:
        return s.exec(
            select(DerivedRecord)
            .where(DerivedRecord.subject_id == subject_id)
            .where(DerivedRecord.external_id == external_id)
        ).first()

    def _fields(self, record: ClassifiedRecord) -> dict:
        return {
            "record_type": record.record_type,
            "amount": record.amount,
            "currency": record.currency,
            "title": record.title,
            "occurred_at": record.occurred_at,
            "payload_json": json.dumps(record.extra, sort_keys=True, default=str) if record.extra else None,
            "extractor_version": self.extractor_version,
        }

    @staticmethod
    def _apply(s: Session, existing: DerivedRecord, fields: dict) -> None:
        """Write changed fields; an unchanged record is left untouched."""
        changed = existing.deleted
        for k, v in fields.items():
            if getattr(existing, k) != v:
                setattr(existing, k, v)
                changed = True
        if not changed:
            return
        # A re-delivered item revives its tombstone
        existing.deleted = False
        existing.deleted_at = None
        existing.updated_at = datetime.utcnow()
        s.add(existing)
        s.commit()
