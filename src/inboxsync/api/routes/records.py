"""Derived record query routes."""
from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlmodel import Session, select

from inboxsync.db.engine import get_session
from inboxsync.models.record import DerivedRecord

router = APIRouter()


@router.get("/", response_model=List[DerivedRecord])
def list_records(
    subject_id: str,
    record_type: Optional[str] = None,
    include_deleted: bool = False,
    limit: int = 50,
    offset: int = 0,
    session: Session = Depends(get_session),
):
    """List a subject's records, newest first."""
    query = select(DerivedRecord).where(DerivedRecord.subject_id == subject_id)
    if record_type:
        query = query.where(DerivedRecord.record_type == record_type)
    if not include_deleted:
        query = query.where(DerivedRecord.deleted == False)  # noqa: E712
    return session.exec(
        query.order_by(DerivedRecord.occurred_at.desc(), DerivedRecord.id.desc())
        .offset(offset)
        .limit(limit)
    ).all()
