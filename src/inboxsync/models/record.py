"""Records derived from classified external items (sales, expenses)."""
from datetime import datetime
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel


class DerivedRecord(SQLModel, table=True):
    """
    One row per classified external item.

    Natural key is (subject_id, external_id). Rows are tombstoned
    (deleted=True) when the source reports the item removed; they are
    never hard-deleted by the sync path.
    """

    __table_args__ = (
        UniqueConstraint("subject_id", "external_id", name="uq_record_subject_external"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    subject_id: str = Field(index=True)
    external_id: str = Field(index=True)

    record_type: str  # "sale", "expense"
    amount: Optional[float] = None
    currency: Optional[str] = None
    title: Optional[str] = None
    occurred_at: Optional[datetime] = None

    # Classifier output that has no dedicated column
    payload_json: Optional[str] = None
    extractor_version: Optional[str] = None

    deleted: bool = Field(default=False, index=True)
    deleted_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
