"""
Contracts between the sync engine and its collaborators.

The engine only talks to a change source, an extractor and a credential
provider through these shapes; the Gmail adapter and the rule-based
classifier are the default implementations.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol


@dataclass
class ChangeSet:
    """Changes reported by the source since a cursor."""

    cursor: str  # position to resume from on the next incremental run
    added: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.added and not self.deleted

    def changed(self) -> List[str]:
        """Added ids minus deleted ids, first-seen order. Deletion wins."""
        deleted = set(self.deleted)
        seen = set()
        out = []
        for item_id in self.added:
            if item_id in deleted or item_id in seen:
                continue
            seen.add(item_id)
            out.append(item_id)
        return out


@dataclass
class ClassifiedRecord:
    """Typed record produced by an extractor from one raw item."""

    record_type: str  # "sale", "expense"
    amount: Optional[float] = None
    currency: Optional[str] = None
    title: Optional[str] = None
    occurred_at: Optional[datetime] = None
    extra: Dict[str, Any] = field(default_factory=dict)


class ChangeSource(Protocol):
    """Remote, mutable data source with an ordered change log."""

    async def list_changes_since(self, cursor: str) -> ChangeSet:
        """Raises CursorExpiredError when the cursor is too old."""
        ...

    async def current_cursor(self) -> str:
        ...

    async def fetch(self, item_id: str) -> Dict[str, Any]:
        ...

    def enumerate_all(self, query: str) -> AsyncIterator[str]:
        ...


class CredentialProvider(Protocol):
    def get_valid_credential(self, subject_id: str) -> str:
        """Raises AuthExpiredError if no usable credential exists."""
        ...


Extractor = Callable[[Dict[str, Any]], Optional[ClassifiedRecord]]
