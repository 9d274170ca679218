"""
Async Gmail change source over the Gmail REST API (httpx).

Maps the mailbox onto the ChangeSource contract:

  list_changes_since(cursor) -> users.history.list, paged; label changes
                                count as "added" (the message may now match)
  current_cursor()           -> users.getProfile historyId
  fetch(id)                  -> users.messages.get format=full
  enumerate_all(query)       -> users.messages.list q=query, paged

HTTP failures are translated into the sync error taxonomy:
  400 / 404 on history -> CursorExpiredError (history is kept for about a week)
  401 / 403      -> AuthExpiredError
  429 / 5xx      -> TransientSourceError
  transport errs -> TransientSourceError
"""
import asyncio
import logging
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import httpx

from inboxsync.config import Settings, get_settings
from inboxsync.source.protocol import ChangeSet, CredentialProvider
from inboxsync.sync.errors import (
    AuthExpiredError,
    CursorExpiredError,
    SyncError,
    TransientSourceError,
)

logger = logging.getLogger(__name__)

HISTORY_TYPES = ("messageAdded", "messageDeleted", "labelAdded", "labelRemoved")
LIST_PAGE_SIZE = 500


class GmailChangeSource:
    """
    ChangeSource for one subject's mailbox.

    The httpx client is injected so one connection pool can serve every
    subject in a batch (and so tests can pass an httpx.MockTransport).
    """

    def __init__(
        self,
        subject_id: str,
        credentials: CredentialProvider,
        client: httpx.AsyncClient,
        settings: Optional[Settings] = None,
    ):
        self.subject_id = subject_id
        self._credentials = credentials
        self._client = client
        self._settings = settings or get_settings()
        self._base = self._settings.gmail_api_base.rstrip("/")

    async def list_changes_since(self, cursor: str) -> ChangeSet:
        added: Dict[str, None] = {}
        deleted: Dict[str, None] = {}
        latest = cursor
        page_token: Optional[str] = None

        while True:
            params: List[tuple] = [
                ("startHistoryId", cursor),
                ("maxResults", str(self._settings.max_history_results)),
            ]
            params.extend(("historyTypes", t) for t in HISTORY_TYPES)
            if page_token:
                params.append(("pageToken", page_token))

            resp = await self._request("/history", params)
            if resp.status_code in (400, 404):
                logger.warning("History %s expired or invalid for %s", cursor, self.subject_id)
                raise CursorExpiredError(f"History {cursor} is no longer available")
            data = self._json(resp)

            latest = data.get("historyId") or latest
            for record in data.get("history") or []:
                for entry in record.get("messagesAdded") or []:
                    _collect(added, entry)
                for entry in record.get("messagesDeleted") or []:
                    _collect(deleted, entry)
                for entry in record.get("labelsAdded") or []:
                    _collect(added, entry)
                for entry in record.get("labelsRemoved") or []:
                    _collect(added, entry)

            page_token = data.get("nextPageToken")
            if not page_token:
                break
            await asyncio.sleep(self._settings.request_delay_seconds)

        logger.info(
            "History fetched for %s: %d added, %d deleted, latest %s",
            self.subject_id, len(added), len(deleted), latest,
        )
        return ChangeSet(cursor=str(latest), added=list(added), deleted=list(deleted))

    async def current_cursor(self) -> str:
        data = self._json(await self._request("/profile"))
        history_id = data.get("historyId")
        if not history_id:
            raise SyncError("No historyId returned from Gmail profile")
        return str(history_id)

    async def fetch(self, item_id: str) -> Dict[str, Any]:
        resp = await self._request(f"/messages/{item_id}", [("format", "full")])
        return self._json(resp)

    async def enumerate_all(self, query: str) -> AsyncIterator[str]:
        page_token: Optional[str] = None
        while True:
            params = [("q", query), ("maxResults", str(LIST_PAGE_SIZE))]
            if page_token:
                params.append(("pageToken", page_token))
            data = self._json(await self._request("/messages", params))
            for message in data.get("messages") or []:
                if message.get("id"):
                    yield message["id"]
            page_token = data.get("nextPageToken")
            if not page_token:
                break
            await asyncio.sleep(self._settings.request_delay_seconds)

    # ─── Internal helpers ─────────────────────────────────────────────────────

    async def _request(self, path: str, params: Optional[List[tuple]] = None) -> httpx.Response:
        token = self._credentials.get_valid_credential(self.subject_id)
        try:
            return await self._client.get(
                f"{self._base}{path}",
                params=params,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.TransportError as exc:
            raise TransientSourceError(f"Gmail request failed: {exc}") from exc

    @staticmethod
    def _json(resp: httpx.Response) -> Dict[str, Any]:
        if resp.status_code in (401, 403):
            raise AuthExpiredError(f"Gmail rejected credentials ({resp.status_code})")
        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientSourceError(
                f"Gmail API error {resp.status_code}", status_code=resp.status_code
            )
        resp.raise_for_status()
        return resp.json()


def _collect(bucket: Dict[str, None], entry: Dict[str, Any]) -> None:
    message_id = (entry.get("message") or {}).get("id")
    if message_id:
        bucket[message_id] = None


def build_source_factory(
    credentials: CredentialProvider,
    client: httpx.AsyncClient,
    settings: Optional[Settings] = None,
) -> Callable[[str], GmailChangeSource]:
    """Factory for SyncEngine: one GmailChangeSource per subject, shared client."""

    def factory(subject_id: str) -> GmailChangeSource:
        return GmailChangeSource(subject_id, credentials, client, settings)

    return factory
