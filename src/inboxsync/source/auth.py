"""
Per-subject OAuth token persistence on disk.

Each subject's token lives in its own JSON file under the token directory:

    {
        "access_token": "ya29....",
        "refresh_token": "1//0g...",   # optional, kept for the refresh flow
        "expires_at": "2026-10-18T15:04:05"   # naive UTC, optional
    }

Tokens are written by `python -m inboxsync authorize SUBJECT` (or by the web
login flow) with owner-only permissions. Refreshing an expired token is not
done here: an expired or missing token raises AuthExpiredError and the
subject is flagged as needing re-authorization.
"""
import json
import os
import re
import stat
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from inboxsync.sync.errors import AuthExpiredError

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.@-]")


class NoTokenError(AuthExpiredError):
    """Raised when no token has been saved for the subject."""


class TokenStore:
    """
    Manages per-subject token files and hands out valid access tokens.

    Usage:
        store = TokenStore(settings.token_dir)
        store.save("acct-1", {"access_token": "...", "expires_at": "..."})
        token = store.get_valid_credential("acct-1")
    """

    def __init__(self, token_dir: Path):
        self._token_dir = Path(token_dir)

    @property
    def token_dir(self) -> Path:
        return self._token_dir

    def path_for(self, subject_id: str) -> Path:
        return self._token_dir / f"{_UNSAFE_CHARS.sub('_', subject_id)}.json"

    # ── Persistence ───────────────────────────────────────────────────────────

    def has_token(self, subject_id: str) -> bool:
        return self.path_for(subject_id).exists()

    def save(self, subject_id: str, token: Dict[str, Any]) -> None:
        """
        Persist a token with owner-only permissions.

        Directory: 0700 (rwx------)
        File:      0600 (rw-------)
        """
        if not token.get("access_token"):
            raise ValueError("token must contain an access_token")
        self._token_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(self._token_dir, stat.S_IRWXU)  # 0700

        path = self.path_for(subject_id)
        path.write_text(json.dumps(token, indent=2))
        os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)  # 0600

    def load(self, subject_id: str) -> Dict[str, Any]:
        """
        Raises:
            NoTokenError: if no token file exists for the subject.
        """
        path = self.path_for(subject_id)
        if not path.exists():
            raise NoTokenError(
                f"No token found for subject {subject_id}. "
                f"Run `python -m inboxsync authorize {subject_id}`."
            )
        return json.loads(path.read_text())

    def clear(self, subject_id: str) -> None:
        """Delete the subject's token (does not raise if already absent)."""
        path = self.path_for(subject_id)
        if path.exists():
            path.unlink()

    # ── CredentialProvider ────────────────────────────────────────────────────

    def get_valid_credential(self, subject_id: str, now: Optional[datetime] = None) -> str:
        """
        Return a usable access token for the subject.

        Raises:
            NoTokenError: no token saved.
            AuthExpiredError: the saved token is past its expiry.
        """
        token = self.load(subject_id)
        expires_at = token.get("expires_at")
        if expires_at:
            expiry = datetime.fromisoformat(expires_at)
            if expiry.tzinfo is not None:
                expiry = expiry.astimezone(timezone.utc).replace(tzinfo=None)
            if expiry <= (now or datetime.utcnow()):
                raise AuthExpiredError(
                    f"Access token for subject {subject_id} expired at {expires_at}"
                )
        return token["access_token"]
