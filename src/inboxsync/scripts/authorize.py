"""
Store an OAuth access token for one subject.

Prompts for the access token (and optional refresh token and lifetime),
saves it to the token directory with owner-only permissions
(0700 dir / 0600 file) and registers the subject so the scheduler picks it
up on its next batch.

Usage:
    python -m inboxsync authorize SUBJECT_ID
    python -m inboxsync.scripts.authorize SUBJECT_ID   (direct invocation)

Re-run whenever the subject is flagged as needing re-authorization.
"""
import getpass
import sys
from datetime import datetime, timedelta

from inboxsync.config import get_settings
from inboxsync.source.auth import TokenStore


def run_authorize(subject_id: str) -> None:
    from inboxsync.db.engine import get_engine
    from inboxsync.sync.subjects import get_or_create_subject

    store = TokenStore(get_settings().token_dir)

    print(f"\nAuthorize subject {subject_id}\n")
    print(f"Token will be stored in: {store.path_for(subject_id)}\n")

    if store.has_token(subject_id):
        print("An existing token was found.")
        overwrite = input("Overwrite it? [y/N] ").strip().lower()
        if overwrite != "y":
            print("Cancelled. Existing token unchanged.")
            sys.exit(0)

    access_token = getpass.getpass("Access token: ").strip()
    if not access_token:
        print("Error: access token cannot be empty.")
        sys.exit(1)
    refresh_token = getpass.getpass("Refresh token (optional): ").strip()

    lifetime = input("Token lifetime in seconds [3600]: ").strip() or "3600"
    try:
        expires_at = datetime.utcnow() + timedelta(seconds=int(lifetime))
    except ValueError:
        print(f"Error: {lifetime!r} is not a number of seconds.")
        sys.exit(1)

    token = {"access_token": access_token, "expires_at": expires_at.isoformat()}
    if refresh_token:
        token["refresh_token"] = refresh_token
    store.save(subject_id, token)
    get_or_create_subject(get_engine(), subject_id)

    print(f"\nToken saved to {store.path_for(subject_id)} (expires {expires_at:%Y-%m-%d %H:%M} UTC)")
    print(f"Subject {subject_id} is registered and will sync on the next batch.\n")


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print("Usage: python -m inboxsync.scripts.authorize SUBJECT_ID")
        sys.exit(2)
    run_authorize(sys.argv[1])
