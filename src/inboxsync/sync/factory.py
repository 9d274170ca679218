"""Builds the production SyncEngine and SyncQueue from settings."""
from typing import Optional

import httpx

from inboxsync.config import Settings, get_settings
from inboxsync.extract.classifier import build_extractor
from inboxsync.source.auth import TokenStore
from inboxsync.source.gmail import build_source_factory
from inboxsync.sync.engine import SyncEngine
from inboxsync.sync.queue import SyncQueue


def build_queue(engine, settings: Optional[Settings] = None) -> SyncQueue:
    settings = settings or get_settings()
    return SyncQueue(
        engine,
        max_attempts=settings.max_attempts,
        backoff_table=settings.retry_backoff_seconds,
    )


def build_sync_engine(
    engine, client: httpx.AsyncClient, settings: Optional[Settings] = None
) -> SyncEngine:
    """Gmail source + token store credentials + rule-based classifier."""
    settings = settings or get_settings()
    return SyncEngine(
        engine,
        source_factory=build_source_factory(TokenStore(settings.token_dir), client, settings),
        extractor=build_extractor(settings),
        settings=settings,
    )
