from pathlib import Path
from typing import Dict, List, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./inboxsync.db"
    cron_secret: str = ""
    token_dir: Path = Path.home() / ".inboxsync" / "tokens"
    log_level: str = "INFO"

    # Change source
    gmail_api_base: str = "https://gmail.googleapis.com/gmail/v1/users/me"
    full_sync_query: str = "from:vinted.es"
    sender_domain: str = "vinted.es"
    max_history_results: int = 500
    fetch_batch_size: int = 10
    request_delay_seconds: float = 0.1
    quota_units: Dict[str, int] = {
        "list_changes": 2,
        "fetch": 5,
        "enumerate": 5,
        "current_cursor": 1,
    }

    # Scheduling
    sync_interval_minutes: int = 60
    batch_interval_minutes: int = 60
    batch_time_budget_seconds: float = 55.0
    cleanup_hour: int = 4

    # Lease / queue
    stale_lock_seconds: int = 600
    max_attempts: int = 3
    retry_backoff_seconds: List[int] = [5, 15, 60, 300]

    # Circuit breaker
    max_consecutive_errors: int = 5
    error_cooldown_seconds: int = 1800

    # Extraction
    extractor_version: str = "v2"

    # Retention / monitoring
    log_retention_days: int = 90
    queue_retention_days: int = 7
    slow_sync_threshold_seconds: float = 30.0

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_prefix = "INBOXSYNC_"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
