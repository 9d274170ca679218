"""
Database migrations for inboxsync.

Uses SQLite ALTER TABLE ADD COLUMN for incremental schema evolution.
Each migration is idempotent: columns are only added if absent.

Called automatically from get_engine() after create_all() so both
fresh installs and databases from the first release are handled without
manual steps.
"""
from sqlalchemy import text


def run_migrations(engine) -> None:
    """Apply all pending schema migrations.

    Safe to call multiple times; checks column existence before altering.
    Supports SQLite only (uses PRAGMA table_info).

    Args:
        engine: SQLAlchemy engine (SQLModel create_engine result).
    """
    if engine.dialect.name != "sqlite":
        return

    with engine.connect() as conn:
        # SyncSubject: re-authorization flag and extractor version of the last run
        _add_column_if_missing(conn, "syncsubject", "needs_reauth", "BOOLEAN NOT NULL DEFAULT 0")
        _add_column_if_missing(conn, "syncsubject", "extractor_version", "VARCHAR")

        # SyncLog: expired-cursor fallback marker
        _add_column_if_missing(conn, "synclog", "fell_back_to_full", "BOOLEAN NOT NULL DEFAULT 0")

        conn.commit()


def _add_column_if_missing(conn, table: str, column: str, col_type: str) -> None:
    """Add a column to a table if it doesn't already exist.

    Args:
        conn: SQLAlchemy connection.
        table: Table name (lowercase, as SQLite stores it).
        column: Column name to add.
        col_type: SQLite type string, e.g. "INTEGER", "VARCHAR", "BOOLEAN".
    """
    result = conn.execute(text(f"PRAGMA table_info({table})"))
    existing_columns = {row[1] for row in result}
    if column not in existing_columns:
        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}"))
