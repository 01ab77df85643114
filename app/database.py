"""Database connection and schema management."""

import logging
from typing import Optional

import aiosqlite

from app.models import to_db_time, utcnow

logger = logging.getLogger(__name__)


SCHEMA = """
-- Plain key/value settings (scheduler bookkeeping, list sync times)
CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value_plain TEXT,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- Encrypted secure storage (access token, sync tokens)
CREATE TABLE IF NOT EXISTS secure_items (
    key TEXT PRIMARY KEY,
    value_encrypted BLOB NOT NULL,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- Local cache of the remote calendar catalog
CREATE TABLE IF NOT EXISTS calendars (
    calendar_id TEXT PRIMARY KEY,
    summary TEXT NOT NULL,
    description TEXT,
    background_color TEXT,
    foreground_color TEXT,
    access_role TEXT,
    is_primary BOOLEAN DEFAULT FALSE,
    is_visible BOOLEAN DEFAULT TRUE,
    is_sync_enabled BOOLEAN DEFAULT TRUE,
    updated_at TIMESTAMP
);

-- Schedule entries mirrored to and from remote calendars
CREATE TABLE IF NOT EXISTS schedule_entries (
    id INTEGER PRIMARY KEY,
    calendar_id TEXT NOT NULL,
    remote_event_id TEXT,
    start_at TIMESTAMP NOT NULL,
    end_at TIMESTAMP NOT NULL,
    is_all_day BOOLEAN DEFAULT FALSE,
    title TEXT NOT NULL,
    body TEXT,
    tags TEXT NOT NULL DEFAULT '[]',
    source TEXT NOT NULL CHECK (source IN ('local', 'remote')),
    managed_locally BOOLEAN NOT NULL DEFAULT TRUE,
    sync_status TEXT NOT NULL
        CHECK (sync_status IN ('pending', 'synced', 'conflict', 'deleted')),
    created_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP NOT NULL,
    deleted_at TIMESTAMP,
    last_synced_at TIMESTAMP,
    remote_updated_at TIMESTAMP,
    retry_count INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    needs_remote_delete BOOLEAN NOT NULL DEFAULT FALSE,
    conflict_remote TEXT,
    conflict_detected_at TIMESTAMP,
    CHECK (source != 'local' OR managed_locally = 1),
    CHECK (sync_status != 'deleted' OR deleted_at IS NOT NULL),
    UNIQUE(calendar_id, remote_event_id)
);

CREATE INDEX IF NOT EXISTS idx_entries_calendar_status
    ON schedule_entries(calendar_id, sync_status);

-- Index for retention purge
CREATE INDEX IF NOT EXISTS idx_entries_deleted
    ON schedule_entries(sync_status, deleted_at);

-- One row per sync session
CREATE TABLE IF NOT EXISTS sync_logs (
    id INTEGER PRIMARY KEY,
    started_at TIMESTAMP NOT NULL,
    ended_at TIMESTAMP,
    direction TEXT NOT NULL,
    sync_type TEXT NOT NULL,
    used_sync_token BOOLEAN DEFAULT FALSE,
    added_count INTEGER DEFAULT 0,
    updated_count INTEGER DEFAULT 0,
    deleted_count INTEGER DEFAULT 0,
    conflict_count INTEGER DEFAULT 0,
    api_request_count INTEGER DEFAULT 0,
    level TEXT NOT NULL DEFAULT 'info',
    error_message TEXT,
    retry_count INTEGER DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_sync_logs_started ON sync_logs(started_at);
"""


async def open_database(path: str) -> aiosqlite.Connection:
    """Open a connection and make sure the schema exists."""
    db = await aiosqlite.connect(path)
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA foreign_keys = ON")
    if path != ":memory:":
        await db.execute("PRAGMA journal_mode = WAL")
    await init_schema(db)
    return db


async def init_schema(db: aiosqlite.Connection) -> None:
    """Initialize database schema."""
    await db.executescript(SCHEMA)
    await db.commit()
    logger.info("Database schema initialized")


async def close_database(db: aiosqlite.Connection) -> None:
    """Close the database connection."""
    await db.close()
    logger.info("Database connection closed")


async def get_setting(db: aiosqlite.Connection, key: str) -> Optional[str]:
    """Get a plain setting value by key."""
    cursor = await db.execute(
        "SELECT value_plain FROM settings WHERE key = ?", (key,)
    )
    row = await cursor.fetchone()
    if row:
        return row["value_plain"]
    return None


async def set_setting(db: aiosqlite.Connection, key: str, value: str) -> None:
    """Set a plain setting value."""
    await db.execute(
        """INSERT INTO settings (key, value_plain, updated_at)
           VALUES (?, ?, ?)
           ON CONFLICT(key) DO UPDATE SET
           value_plain = excluded.value_plain,
           updated_at = excluded.updated_at""",
        (key, value, to_db_time(utcnow()))
    )
    await db.commit()


async def delete_setting(db: aiosqlite.Connection, key: str) -> None:
    await db.execute("DELETE FROM settings WHERE key = ?", (key,))
    await db.commit()
