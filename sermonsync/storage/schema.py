"""Database schema for sermonsync SQLite storage.

Contains:
- Schema DDL (SCHEMA)
- Schema version tracking (SCHEMA_VERSION)
- Table allowlist (ALLOWED_TABLES, validate_table_name)
- Database initialization (init_db)
"""

import logging
import os
import sqlite3
from pathlib import Path

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# Allowed table names for dynamic SQL (prevents SQL injection via table names)
ALLOWED_TABLES = frozenset(
    {
        "schema_version",
        "sermons",
        "notes",
        "transcripts",
        "summaries",
        "kv_store",
        "sync_conflicts",
    }
)

# Child tables owned by a sermon, deleted with it
CHILD_TABLES = ("notes", "transcripts", "summaries")


def validate_table_name(table: str) -> str:
    """Validate table name against allowlist to prevent SQL injection.

    Raises:
        ValueError: If table name is not in allowlist
    """
    if table not in ALLOWED_TABLES:
        raise ValueError(f"Invalid table name: {table}")
    return table


SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS sermons (
    id TEXT PRIMARY KEY,
    remote_id TEXT,
    title TEXT NOT NULL,
    audio_file_path TEXT NOT NULL,
    audio_file_url TEXT,
    date TEXT NOT NULL,
    service_type TEXT NOT NULL,
    speaker TEXT,
    duration REAL DEFAULT 0,
    is_archived INTEGER DEFAULT 0,
    transcription_status TEXT NOT NULL DEFAULT 'processing',
    summary_status TEXT NOT NULL DEFAULT 'processing',
    -- Sync metadata
    sync_status TEXT NOT NULL DEFAULT 'localOnly',
    needs_sync INTEGER DEFAULT 1,
    updated_at TEXT NOT NULL,
    last_synced_at TEXT,
    user_id TEXT
);
CREATE INDEX IF NOT EXISTS idx_sermons_remote ON sermons(remote_id);
CREATE INDEX IF NOT EXISTS idx_sermons_needs_sync ON sermons(needs_sync);
CREATE INDEX IF NOT EXISTS idx_sermons_summary_status ON sermons(summary_status);

CREATE TABLE IF NOT EXISTS notes (
    id TEXT PRIMARY KEY,
    sermon_id TEXT NOT NULL REFERENCES sermons(id) ON DELETE CASCADE,
    remote_id TEXT,
    text TEXT NOT NULL,
    timestamp REAL DEFAULT 0,
    updated_at TEXT NOT NULL,
    needs_sync INTEGER DEFAULT 1
);
CREATE INDEX IF NOT EXISTS idx_notes_sermon ON notes(sermon_id);

-- segments is a JSON array of {id, text, start_time, end_time}
CREATE TABLE IF NOT EXISTS transcripts (
    id TEXT PRIMARY KEY,
    sermon_id TEXT NOT NULL UNIQUE REFERENCES sermons(id) ON DELETE CASCADE,
    remote_id TEXT,
    text TEXT NOT NULL,
    segments TEXT NOT NULL DEFAULT '[]',
    updated_at TEXT NOT NULL,
    needs_sync INTEGER DEFAULT 1
);

CREATE TABLE IF NOT EXISTS summaries (
    id TEXT PRIMARY KEY,
    sermon_id TEXT NOT NULL UNIQUE REFERENCES sermons(id) ON DELETE CASCADE,
    remote_id TEXT,
    title TEXT NOT NULL,
    text TEXT NOT NULL,
    type TEXT NOT NULL,
    status TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    needs_sync INTEGER DEFAULT 1
);

-- Durable key-value storage (retry queue, preferences)
CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sync_conflicts (
    id TEXT PRIMARY KEY,
    sermon_id TEXT NOT NULL,
    remote_id TEXT NOT NULL,
    local_version TEXT NOT NULL,   -- JSON snapshot of local version
    remote_version TEXT NOT NULL,  -- JSON snapshot of remote version
    resolution TEXT NOT NULL,
    resolved_at TEXT NOT NULL,
    local_summary TEXT,
    remote_summary TEXT,
    diff_hash TEXT
);
CREATE INDEX IF NOT EXISTS idx_sync_conflicts_resolved ON sync_conflicts(resolved_at);
CREATE INDEX IF NOT EXISTS idx_sync_conflicts_hash ON sync_conflicts(diff_hash);
"""


def init_db(conn: sqlite3.Connection, db_path: Path) -> None:
    """Create tables and record the schema version."""
    conn.executescript(SCHEMA)

    row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
    if row is None:
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
    elif row[0] != SCHEMA_VERSION:
        logger.info(f"Updating schema version {row[0]} -> {SCHEMA_VERSION}")
        conn.execute("UPDATE schema_version SET version = ?", (SCHEMA_VERSION,))

    conn.commit()

    # Owner read/write only; the database holds private notes
    try:
        os.chmod(db_path, 0o600)
    except OSError as e:
        logger.warning(f"Could not set secure permissions: {e}")
