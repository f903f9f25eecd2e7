"""SQLite database layer for local durable storage.

Manages the SQLite connection and schema for captured streaming sessions
and materialised projects. Uses aiosqlite for async access with WAL mode
for concurrent read performance. Table and column names mirror the hosted
Supabase tables so both backends share one row format.
"""

from __future__ import annotations

import logging
from pathlib import Path

import aiosqlite

logger = logging.getLogger(__name__)

MEMORY_DB = ":memory:"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS streaming_sessions (
    id              TEXT PRIMARY KEY,
    user_id         TEXT NOT NULL,
    project_id      TEXT,
    prompt          TEXT NOT NULL,
    database_type   TEXT NOT NULL,
    status          TEXT NOT NULL,
    tasks           TEXT NOT NULL DEFAULT '[]',
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL,
    completion_data TEXT,
    error_message   TEXT
);

CREATE TABLE IF NOT EXISTS streaming_chunks (
    id                   TEXT PRIMARY KEY,
    streaming_session_id TEXT NOT NULL REFERENCES streaming_sessions(id) ON DELETE CASCADE,
    task_id              TEXT NOT NULL,
    task_title           TEXT NOT NULL DEFAULT '',
    agent_name           TEXT NOT NULL DEFAULT '',
    chunk_index          INTEGER NOT NULL,
    content              TEXT NOT NULL,
    content_type         TEXT NOT NULL DEFAULT 'text',
    timestamp            TEXT NOT NULL,
    metadata             TEXT
);

CREATE TABLE IF NOT EXISTS streaming_insights (
    id                   TEXT PRIMARY KEY,
    streaming_session_id TEXT NOT NULL REFERENCES streaming_sessions(id) ON DELETE CASCADE,
    agent_name           TEXT NOT NULL,
    message              TEXT NOT NULL,
    insight_type         TEXT NOT NULL,
    timestamp            TEXT NOT NULL,
    metadata             TEXT
);

CREATE TABLE IF NOT EXISTS database_projects (
    id            TEXT PRIMARY KEY,
    user_id       TEXT NOT NULL,
    database_name TEXT NOT NULL,
    database_type TEXT NOT NULL,
    description   TEXT NOT NULL DEFAULT '',
    metadata      TEXT NOT NULL DEFAULT '{}',
    created_at    TEXT NOT NULL,
    updated_at    TEXT NOT NULL,
    last_accessed TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS database_sessions (
    id           TEXT PRIMARY KEY,
    project_id   TEXT NOT NULL REFERENCES database_projects(id) ON DELETE CASCADE,
    session_name TEXT NOT NULL DEFAULT '',
    description  TEXT NOT NULL DEFAULT '',
    created_at   TEXT NOT NULL,
    updated_at   TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS database_queries (
    id             TEXT PRIMARY KEY,
    session_id     TEXT NOT NULL REFERENCES database_sessions(id) ON DELETE CASCADE,
    project_id     TEXT NOT NULL REFERENCES database_projects(id) ON DELETE CASCADE,
    query_text     TEXT NOT NULL,
    query_type     TEXT NOT NULL DEFAULT 'OTHER',
    description    TEXT NOT NULL DEFAULT '',
    results_data   TEXT,
    results_format TEXT NOT NULL DEFAULT 'json',
    success        INTEGER NOT NULL DEFAULT 1,
    error_message  TEXT,
    created_at     TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_streaming_sessions_user ON streaming_sessions(user_id);
CREATE INDEX IF NOT EXISTS idx_streaming_sessions_created ON streaming_sessions(created_at);
CREATE INDEX IF NOT EXISTS idx_streaming_chunks_session
    ON streaming_chunks(streaming_session_id, task_id, chunk_index);
CREATE INDEX IF NOT EXISTS idx_streaming_insights_session ON streaming_insights(streaming_session_id);
CREATE INDEX IF NOT EXISTS idx_projects_user ON database_projects(user_id);
CREATE INDEX IF NOT EXISTS idx_sessions_project ON database_sessions(project_id);
CREATE INDEX IF NOT EXISTS idx_queries_session ON database_queries(session_id);
"""


async def init_db(db_path: str) -> aiosqlite.Connection:
    """Initialize the database connection and create tables if needed.

    Creates parent directories if they don't exist, enables WAL mode
    and foreign keys, then runs the schema DDL. ``":memory:"`` opens a
    private in-memory database.

    Args:
        db_path: Path to the SQLite database file. Supports ~ expansion.

    Returns:
        An open aiosqlite connection ready for use.
    """
    if db_path == MEMORY_DB:
        target = MEMORY_DB
    else:
        resolved = Path(db_path).expanduser()
        resolved.parent.mkdir(parents=True, exist_ok=True)
        target = str(resolved)

    db = await aiosqlite.connect(target)
    db.row_factory = aiosqlite.Row
    if target != MEMORY_DB:
        await db.execute("PRAGMA journal_mode=WAL")
    await db.execute("PRAGMA foreign_keys=ON")
    await db.executescript(_SCHEMA)
    await db.commit()

    logger.info("Capture database initialized at %s", target)
    return db


async def close_db(db: aiosqlite.Connection) -> None:
    """Close the database connection."""
    await db.close()
