"""SQLite storage behind the page status store.

Each thread gets its own connection, opened in WAL mode with foreign keys
enforced. The file is ``Settings.db_path`` (``$INKBRIDGE_DATA_DIR/inkbridge.db``)
unless :func:`set_db_path` points somewhere else.

Usage::

    from inkbridge.db import get_db, init_db
    init_db()                  # idempotent
    conn = get_db()
"""

from __future__ import annotations

import sqlite3
import threading
from pathlib import Path

from inkbridge.config import Settings

_override: Path | None = None
_threads = threading.local()


def database_file() -> Path:
    """The file :func:`get_db` opens."""
    return _override if _override is not None else Settings.from_env().db_path


def set_db_path(path: str | Path) -> None:
    """Use *path* for every connection opened from now on."""
    global _override, _threads
    close_db()
    _override = Path(path)
    _threads = threading.local()


def _connect(path: Path) -> sqlite3.Connection:
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    for pragma in ("journal_mode=WAL", "foreign_keys=ON"):
        conn.execute(f"PRAGMA {pragma}")
    return conn


def get_db() -> sqlite3.Connection:
    conn = getattr(_threads, "conn", None)
    if conn is None:
        conn = _threads.conn = _connect(database_file())
    return conn


def close_db() -> None:
    """Close the calling thread's connection, if it has one."""
    conn = getattr(_threads, "conn", None)
    if conn is not None:
        _threads.conn = None
        conn.close()


def init_db(path: str | Path | None = None) -> None:
    """Create any missing tables and indexes."""
    if path is not None:
        set_db_path(path)
    get_db().executescript(_SCHEMA_SQL)


_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS configuration (
    id          TEXT PRIMARY KEY,
    json        TEXT NOT NULL,
    updated_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS documents (
    document_id    TEXT PRIMARY KEY,
    visible_name   TEXT NOT NULL,
    type           TEXT NOT NULL DEFAULT 'DocumentType',
    parent         TEXT DEFAULT '',
    last_modified  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS pages (
    document_id     TEXT NOT NULL,
    page_id         TEXT NOT NULL,
    page_number     TEXT DEFAULT '1',
    title           TEXT DEFAULT '',
    virtual_path    TEXT DEFAULT '',
    local_path      TEXT DEFAULT '',
    size_bytes      INTEGER DEFAULT 0,
    content_hash    TEXT DEFAULT '',
    last_modified   TEXT NOT NULL,
    status          TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'uploaded', 'failed', 'skipped', 'deleted')),
    retry_count     INTEGER NOT NULL DEFAULT 0,
    last_error      TEXT,
    cloud_page_id   TEXT,
    cloud_page_url  TEXT,
    last_sync_time  TEXT,
    PRIMARY KEY (document_id, page_id),
    FOREIGN KEY (document_id) REFERENCES documents(document_id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_pages_status   ON pages(status, last_modified);
CREATE INDEX IF NOT EXISTS idx_pages_lastsync ON pages(last_sync_time);

CREATE TABLE IF NOT EXISTS sync_history (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp    TEXT NOT NULL,
    document_id  TEXT NOT NULL,
    page_id      TEXT NOT NULL,
    success      INTEGER NOT NULL,
    details      TEXT
);
CREATE INDEX IF NOT EXISTS idx_sync_history_timestamp ON sync_history(timestamp);
"""
