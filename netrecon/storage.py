"""
SQLite Keyed Store
==================
One database file (or ``:memory:``) holding every persisted table:

- ``network_calls``     captured requests, indexed by session and page
- ``embeddings``        vectors, unique per (session, signature)
- ``embedding_cache``   content-addressed vectors, shared across sessions
- ``classifications``   per-batch (then consolidated) model results

``begin_epoch()`` wipes everything session-scoped.  The embedding cache is
keyed by content hash, not by session, and survives.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS network_calls (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL,
    page_url TEXT NOT NULL,
    url TEXT NOT NULL,
    method TEXT NOT NULL,
    host TEXT NOT NULL,
    pathname TEXT NOT NULL,
    query_params TEXT NOT NULL,   -- JSON object
    headers TEXT NOT NULL,        -- JSON object
    post_data TEXT,
    request_id TEXT,
    timestamp REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_calls_session ON network_calls(session_id);
CREATE INDEX IF NOT EXISTS idx_calls_page ON network_calls(session_id, page_url);

CREATE TABLE IF NOT EXISTS embeddings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL,
    signature TEXT NOT NULL,
    dims INTEGER NOT NULL,
    vector BLOB NOT NULL,         -- array('d') bytes
    request TEXT NOT NULL,        -- NetworkCall JSON
    created_at REAL NOT NULL,
    UNIQUE(session_id, signature)
);
CREATE INDEX IF NOT EXISTS idx_embeddings_session ON embeddings(session_id);

CREATE TABLE IF NOT EXISTS embedding_cache (
    text_hash TEXT PRIMARY KEY,
    dims INTEGER NOT NULL,
    vector BLOB NOT NULL,
    text_preview TEXT,
    created_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS classifications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL,
    kind TEXT NOT NULL,           -- 'tech' | 'analytics' | 'summary'
    batch_index INTEGER,
    payload TEXT NOT NULL,        -- JSON object
    created_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_class_session ON classifications(session_id, kind);
"""

_SESSION_TABLES = ("network_calls", "embeddings", "classifications")


class ReconStore:
    """
    Thin wrapper over a single sqlite3 connection.

    Usage::

        store = ReconStore("recon.db")
        store.begin_epoch()
        with store.transaction() as conn:
            conn.execute(...)
    """

    def __init__(self, path: Union[str, Path] = ":memory:"):
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self.path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._conn.executescript(_SCHEMA)
        self._conn.commit()
        logger.debug(f"[STORE] Opened {self.path}")

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    def transaction(self) -> "_Transaction":
        return _Transaction(self)

    def execute(self, sql: str, params=()) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.execute(sql, params)

    def begin_epoch(self) -> None:
        """Wipe all session-scoped rows (new process epoch)."""
        with self.transaction() as conn:
            for table in _SESSION_TABLES:
                conn.execute(f"DELETE FROM {table}")
        logger.info("[STORE] New process epoch: session-scoped data wiped")

    def clear_session(self, session_id: str) -> None:
        with self.transaction() as conn:
            for table in _SESSION_TABLES:
                conn.execute(f"DELETE FROM {table} WHERE session_id = ?", (session_id,))

    def count(self, table: str, session_id: Optional[str] = None) -> int:
        if session_id is None:
            row = self.execute(f"SELECT COUNT(*) FROM {table}").fetchone()
        else:
            row = self.execute(
                f"SELECT COUNT(*) FROM {table} WHERE session_id = ?", (session_id,)
            ).fetchone()
        return int(row[0])

    def close(self) -> None:
        with self._lock:
            self._conn.close()


class _Transaction:
    """Commit on success, roll back on error; serialized by the store lock."""

    def __init__(self, store: ReconStore):
        self._store = store

    def __enter__(self) -> sqlite3.Connection:
        self._store._lock.acquire()
        return self._store._conn

    def __exit__(self, exc_type, exc, tb) -> bool:
        try:
            if exc_type is None:
                self._store._conn.commit()
            else:
                self._store._conn.rollback()
        finally:
            self._store._lock.release()
        return False
