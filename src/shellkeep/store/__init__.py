"""Durable row store — logical session records and persisted scrollback.

The scrollback cache and the engine only rely on the ``SessionStore``
protocol; ``SqliteSessionStore`` is the stock implementation.
"""

from __future__ import annotations

import enum
import json
import logging
import os
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator, Protocol

logger = logging.getLogger(__name__)


class SessionStatus(enum.StrEnum):
    ACTIVE = "active"
    DISCONNECTED = "disconnected"
    TERMINATED = "terminated"


@dataclass
class BufferRow:
    """Persisted scrollback of one session."""

    session_id: str
    content: str
    total_lines: int
    last_flush_at: float


@dataclass
class SessionRow:
    id: str
    status: SessionStatus
    config: dict[str, Any]
    created_at: float
    updated_at: float
    last_active_at: float
    tmux_session_name: str | None = None


class SessionStore(Protocol):
    """Read/write contract the scrollback cache and cleanup rely on."""

    def session_exists(self, session_id: str) -> bool: ...

    def get_buffer(self, session_id: str) -> BufferRow | None: ...

    def upsert_buffer(self, row: BufferRow) -> None: ...

    def delete_buffer(self, session_id: str) -> None: ...

    def cleanup_stale_disconnected_sessions(self, max_age: float) -> int: ...


_SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    status TEXT NOT NULL DEFAULT 'active',
    config TEXT NOT NULL DEFAULT '{}',
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL,
    last_active_at REAL NOT NULL,
    tmux_session_name TEXT
);

CREATE TABLE IF NOT EXISTS buffers (
    session_id TEXT PRIMARY KEY REFERENCES sessions(id) ON DELETE CASCADE,
    content TEXT NOT NULL DEFAULT '',
    total_lines INTEGER NOT NULL DEFAULT 0,
    last_flush_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_status ON sessions(status);
"""


class SqliteSessionStore:
    """SQLite implementation of ``SessionStore``.

    A short-lived connection is opened per operation, so the store can be
    shared freely inside one event loop.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _init_db(self) -> None:
        db_dir = os.path.dirname(self.db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)
        with self._connect() as conn:
            conn.executescript(_SCHEMA)
        logger.debug("Session store ready at %s", self.db_path)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def insert_session(self, session_id: str, config: dict[str, Any] | None = None) -> None:
        now = time.time()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO sessions (id, status, config, created_at, updated_at, last_active_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    status = excluded.status,
                    config = excluded.config,
                    updated_at = excluded.updated_at,
                    last_active_at = excluded.last_active_at
                """,
                (session_id, SessionStatus.ACTIVE, json.dumps(config or {}), now, now, now),
            )

    def session_exists(self, session_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 FROM sessions WHERE id = ?", (session_id,)).fetchone()
        return row is not None

    def get_session(self, session_id: str) -> SessionRow | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
        return _session_from_row(row) if row else None

    def update_session_status(self, session_id: str, status: SessionStatus) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE sessions SET status = ?, updated_at = ? WHERE id = ?",
                (status, time.time(), session_id),
            )

    def touch_session(self, session_id: str) -> None:
        now = time.time()
        with self._connect() as conn:
            conn.execute(
                "UPDATE sessions SET last_active_at = ?, updated_at = ? WHERE id = ?",
                (now, now, session_id),
            )

    def set_tmux_name(self, session_id: str, tmux_name: str | None) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE sessions SET tmux_session_name = ?, updated_at = ? WHERE id = ?",
                (tmux_name, time.time(), session_id),
            )

    def get_active_sessions(self) -> list[SessionRow]:
        """Sessions that were not terminated, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sessions WHERE status != ? ORDER BY created_at",
                (SessionStatus.TERMINATED,),
            ).fetchall()
        return [_session_from_row(r) for r in rows]

    def cleanup_stale_disconnected_sessions(self, max_age: float) -> int:
        """Mark sessions disconnected for longer than ``max_age`` seconds terminated."""
        cutoff = time.time() - max_age
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE sessions SET status = ?, updated_at = ?
                WHERE status = ? AND last_active_at < ?
                """,
                (SessionStatus.TERMINATED, time.time(), SessionStatus.DISCONNECTED, cutoff),
            )
            count = cursor.rowcount
        if count:
            logger.info("Marked %d stale disconnected sessions terminated", count)
        return count

    # ------------------------------------------------------------------
    # Buffers
    # ------------------------------------------------------------------

    def get_buffer(self, session_id: str) -> BufferRow | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM buffers WHERE session_id = ?", (session_id,)
            ).fetchone()
        if row is None:
            return None
        return BufferRow(
            session_id=row["session_id"],
            content=row["content"],
            total_lines=row["total_lines"],
            last_flush_at=row["last_flush_at"],
        )

    def upsert_buffer(self, row: BufferRow) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO buffers (session_id, content, total_lines, last_flush_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(session_id) DO UPDATE SET
                    content = excluded.content,
                    total_lines = excluded.total_lines,
                    last_flush_at = excluded.last_flush_at
                """,
                (row.session_id, row.content, row.total_lines, row.last_flush_at),
            )

    def delete_buffer(self, session_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM buffers WHERE session_id = ?", (session_id,))


def _session_from_row(row: sqlite3.Row) -> SessionRow:
    return SessionRow(
        id=row["id"],
        status=SessionStatus(row["status"]),
        config=json.loads(row["config"] or "{}"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        last_active_at=row["last_active_at"],
        tmux_session_name=row["tmux_session_name"],
    )


__all__ = [
    "BufferRow",
    "SessionRow",
    "SessionStatus",
    "SessionStore",
    "SqliteSessionStore",
]
