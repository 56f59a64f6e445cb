"""Tests for shellkeep.store.SqliteSessionStore."""

from __future__ import annotations

import time

import pytest

from shellkeep.store import BufferRow, SessionStatus, SqliteSessionStore


@pytest.fixture
def store(tmp_path) -> SqliteSessionStore:
    return SqliteSessionStore(str(tmp_path / "db" / "shellkeep.db"))


class TestSessions:
    def test_insert_and_get(self, store: SqliteSessionStore) -> None:
        store.insert_session("s1", {"shell": "bash", "cols": 80})
        row = store.get_session("s1")
        assert row.status == SessionStatus.ACTIVE
        assert row.config == {"shell": "bash", "cols": 80}
        assert row.tmux_session_name is None
        assert store.session_exists("s1")
        assert not store.session_exists("s2")

    def test_reinsert_reactivates(self, store: SqliteSessionStore) -> None:
        store.insert_session("s1")
        store.update_session_status("s1", SessionStatus.TERMINATED)
        store.insert_session("s1", {"cwd": "/tmp"})
        row = store.get_session("s1")
        assert row.status == SessionStatus.ACTIVE
        assert row.config == {"cwd": "/tmp"}

    def test_set_tmux_name(self, store: SqliteSessionStore) -> None:
        store.insert_session("s1")
        store.set_tmux_name("s1", "shk_s1")
        assert store.get_session("s1").tmux_session_name == "shk_s1"

    def test_touch(self, store: SqliteSessionStore) -> None:
        store.insert_session("s1")
        before = store.get_session("s1").last_active_at
        time.sleep(0.01)
        store.touch_session("s1")
        assert store.get_session("s1").last_active_at > before

    def test_active_sessions_exclude_terminated(self, store: SqliteSessionStore) -> None:
        for sid in ("a", "b", "c"):
            store.insert_session(sid)
        store.update_session_status("b", SessionStatus.DISCONNECTED)
        store.update_session_status("c", SessionStatus.TERMINATED)
        assert [r.id for r in store.get_active_sessions()] == ["a", "b"]

    def test_cleanup_stale_disconnected(self, store: SqliteSessionStore) -> None:
        store.insert_session("old")
        store.insert_session("active")
        store.update_session_status("old", SessionStatus.DISCONNECTED)
        time.sleep(0.01)

        assert store.cleanup_stale_disconnected_sessions(0.001) == 1

        assert store.get_session("old").status == SessionStatus.TERMINATED
        assert store.get_session("active").status == SessionStatus.ACTIVE

    def test_cleanup_keeps_recent(self, store: SqliteSessionStore) -> None:
        store.insert_session("s1")
        store.update_session_status("s1", SessionStatus.DISCONNECTED)
        assert store.cleanup_stale_disconnected_sessions(3600) == 0


class TestBuffers:
    def test_upsert_and_get(self, store: SqliteSessionStore) -> None:
        store.insert_session("s1")
        store.upsert_buffer(BufferRow("s1", "one", 1, 1.0))
        store.upsert_buffer(BufferRow("s1", "one two", 2, 2.0))
        row = store.get_buffer("s1")
        assert row == BufferRow("s1", "one two", 2, 2.0)

    def test_missing(self, store: SqliteSessionStore) -> None:
        assert store.get_buffer("s1") is None

    def test_delete(self, store: SqliteSessionStore) -> None:
        store.insert_session("s1")
        store.upsert_buffer(BufferRow("s1", "x", 1, 1.0))
        store.delete_buffer("s1")
        assert store.get_buffer("s1") is None

    def test_requires_parent_session(self, store: SqliteSessionStore) -> None:
        import sqlite3

        with pytest.raises(sqlite3.IntegrityError):
            store.upsert_buffer(BufferRow("ghost", "x", 1, 1.0))
