"""Tests for shellkeep.session.wire (Wire, WireEvent, EventType)."""

from __future__ import annotations

import asyncio

from shellkeep.session.wire import EventType, Wire, WireEvent


# ---------------------------------------------------------------------------
# EventType
# ---------------------------------------------------------------------------


class TestEventType:
    def test_all_variants_exist(self) -> None:
        expected = {
            "PROCESS_DATA",
            "PROCESS_EXIT",
            "MUX_SESSION_CREATED",
            "MUX_SESSION_KILLED",
            "MUX_SESSION_RECOVERED",
            "BUFFER_OUTPUT",
            "ORPHAN_CLEANED",
            "IDLE_CLEANED",
            "MAX_SESSIONS_CLEANED",
        }
        assert {e.name for e in EventType} == expected

    def test_values_are_lowercase(self) -> None:
        for e in EventType:
            assert e.value == e.name.lower()


# ---------------------------------------------------------------------------
# Wire: basic send/subscribe
# ---------------------------------------------------------------------------


class TestWire:
    def test_send_to_multiple_subscribers(self) -> None:
        wire = Wire()
        q1 = wire.subscribe()
        q2 = wire.subscribe()
        wire.send(WireEvent(type=EventType.PROCESS_EXIT, data={"session_id": "s1"}))
        e1 = q1.get_nowait()
        e2 = q2.get_nowait()
        assert e1 is not None and e2 is not None
        assert e1.type == e2.type == EventType.PROCESS_EXIT

    def test_default_data(self) -> None:
        assert WireEvent(type=EventType.BUFFER_OUTPUT).data == {}

    def test_unsubscribe(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.unsubscribe(q)
        wire.send(WireEvent(type=EventType.PROCESS_DATA))
        assert q.empty()

    def test_unsubscribe_nonexistent_is_safe(self) -> None:
        wire = Wire()
        q: asyncio.Queue[WireEvent | None] = asyncio.Queue()
        wire.unsubscribe(q)  # Should not raise

    def test_ordering_preserved(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        for chunk in ("a", "b", "c"):
            wire.send_process_data("s1", chunk)
        assert [q.get_nowait().data["data"] for _ in range(3)] == ["a", "b", "c"]


# ---------------------------------------------------------------------------
# Wire: closed-state guard
# ---------------------------------------------------------------------------


class TestWireClosedGuard:
    def test_close_sends_sentinel_to_all_subscribers(self) -> None:
        wire = Wire()
        q1 = wire.subscribe()
        q2 = wire.subscribe()
        wire.close()
        assert wire.closed
        assert q1.get_nowait() is None
        assert q2.get_nowait() is None

    def test_send_after_close_is_dropped(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.close()
        q.get_nowait()  # drain sentinel
        wire.send_process_data("s1", "too late")
        assert q.empty()


# ---------------------------------------------------------------------------
# Wire: convenience methods
# ---------------------------------------------------------------------------


class TestWireConvenience:
    def test_send_process_data(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send_process_data("s1", "\x1b[1m$ \x1b[0m")
        event = q.get_nowait()
        assert event.type == EventType.PROCESS_DATA
        assert event.data == {"session_id": "s1", "data": "\x1b[1m$ \x1b[0m"}

    def test_send_process_exit(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send_process_exit("s1", None)
        event = q.get_nowait()
        assert event.type == EventType.PROCESS_EXIT
        assert event.data == {"session_id": "s1", "exit_code": None}

    def test_send_session_event_extra(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send_session_event(EventType.IDLE_CLEANED, "s1", idle_seconds=3.5)
        event = q.get_nowait()
        assert event.type == EventType.IDLE_CLEANED
        assert event.data == {"session_id": "s1", "idle_seconds": 3.5}
