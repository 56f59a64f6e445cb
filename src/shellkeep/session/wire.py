"""Wire protocol — decouples the engine components from their consumers.

Each component owns one Wire and publishes its notifications on it. The
orchestrator (or the upstream protocol layer) subscribes and folds the
events back into its own flow. Sending never blocks, so a component can
publish from inside a PTY callback.
"""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, field
from typing import Any


class EventType(enum.Enum):
    PROCESS_DATA = "process_data"
    PROCESS_EXIT = "process_exit"
    MUX_SESSION_CREATED = "mux_session_created"
    MUX_SESSION_KILLED = "mux_session_killed"
    MUX_SESSION_RECOVERED = "mux_session_recovered"
    BUFFER_OUTPUT = "buffer_output"
    ORPHAN_CLEANED = "orphan_cleaned"
    IDLE_CLEANED = "idle_cleaned"
    MAX_SESSIONS_CLEANED = "max_sessions_cleaned"


@dataclass
class WireEvent:
    """An event on the wire."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)


class Wire:
    """Async message bus: component -> subscribers.

    Single-producer, multi-consumer broadcast.
    """

    def __init__(self) -> None:
        self._subscribers: list[asyncio.Queue[WireEvent | None]] = []
        self._closed: bool = False

    def send(self, event: WireEvent) -> None:
        """Send an event to all subscribers.

        Silently drops events after ``close()`` has been called.
        """
        if self._closed:
            return
        for q in self._subscribers:
            q.put_nowait(event)

    def send_process_data(self, session_id: str, data: str) -> None:
        self.send(
            WireEvent(
                type=EventType.PROCESS_DATA,
                data={"session_id": session_id, "data": data},
            )
        )

    def send_process_exit(self, session_id: str, exit_code: int | None) -> None:
        """Notify subscribers that the live process of a session exited."""
        self.send(
            WireEvent(
                type=EventType.PROCESS_EXIT,
                data={"session_id": session_id, "exit_code": exit_code},
            )
        )

    def send_session_event(self, event_type: EventType, session_id: str, **extra: Any) -> None:
        """Send a per-session lifecycle notification (created, killed, cleaned...)."""
        self.send(WireEvent(type=event_type, data={"session_id": session_id, **extra}))

    def subscribe(self) -> asyncio.Queue[WireEvent | None]:
        """Subscribe to events. Returns a queue to read from."""
        q: asyncio.Queue[WireEvent | None] = asyncio.Queue()
        self._subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        """Unsubscribe from events."""
        if q in self._subscribers:
            self._subscribers.remove(q)

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Signal all subscribers that the wire is closing."""
        self._closed = True
        for q in self._subscribers:
            q.put_nowait(None)
