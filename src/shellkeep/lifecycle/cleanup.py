"""Lifecycle cleanup — orphan, idle and capacity sweeps over tmux sessions."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from typing import Protocol

from shellkeep.config import CleanupConfig
from shellkeep.mux.tmux import TmuxBackingStore
from shellkeep.session.wire import EventType, Wire
from shellkeep.store import SessionStore

logger = logging.getLogger(__name__)


class SessionRegistry(Protocol):
    """The owner of logical sessions.

    Idle and capacity sweeps terminate through the registry rather than
    killing tmux directly, so buffers and durable rows go too.
    """

    def has_session(self, session_id: str) -> bool: ...

    async def terminate_session(self, session_id: str) -> None: ...


@dataclass
class CleanupStats:
    orphans_cleaned: int = 0
    idle_cleaned: int = 0
    max_sessions_cleaned: int = 0
    last_cleanup_at: float | None = None


class CleanupScheduler:
    """Periodic hygiene for tmux sessions.

    On start, every live tmux session the registry does not know is
    killed as an orphan. Afterwards each cycle terminates idle sessions,
    enforces the session cap (oldest activity first) and marks long
    disconnected rows terminated in the row store.
    """

    def __init__(
        self,
        backing_store: TmuxBackingStore,
        registry: SessionRegistry,
        config: CleanupConfig | None = None,
        store: SessionStore | None = None,
        wire: Wire | None = None,
    ) -> None:
        self._backing_store = backing_store
        self._registry = registry
        self._config = config or CleanupConfig()
        self._store = store
        self._wire = wire or Wire()
        self._stats = CleanupStats()
        self._task: asyncio.Task | None = None

    @property
    def wire(self) -> Wire:
        return self._wire

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if not self._backing_store.is_available():
            logger.info("tmux not available, session cleanup disabled")
            return

        if self._config.clean_orphans_on_startup:
            await self.clean_orphaned_sessions()

        if not self.running:
            self._task = asyncio.create_task(self._loop())
        logger.info(
            "Session cleanup started: idle_timeout=%ss max_sessions=%d interval=%ss",
            self._config.idle_timeout,
            self._config.max_sessions,
            self._config.check_interval,
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Session cleanup stopped")

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.check_interval)
            await self.run_cleanup()

    def stats(self) -> CleanupStats:
        return replace(self._stats)

    async def run_cleanup(self) -> None:
        """One cleanup cycle. Failures are logged, never raised."""
        try:
            await self.clean_idle_sessions()
            await self.enforce_max_sessions()
            if self._store is not None:
                self._store.cleanup_stale_disconnected_sessions(self._config.idle_timeout)
        except Exception:
            logger.exception("Session cleanup cycle failed")
        self._stats.last_cleanup_at = time.time()

    async def clean_orphaned_sessions(self) -> int:
        """Kill tmux sessions with no logical session behind them."""
        cleaned = 0
        for session in await self._backing_store.list_sessions():
            if self._registry.has_session(session.session_id):
                continue
            logger.info("Killing orphaned tmux session %s", session.tmux_name)
            await self._backing_store.kill_session(session.session_id)
            self._stats.orphans_cleaned += 1
            self._wire.send_session_event(EventType.ORPHAN_CLEANED, session.session_id)
            cleaned += 1
        if cleaned:
            logger.info("Cleaned %d orphaned tmux sessions", cleaned)
        return cleaned

    async def clean_idle_sessions(self, now: float | None = None) -> int:
        """Terminate sessions idle for longer than ``idle_timeout``."""
        now = time.time() if now is None else now
        cleaned = 0
        for session in await self._backing_store.list_sessions():
            idle_for = now - session.last_active_at
            if idle_for <= self._config.idle_timeout:
                continue
            logger.info("Terminating idle session %s (idle %.0fs)", session.session_id, idle_for)
            await self._registry.terminate_session(session.session_id)
            self._stats.idle_cleaned += 1
            self._wire.send_session_event(
                EventType.IDLE_CLEANED, session.session_id, idle_seconds=idle_for
            )
            cleaned += 1
        return cleaned

    async def enforce_max_sessions(self) -> int:
        """Terminate the least recently active sessions above the cap."""
        sessions = await self._backing_store.list_sessions()
        excess = len(sessions) - self._config.max_sessions
        if excess <= 0:
            return 0

        sessions.sort(key=lambda s: s.last_active_at)
        logger.warning(
            "%d sessions over the limit of %d, terminating the oldest",
            excess,
            self._config.max_sessions,
        )
        for session in sessions[:excess]:
            await self._registry.terminate_session(session.session_id)
            self._stats.max_sessions_cleaned += 1
            self._wire.send_session_event(EventType.MAX_SESSIONS_CLEANED, session.session_id)
        return excess

    async def can_create_session(self) -> bool:
        return await self.session_count() < self._config.max_sessions

    async def session_count(self) -> int:
        return len(await self._backing_store.list_sessions())

    def update_session_activity(self, session_id: str) -> None:
        self._backing_store.update_last_active(session_id)
