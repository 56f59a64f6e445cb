"""Persistence engine — composes supervisor, tmux, scrollback and cleanup.

The engine is the session registry: it owns the logical session records
in the row store, pumps process output into the scrollback cache and
decides when a session is over for good.
"""

from __future__ import annotations

import asyncio
import logging

from shellkeep.config import ShellkeepConfig
from shellkeep.lifecycle.cleanup import CleanupScheduler
from shellkeep.mux.tmux import TmuxBackingStore, session_name
from shellkeep.pty.buffer import BufferSnapshot, ScrollbackCache
from shellkeep.pty.process import PTYFactory, PTYHandle, PTYProcess
from shellkeep.pty.supervisor import ProcessSupervisor, TerminalConfig
from shellkeep.session.wire import EventType, WireEvent
from shellkeep.store import SessionStatus, SqliteSessionStore

logger = logging.getLogger(__name__)


class PersistenceEngine:
    """Long-lived shell sessions that survive disconnects and restarts."""

    def __init__(
        self,
        config: ShellkeepConfig | None = None,
        store: SqliteSessionStore | None = None,
        backing_store: TmuxBackingStore | None = None,
        pty_factory: PTYFactory = PTYProcess,
    ) -> None:
        self.config = config or ShellkeepConfig()
        self.store = store or SqliteSessionStore(self.config.database_path)
        self.backing_store = backing_store or TmuxBackingStore(self.config.multiplexer)
        self.supervisor = ProcessSupervisor(
            self.backing_store,
            factory=pty_factory,
            default_shell=self.config.multiplexer.default_shell,
        )
        self.buffers = ScrollbackCache(self.config.buffer, self.store)
        self.cleanup = CleanupScheduler(
            self.backing_store, self, self.config.cleanup, store=self.store
        )
        self._configs: dict[str, TerminalConfig] = {}
        self._pump_task: asyncio.Task | None = None

    async def start(self) -> None:
        await self.backing_store.initialize(self._is_known_session)
        await self._recover_sessions()

        events = self.supervisor.wire.subscribe()
        self._pump_task = asyncio.create_task(self._pump(events))
        self.buffers.start()
        await self.cleanup.start()
        logger.info("Persistence engine started (%d sessions)", len(self._configs))

    def _is_known_session(self, session_id: str) -> bool:
        row = self.store.get_session(session_id)
        return row is not None and row.status != SessionStatus.TERMINATED

    async def _recover_sessions(self) -> None:
        """Reconcile row-store sessions with what survived in tmux."""
        for row in self.store.get_active_sessions():
            if self.backing_store.is_available() and await self.backing_store.session_exists(row.id):
                self.store.update_session_status(row.id, SessionStatus.DISCONNECTED)
                self._configs[row.id] = TerminalConfig.model_validate(row.config)
                if not self.buffers.load_buffer(row.id):
                    self.buffers.create_buffer(row.id)
                logger.info("Recovered session %s", row.id)
            else:
                self.store.update_session_status(row.id, SessionStatus.TERMINATED)
                logger.info("Session %s did not survive the restart", row.id)

    async def _pump(self, events: asyncio.Queue[WireEvent | None]) -> None:
        while True:
            event = await events.get()
            if event is None:
                break
            session_id = event.data["session_id"]
            try:
                if event.type == EventType.PROCESS_DATA:
                    self.buffers.append_output(session_id, event.data["data"])
                elif event.type == EventType.PROCESS_EXIT:
                    await self._on_process_exit(session_id)
            except Exception:
                logger.exception("Failed to handle %s for session %s", event.type, session_id)

    async def _on_process_exit(self, session_id: str) -> None:
        if await self.supervisor.has_multiplexer_session(session_id):
            # Only the attach client died; the shell is still there
            self.store.update_session_status(session_id, SessionStatus.DISCONNECTED)
            return
        logger.info("Session %s ended", session_id)
        self.buffers.flush()
        self.store.update_session_status(session_id, SessionStatus.TERMINATED)
        self._configs.pop(session_id, None)

    # ------------------------------------------------------------------
    # Session registry
    # ------------------------------------------------------------------

    async def open_session(self, session_id: str, config: TerminalConfig | None = None) -> PTYHandle:
        config = config or TerminalConfig()
        self.store.insert_session(session_id, config.model_dump(mode="json"))
        try:
            handle = await self.supervisor.create(session_id, config)
        except Exception:
            self.store.update_session_status(session_id, SessionStatus.TERMINATED)
            raise

        if self.supervisor.is_multiplexer_backed(session_id):
            self.store.set_tmux_name(session_id, session_name(session_id))
        self._configs[session_id] = config
        self.buffers.create_buffer(session_id)
        return handle

    def disconnect(self, session_id: str) -> None:
        """The client went away; the process keeps running."""
        self.buffers.mark_disconnect(session_id)
        self.store.update_session_status(session_id, SessionStatus.DISCONNECTED)

    async def reconnect(self, session_id: str, full_replay: bool = False) -> BufferSnapshot | None:
        """Bring a client back and return the output it missed.

        Returns None when the session cannot be resumed.
        """
        config = self._configs.get(session_id)
        if config is None:
            return None

        if not self.supervisor.is_running(session_id):
            if not await self.supervisor.reconnect(session_id, config):
                logger.info("Session %s could not be resumed", session_id)
                self.buffers.flush()
                self.store.update_session_status(session_id, SessionStatus.TERMINATED)
                self._configs.pop(session_id, None)
                return None

        snapshot = self.buffers.get_buffer_snapshot(session_id, full_replay=full_replay)
        self.buffers.clear_disconnect(session_id)
        self.store.update_session_status(session_id, SessionStatus.ACTIVE)
        self.store.touch_session(session_id)
        return snapshot

    def write(self, session_id: str, data: str) -> bool:
        ok = self.supervisor.write(session_id, data)
        if ok:
            self.cleanup.update_session_activity(session_id)
        return ok

    async def resize(self, session_id: str, cols: int, rows: int) -> bool:
        return await self.supervisor.resize(session_id, cols, rows)

    def has_session(self, session_id: str) -> bool:
        return session_id in self._configs

    def session_ids(self) -> list[str]:
        return list(self._configs)

    async def terminate_session(self, session_id: str) -> None:
        await self.supervisor.terminate(session_id)
        self.buffers.delete_buffer(session_id)
        self.store.update_session_status(session_id, SessionStatus.TERMINATED)
        self._configs.pop(session_id, None)
        logger.info("Session %s terminated", session_id)

    async def shutdown(self) -> None:
        """Stop everything local; tmux sessions keep running."""
        await self.cleanup.stop()
        self.supervisor.destroy()
        if self._pump_task is not None:
            await self._pump_task
            self._pump_task = None
        await self.buffers.destroy()
        await self.backing_store.shutdown()
        logger.info("Persistence engine shut down")
