"""Process supervisor — one live PTY per session, tmux-backed when possible."""

from __future__ import annotations

import asyncio
import enum
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, TYPE_CHECKING

from pydantic import BaseModel, Field

from shellkeep.errors import PTYSpawnError, ShellkeepError
from shellkeep.pty.process import PTYFactory, PTYHandle, PTYProcess
from shellkeep.pty.shells import ShellType, resolve_shell_path, shell_args
from shellkeep.session.wire import Wire

if TYPE_CHECKING:
    from shellkeep.mux.tmux import TmuxBackingStore

logger = logging.getLogger(__name__)


class ProcessState(enum.Enum):
    """Per-session supervision state."""

    ABSENT = "absent"
    DIRECT = "direct"  # Plain shell, dies with us
    ATTACHED = "attached"  # tmux attach client, shell survives us
    EXITED = "exited"  # Local process ended on its own


class TerminalConfig(BaseModel):
    """How to start the shell of a session."""

    shell: ShellType | None = Field(
        default=None, description="Shell kind; None uses the configured default shell"
    )
    cwd: str | None = None
    env: dict[str, str] = Field(default_factory=dict)
    cols: int = Field(default=100, gt=0)
    rows: int = Field(default=30, gt=0)
    title: str = ""


@dataclass
class ManagedProcess:
    handle: PTYHandle
    session_id: str
    shell: str
    created_at: float = field(default_factory=time.time)
    multiplexer_backed: bool = False


class ProcessSupervisor:
    """Bridges client sessions to OS processes.

    With an available backing store each session's shell lives in a tmux
    session and the local PTY only runs ``tmux attach-session -d``, so the
    shell survives both client disconnects and restarts of this process.
    Without one, shells are spawned directly.

    The supervisor ensures:
    - At most one registered handle per session id
    - create/reconnect of one session never interleave
    - Exit notifications of superseded handles are discarded
    - Output and exits are published on the supervisor's Wire
    """

    def __init__(
        self,
        backing_store: TmuxBackingStore | None = None,
        factory: PTYFactory = PTYProcess,
        default_shell: str | None = None,
        wire: Wire | None = None,
    ) -> None:
        self._backing_store = backing_store
        self._factory = factory
        self._default_shell = default_shell or os.environ.get("SHELL", "/bin/bash")
        self._wire = wire or Wire()
        self._processes: dict[str, ManagedProcess] = {}
        self._states: dict[str, ProcessState] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def wire(self) -> Wire:
        return self._wire

    def _multiplexer_available(self) -> bool:
        return self._backing_store is not None and self._backing_store.is_available()

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        return self._locks.setdefault(session_id, asyncio.Lock())

    def _shell_command(self, config: TerminalConfig) -> tuple[str, list[str]]:
        if config.shell is None:
            return self._default_shell, []
        return resolve_shell_path(config.shell), shell_args(config.shell)

    # ------------------------------------------------------------------
    # Spawning
    # ------------------------------------------------------------------

    async def create(self, session_id: str, config: TerminalConfig) -> PTYHandle:
        """Start supervising ``session_id``.

        Returns the existing handle when the session is already supervised.

        Raises:
            PTYSpawnError: the shell could not be started.
        """
        async with self._lock_for(session_id):
            existing = self._processes.get(session_id)
            if existing is not None:
                logger.debug("Session %s already supervised (pid=%d)", session_id, existing.handle.pid)
                return existing.handle

            if self._multiplexer_available():
                try:
                    return await self._create_attached(session_id, config)
                except (ShellkeepError, OSError) as e:
                    logger.warning(
                        "tmux path failed for %s, falling back to direct spawn: %s", session_id, e
                    )

            return await self._create_direct(session_id, config)

    async def _create_attached(self, session_id: str, config: TerminalConfig) -> PTYHandle:
        store = self._backing_store
        assert store is not None

        shell, args = self._shell_command(config)
        if await store.session_exists(session_id, retries=0):
            logger.info("Reusing existing tmux session for %s", session_id)
        else:
            await store.create_session(session_id, shell, config.cwd, args)

        handle = await self._spawn(session_id, store.get_attach_command(session_id), config)
        store.mark_attached(session_id)
        self._install(session_id, handle, shell, multiplexer_backed=True)
        return handle

    async def _create_direct(self, session_id: str, config: TerminalConfig) -> PTYHandle:
        shell, args = self._shell_command(config)
        handle = await self._spawn(session_id, [shell, *args], config)
        self._install(session_id, handle, shell, multiplexer_backed=False)
        return handle

    async def _spawn(self, session_id: str, command: list[str], config: TerminalConfig) -> PTYHandle:
        handle = self._factory(
            command=command,
            cwd=config.cwd or os.environ.get("HOME", "/"),
            env=config.env,
            cols=config.cols,
            rows=config.rows,
        )
        handle.set_on_data(lambda data: self._handle_data(session_id, handle, data))
        handle.set_on_exit(lambda exit_code: self._handle_exit(session_id, handle, exit_code))
        try:
            await handle.start()
        except OSError as e:
            raise PTYSpawnError(" ".join(command), str(e)) from e
        return handle

    def _install(
        self, session_id: str, handle: PTYHandle, shell: str, multiplexer_backed: bool
    ) -> None:
        previous = self._processes.get(session_id)
        self._processes[session_id] = ManagedProcess(
            handle=handle,
            session_id=session_id,
            shell=shell,
            multiplexer_backed=multiplexer_backed,
        )
        self._states[session_id] = (
            ProcessState.ATTACHED if multiplexer_backed else ProcessState.DIRECT
        )
        if previous is not None and previous.handle is not handle:
            previous.handle.kill()
        logger.info(
            "Session %s supervised: pid=%d %s",
            session_id,
            handle.pid,
            "tmux-backed" if multiplexer_backed else "direct",
        )

    async def reconnect(self, session_id: str, config: TerminalConfig) -> bool:
        """Re-attach to a tmux session whose local process is gone.

        Returns False when there is no tmux session to attach to or the
        attach client could not be spawned.
        """
        if not self._multiplexer_available():
            return False
        store = self._backing_store
        assert store is not None

        async with self._lock_for(session_id):
            if not await store.session_exists(session_id):
                logger.info("No tmux session to reconnect %s to", session_id)
                return False

            stale = self._processes.pop(session_id, None)
            if stale is not None:
                logger.debug("Killing stale handle pid=%d for %s", stale.handle.pid, session_id)
                stale.handle.kill()

            try:
                handle = await self._spawn(session_id, store.get_attach_command(session_id), config)
            except PTYSpawnError as e:
                logger.warning("Reconnect of %s failed: %s", session_id, e)
                self._states[session_id] = ProcessState.EXITED
                return False

            shell, _ = self._shell_command(config)
            store.mark_attached(session_id)
            self._install(session_id, handle, shell, multiplexer_backed=True)
            return True

    # ------------------------------------------------------------------
    # Handle callbacks
    # ------------------------------------------------------------------

    def _is_current(self, session_id: str, handle: PTYHandle) -> bool:
        current = self._processes.get(session_id)
        return current is not None and current.handle is handle

    def _handle_data(self, session_id: str, handle: PTYHandle, data: str) -> None:
        if not self._is_current(session_id, handle):
            return
        if self._processes[session_id].multiplexer_backed and self._backing_store:
            self._backing_store.update_last_active(session_id)
        self._wire.send_process_data(session_id, data)

    def _handle_exit(self, session_id: str, handle: PTYHandle, exit_code: int | None) -> None:
        if not self._is_current(session_id, handle):
            logger.debug("Ignoring exit of superseded process for %s (code=%s)", session_id, exit_code)
            return

        process = self._processes.pop(session_id)
        self._states[session_id] = ProcessState.EXITED
        if process.multiplexer_backed and self._backing_store:
            self._backing_store.mark_detached(session_id)
        logger.info("Session %s process exited (code=%s)", session_id, exit_code)
        self._wire.send_process_exit(session_id, exit_code)

    # ------------------------------------------------------------------
    # I/O
    # ------------------------------------------------------------------

    def write(self, session_id: str, data: str) -> bool:
        process = self._processes.get(session_id)
        if process is None:
            return False
        try:
            process.handle.write(data)
        except (OSError, RuntimeError) as e:
            logger.warning("Write to %s failed: %s", session_id, e)
            return False
        return True

    async def resize(self, session_id: str, cols: int, rows: int) -> bool:
        process = self._processes.get(session_id)
        if process is None:
            return False
        try:
            process.handle.resize(cols, rows)
        except OSError as e:
            logger.warning("Resize of %s failed: %s", session_id, e)
            return False
        if process.multiplexer_backed and self._backing_store:
            await self._backing_store.resize(session_id, cols, rows)
        return True

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def kill(self, session_id: str) -> bool:
        """Kill the local process only; a backing tmux session keeps running."""
        process = self._processes.pop(session_id, None)
        self._states.pop(session_id, None)
        if process is None:
            return False
        process.handle.kill()
        if process.multiplexer_backed and self._backing_store:
            self._backing_store.mark_detached(session_id)
        logger.info("Session %s local process killed", session_id)
        return True

    async def terminate(self, session_id: str) -> None:
        """Kill the local process and the tmux session behind it.

        The session's lock stays registered so a create or reconnect
        queued behind this call still serializes with later callers.
        """
        async with self._lock_for(session_id):
            self.kill(session_id)
            if self._multiplexer_available():
                await self._backing_store.kill_session(session_id)

    def kill_all(self) -> None:
        for session_id in list(self._processes):
            self.kill(session_id)

    async def terminate_all(self) -> None:
        for session_id in list(self._processes):
            await self.terminate(session_id)

    def destroy(self) -> None:
        """Kill every local process (tmux sessions survive) and close the wire."""
        self.kill_all()
        self._locks.clear()
        self._wire.close()
        logger.info("Process supervisor destroyed")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_running(self, session_id: str) -> bool:
        process = self._processes.get(session_id)
        return process is not None and process.handle.alive

    def is_multiplexer_backed(self, session_id: str) -> bool:
        process = self._processes.get(session_id)
        return process is not None and process.multiplexer_backed

    async def has_multiplexer_session(self, session_id: str) -> bool:
        if not self._multiplexer_available():
            return False
        return await self._backing_store.session_exists(session_id)

    def state(self, session_id: str) -> ProcessState:
        return self._states.get(session_id, ProcessState.ABSENT)

    def get_process_info(self, session_id: str) -> dict[str, Any] | None:
        process = self._processes.get(session_id)
        if process is None:
            return None
        return {
            "session_id": session_id,
            "pid": process.handle.pid,
            "shell": process.shell,
            "created_at": process.created_at,
            "multiplexer_backed": process.multiplexer_backed,
            "alive": process.handle.alive,
            "state": self.state(session_id).value,
        }

    def running_session_ids(self) -> list[str]:
        return list(self._processes)

    def running_count(self) -> int:
        return len(self._processes)

    def __len__(self) -> int:
        return len(self._processes)
