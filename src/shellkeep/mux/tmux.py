"""tmux backing store — shells that outlive the supervising process.

Every shellkeep session is a detached tmux session named
``SESSION_PREFIX + session_id`` on a private socket with a private config
file, so nothing here ever touches the user's own tmux server. The store
owns no OS processes: local PTYs attach to these sessions and can come
and go while the shell inside keeps running.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import time
from dataclasses import dataclass, field
from typing import Callable

import aiofiles
from tenacity import (
    AsyncRetrying,
    RetryError,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from shellkeep.config import MultiplexerConfig
from shellkeep.errors import MultiplexerUnavailableError, TmuxCommandError
from shellkeep.pty.shells import SHELL_ENV_DEFAULTS
from shellkeep.session.wire import EventType, Wire

logger = logging.getLogger(__name__)

SESSION_PREFIX = "shk_"

# Initial window size of a freshly created session; the first attach resizes it
_INITIAL_COLS = 120
_INITIAL_ROWS = 30

_PROBE_BACKOFF = 0.05

TMUX_CONFIG = """\
# shellkeep tmux configuration
# This file is auto-generated - changes will be overwritten

set-option -g status off
set-option -g mouse on
set-option -g allow-rename off
set-option -g history-limit 10000
set-option -g default-terminal "xterm-256color"
set-option -ga terminal-overrides ",xterm-256color:Tc"
set-option -sg escape-time 10
set-option -g focus-events on
set-window-option -g xterm-keys on
"""


@dataclass
class MultiplexerSession:
    """Local bookkeeping for one tmux session."""

    session_id: str
    tmux_name: str
    created_at: float = field(default_factory=time.time)
    last_active_at: float = field(default_factory=time.time)
    attached: bool = False


def session_name(session_id: str) -> str:
    return f"{SESSION_PREFIX}{session_id}"


def session_id_from_name(tmux_name: str) -> str | None:
    if tmux_name.startswith(SESSION_PREFIX):
        return tmux_name[len(SESSION_PREFIX) :]
    return None


def _exact(session_id: str) -> str:
    """Exact-match session target (plain ``-t name`` does prefix matching)."""
    return f"={session_name(session_id)}"


def _exact_window(session_id: str) -> str:
    return f"={session_name(session_id)}:"


class TmuxBackingStore:
    """Command-driven wrapper around a private tmux server.

    Call ``initialize()`` once at startup. When tmux is missing the store
    reports ``is_available() == False`` and the supervisor spawns plain
    shells instead.
    """

    def __init__(
        self,
        config: MultiplexerConfig | None = None,
        wire: Wire | None = None,
        is_known_session: Callable[[str], bool] | None = None,
    ) -> None:
        self._config = config or MultiplexerConfig()
        self._wire = wire or Wire()
        self._is_known_session = is_known_session
        self._sessions: dict[str, MultiplexerSession] = {}
        self._available = False
        self._version: str | None = None

    @property
    def wire(self) -> Wire:
        return self._wire

    @property
    def config(self) -> MultiplexerConfig:
        return self._config

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def initialize(self, is_known_session: Callable[[str], bool] | None = None) -> None:
        """Probe tmux, write the config file and reconcile live sessions.

        Live ``shk_`` sessions for which ``is_known_session`` returns True
        are recovered; all others are killed.
        """
        if is_known_session is not None:
            self._is_known_session = is_known_session
        try:
            self._version = (await self._exec("-V")).strip()
        except (TmuxCommandError, OSError) as e:
            logger.warning(
                "tmux not available, sessions will not persist across restarts: %s", e
            )
            self._available = False
            return

        self._available = True
        logger.info("tmux available: %s", self._version)

        await self._write_config()
        await self._discover_existing_sessions()

    def is_available(self) -> bool:
        return self._available

    @property
    def version(self) -> str | None:
        return self._version

    async def _write_config(self) -> None:
        config_dir = os.path.dirname(self._config.config_path)
        if config_dir:
            os.makedirs(config_dir, exist_ok=True)
        async with aiofiles.open(self._config.config_path, "w", encoding="utf-8") as f:
            await f.write(TMUX_CONFIG)
        logger.debug("tmux config written to %s", self._config.config_path)

    async def _discover_existing_sessions(self) -> None:
        """Recover sessions the registry knows about; kill the rest."""
        try:
            output = await self._exec("list-sessions", "-F", "#{session_name}")
        except TmuxCommandError:
            logger.debug("No existing tmux sessions found")
            return

        for tmux_name in filter(None, output.splitlines()):
            session_id = session_id_from_name(tmux_name)
            if not session_id:
                continue

            known = self._is_known_session(session_id) if self._is_known_session else False
            if known:
                self._sessions[session_id] = MultiplexerSession(
                    session_id=session_id, tmux_name=tmux_name
                )
                self._wire.send_session_event(EventType.MUX_SESSION_RECOVERED, session_id)
                logger.info("Recovered tmux session %s", session_id)
            else:
                await self.kill_session(session_id)
                logger.info("Killed orphaned tmux session %s", tmux_name)

    # ------------------------------------------------------------------
    # Session operations
    # ------------------------------------------------------------------

    async def create_session(
        self,
        session_id: str,
        shell: str | None = None,
        cwd: str | None = None,
        shell_args: list[str] | None = None,
    ) -> MultiplexerSession:
        """Create a detached tmux session running ``shell``.

        Raises:
            MultiplexerUnavailableError: tmux was not found at startup.
            TmuxCommandError: tmux refused to create the session.
        """
        if not self._available:
            raise MultiplexerUnavailableError()

        tmux_name = session_name(session_id)
        shell_path = shell or self._config.default_shell
        working_dir = cwd or os.environ.get("HOME", "/")
        shell_command = shlex.join([shell_path, *(shell_args or [])])

        env_args: list[str] = []
        for key, value in SHELL_ENV_DEFAULTS.items():
            env_args += ["-e", f"{key}={value}"]

        logger.debug(
            "Creating tmux session %s: shell=%s cwd=%s", tmux_name, shell_command, working_dir
        )
        try:
            await self._exec(
                "new-session",
                "-d",
                "-s",
                tmux_name,
                "-c",
                working_dir,
                "-x",
                str(_INITIAL_COLS),
                "-y",
                str(_INITIAL_ROWS),
                *env_args,
                shell_command,
            )
        except TmuxCommandError:
            logger.error("Failed to create tmux session %s", tmux_name)
            raise

        session = MultiplexerSession(session_id=session_id, tmux_name=tmux_name)
        self._sessions[session_id] = session
        self._wire.send_session_event(EventType.MUX_SESSION_CREATED, session_id)
        logger.info("tmux session created: %s", tmux_name)
        return session

    def get_session(self, session_id: str) -> MultiplexerSession | None:
        return self._sessions.get(session_id)

    async def session_exists(self, session_id: str, retries: int = 2) -> bool:
        """Check that the tmux session is alive.

        ``has-session`` is retried ``retries`` times with a short fixed
        backoff; when every attempt fails the local entry is evicted.
        """
        target = _exact(session_id)
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type((TmuxCommandError, OSError)),
                stop=stop_after_attempt(retries + 1),
                wait=wait_fixed(_PROBE_BACKOFF),
                before_sleep=before_sleep_log(logger, logging.DEBUG),
            ):
                with attempt:
                    await self._exec("has-session", "-t", target)
        except RetryError as e:
            logger.info(
                "tmux session %s not found after retries: %s",
                session_id,
                e.last_attempt.exception(),
            )
            self._sessions.pop(session_id, None)
            return False
        return True

    async def list_sessions(self) -> list[MultiplexerSession]:
        """List live shellkeep sessions, merging in local timestamps."""
        if not self._available:
            return []

        try:
            output = await self._exec(
                "list-sessions",
                "-F",
                "#{session_name}:#{session_created}:#{session_attached}",
            )
        except TmuxCommandError:
            # No server running means no sessions
            return []

        sessions: list[MultiplexerSession] = []
        for line in filter(None, output.splitlines()):
            name, _, rest = line.partition(":")
            created, _, attached = rest.partition(":")
            session_id = session_id_from_name(name)
            if not session_id:
                continue

            existing = self._sessions.get(session_id)
            if existing is not None:
                existing.attached = attached == "1"
                session = existing
            else:
                session = MultiplexerSession(
                    session_id=session_id,
                    tmux_name=name,
                    created_at=float(created) if created.isdigit() else time.time(),
                    attached=attached == "1",
                )
                self._sessions[session_id] = session
            sessions.append(session)

        return sessions

    async def kill_session(self, session_id: str) -> None:
        """Kill a tmux session. Already-dead sessions are not an error."""
        if not self._available:
            self._sessions.pop(session_id, None)
            return
        try:
            await self._exec("kill-session", "-t", _exact(session_id))
        except TmuxCommandError as e:
            self._sessions.pop(session_id, None)
            logger.debug("tmux kill-session %s (possibly already dead): %s", session_id, e)
            return

        self._sessions.pop(session_id, None)
        self._wire.send_session_event(EventType.MUX_SESSION_KILLED, session_id)
        logger.info("tmux session killed: %s", session_id)

    async def resize(self, session_id: str, cols: int, rows: int) -> None:
        try:
            await self._exec(
                "resize-window", "-t", _exact_window(session_id), "-x", str(cols), "-y", str(rows)
            )
        except TmuxCommandError as e:
            logger.debug("tmux resize of %s to %dx%d failed: %s", session_id, cols, rows, e)

    async def send_keys(self, session_id: str, keys: str) -> None:
        try:
            await self._exec("send-keys", "-t", _exact_window(session_id), keys)
        except TmuxCommandError:
            logger.warning("Failed to send keys to tmux session %s", session_id)
            raise

    async def capture_scrollback(self, session_id: str, lines: int | None = None) -> str | None:
        """Capture the pane's history (all of it unless ``lines`` is given).

        Wrapped lines are joined. Returns None when the capture fails.
        """
        start = f"-{lines}" if lines else "-"
        try:
            output = await self._exec(
                "capture-pane", "-t", _exact_window(session_id), "-p", "-J", "-S", start
            )
        except TmuxCommandError as e:
            logger.warning("Failed to capture scrollback of %s: %s", session_id, e)
            return None
        logger.debug("Captured %d chars of scrollback from %s", len(output), session_id)
        return output

    # ------------------------------------------------------------------
    # Local bookkeeping
    # ------------------------------------------------------------------

    def update_last_active(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session:
            session.last_active_at = time.time()

    def mark_attached(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session:
            session.attached = True
            session.last_active_at = time.time()

    def mark_detached(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session:
            session.attached = False

    def get_attach_command(self, session_id: str) -> list[str]:
        """Argument vector that attaches a client to the session.

        ``-d`` detaches every other client first, so only one local PTY
        is ever attached to a session.
        """
        return self.tmux_command("attach-session", "-d", "-t", _exact(session_id))

    def tmux_command(self, *args: str) -> list[str]:
        return [
            "tmux",
            "-f",
            self._config.config_path,
            "-S",
            self._config.socket_path,
            *args,
        ]

    async def shutdown(self) -> None:
        """Forget local state. tmux sessions keep running."""
        self._sessions.clear()
        self._wire.close()
        logger.info("tmux backing store shut down (sessions preserved)")

    # ------------------------------------------------------------------
    # Process plumbing
    # ------------------------------------------------------------------

    async def _exec(self, *args: str) -> str:
        """Run one tmux command and return its stdout.

        Raises:
            TmuxCommandError: non-zero exit or timeout.
            OSError: the tmux binary could not be executed.
        """
        argv = self.tmux_command(*args)
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self._config.command_timeout
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise TmuxCommandError(list(args), None)

        if proc.returncode != 0:
            raise TmuxCommandError(
                list(args), proc.returncode, stderr.decode("utf-8", errors="replace")
            )
        return stdout.decode("utf-8", errors="replace")
