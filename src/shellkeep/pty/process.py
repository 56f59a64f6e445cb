"""PTY process — a pseudo-terminal running one interactive command."""

from __future__ import annotations

import asyncio
import codecs
import enum
import fcntl
import logging
import os
import pty
import signal
import struct
import subprocess
import termios
from dataclasses import dataclass, field
from typing import Callable, Protocol

from shellkeep.pty.shells import SHELL_ENV_DEFAULTS

logger = logging.getLogger(__name__)


class PTYStatus(enum.Enum):
    """Lifecycle states for a PTY process."""

    CREATED = "created"
    RUNNING = "running"
    KILLING = "killing"  # Kill requested, waiting for process to die
    KILLED = "killed"  # Killed by us (SIGKILL)
    EXITED = "exited"  # Process exited on its own


class PTYHandle(Protocol):
    """What the supervisor needs from a spawned pseudo-terminal."""

    @property
    def pid(self) -> int: ...

    @property
    def alive(self) -> bool: ...

    def set_on_data(self, callback: Callable[[str], None]) -> None: ...

    def set_on_exit(self, callback: Callable[[int | None], None]) -> None: ...

    async def start(self) -> None: ...

    def write(self, data: str) -> None: ...

    def resize(self, cols: int, rows: int) -> None: ...

    def kill(self) -> None: ...


PTYFactory = Callable[..., PTYHandle]


def _set_winsize(fd: int, cols: int, rows: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


@dataclass(eq=False)
class PTYProcess:
    """A command running on its own pseudo-terminal.

    Wraps the process with:
    - Process group isolation (start_new_session) for safe tree-killing
    - Window size control via TIOCSWINSZ
    - An async reader delivering raw output chunks in receipt order
    - Exit notification callback

    Uses subprocess.Popen (not os.fork) to avoid deadlocks when
    spawned from within an asyncio event loop on macOS.

    Instances compare by identity: the supervisor relies on that to tell
    a superseded process from the live one.
    """

    command: list[str] = field(default_factory=list)
    cwd: str = field(default_factory=os.getcwd)
    env: dict[str, str] = field(default_factory=dict)
    cols: int = 100
    rows: int = 30

    _master_fd: int = field(default=-1, init=False)
    _proc: subprocess.Popen | None = field(default=None, init=False)
    _pid: int = field(default=0, init=False)
    _pgid: int = field(default=0, init=False)
    _reader_task: asyncio.Task | None = field(default=None, init=False)
    _status: PTYStatus = field(default=PTYStatus.CREATED, init=False)
    _on_data: Callable[[str], None] | None = field(default=None, init=False)
    _on_exit: Callable[[int | None], None] | None = field(default=None, init=False)

    def set_on_data(self, callback: Callable[[str], None]) -> None:
        """Set the callback receiving each decoded output chunk."""
        self._on_data = callback

    def set_on_exit(self, callback: Callable[[int | None], None]) -> None:
        """Set a callback to be invoked when the process exits on its own.

        The callback receives the exit code. It is called from the reader
        task when the process dies, NOT when killed via kill().
        """
        self._on_exit = callback

    async def start(self) -> None:
        """Spawn the command on a new PTY with its own process group.

        Raises:
            OSError: the command could not be executed.
        """
        master_fd, slave_fd = pty.openpty()
        _set_winsize(slave_fd, self.cols, self.rows)

        env = {**os.environ, **SHELL_ENV_DEFAULTS, **self.env}

        try:
            self._proc = subprocess.Popen(
                self.command,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                start_new_session=True,
                env=env,
                cwd=self.cwd,
            )
        except OSError:
            os.close(master_fd)
            raise
        finally:
            # Parent always closes slave fd
            os.close(slave_fd)

        self._master_fd = master_fd
        self._pid = self._proc.pid
        self._pgid = os.getpgid(self._pid)
        self._status = PTYStatus.RUNNING

        self._reader_task = asyncio.create_task(self._read_loop())

        logger.info(
            "PTY started: pid=%d pgid=%d cmd=%s",
            self._pid,
            self._pgid,
            " ".join(self.command),
        )

    async def _read_loop(self) -> None:
        """Continuously read output from the PTY master fd."""
        loop = asyncio.get_running_loop()
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while self._status == PTYStatus.RUNNING:
                try:
                    data = await loop.run_in_executor(
                        None, lambda: os.read(self._master_fd, 4096)
                    )
                except OSError:
                    break

                if not data:
                    break

                text = decoder.decode(data)
                if text and self._on_data:
                    self._on_data(text)
        except Exception as e:
            logger.debug("PTY reader pid=%d ended: %s", self._pid, e)
        finally:
            # Only transition to EXITED if we weren't already killing
            if self._status == PTYStatus.RUNNING:
                exit_code = await self._reap()
                self._status = PTYStatus.EXITED
                self._close_master()
                logger.info("PTY pid=%d exited (code=%s)", self._pid, exit_code)
                if self._on_exit:
                    try:
                        self._on_exit(exit_code)
                    except Exception:
                        logger.exception("Error in on_exit callback for pid %d", self._pid)

    async def _reap(self) -> int | None:
        if self._proc is None:
            return None
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, lambda: self._proc.wait(timeout=2))
        except subprocess.TimeoutExpired:
            return self._proc.poll()

    def write(self, data: str) -> None:
        if self._status != PTYStatus.RUNNING:
            raise RuntimeError(f"PTY pid={self._pid} is not running")
        os.write(self._master_fd, data.encode())

    def resize(self, cols: int, rows: int) -> None:
        if self._status != PTYStatus.RUNNING:
            return
        self.cols, self.rows = cols, rows
        _set_winsize(self._master_fd, cols, rows)

    def kill(self) -> None:
        """Kill the entire process tree."""
        if self._status not in (PTYStatus.RUNNING, PTYStatus.KILLING):
            return

        self._status = PTYStatus.KILLING
        try:
            os.killpg(self._pgid, signal.SIGKILL)
            logger.info("Killed PTY pid=%d (pgid=%d)", self._pid, self._pgid)
        except ProcessLookupError:
            logger.debug("Process group already gone: %d", self._pgid)
        except OSError as e:
            logger.warning("Error killing PTY pid=%d: %s", self._pid, e)

        # Wait for process to be reaped (avoids zombies)
        if self._proc is not None:
            try:
                self._proc.wait(timeout=2)
            except subprocess.TimeoutExpired:
                logger.warning("PTY pid=%d did not exit after SIGKILL", self._pid)

        self._close_master()
        self._status = PTYStatus.KILLED

    def _close_master(self) -> None:
        if self._master_fd < 0:
            return
        try:
            os.close(self._master_fd)
        except OSError:
            pass
        self._master_fd = -1

    @property
    def pid(self) -> int:
        return self._pid

    @property
    def alive(self) -> bool:
        return self._status == PTYStatus.RUNNING

    @property
    def status(self) -> PTYStatus:
        return self._status

    def __del__(self) -> None:
        """Ensure cleanup on garbage collection."""
        if self._status in (PTYStatus.RUNNING, PTYStatus.KILLING):
            self.kill()
