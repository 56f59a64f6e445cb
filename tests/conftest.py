"""Shared fakes: an in-memory tmux server and scriptable PTY handles."""

from __future__ import annotations

import itertools
from typing import Any, Callable

import pytest

from shellkeep.config import MultiplexerConfig
from shellkeep.errors import TmuxCommandError
from shellkeep.mux.tmux import TmuxBackingStore, session_name


def _target(args: tuple[str, ...]) -> str:
    name = args[args.index("-t") + 1]
    return name.removeprefix("=").removesuffix(":")


class FakeTmuxStore(TmuxBackingStore):
    """TmuxBackingStore whose tmux server is a dict.

    Command lines are still built by the real store; only the subprocess
    is replaced.
    """

    def __init__(
        self,
        tmp_path: Any,
        live: tuple[str, ...] = (),
        tmux_installed: bool = True,
        **kwargs: Any,
    ) -> None:
        config = MultiplexerConfig(
            config_path=str(tmp_path / "tmux" / "tmux.conf"),
            socket_path=str(tmp_path / "tmux" / "tmux.sock"),
            default_shell="/bin/sh",
        )
        super().__init__(config, **kwargs)
        self.server: dict[str, dict[str, int]] = {
            session_name(s): {"created": 1_700_000_000, "attached": 0} for s in live
        }
        self.tmux_installed = tmux_installed
        self.has_session_failures = 0
        self.fail_new_session = False
        self.calls: list[tuple[str, ...]] = []

    def commands(self, name: str) -> list[tuple[str, ...]]:
        return [c for c in self.calls if c[0] == name]

    async def _exec(self, *args: str) -> str:
        self.calls.append(args)
        if not self.tmux_installed:
            raise FileNotFoundError("tmux")

        cmd = args[0]
        if cmd == "-V":
            return "tmux 3.4\n"

        if cmd == "new-session":
            name = args[args.index("-s") + 1]
            if self.fail_new_session or name in self.server:
                raise TmuxCommandError(list(args), 1, f"duplicate session: {name}")
            self.server[name] = {"created": 1_700_000_000, "attached": 0}
            return ""

        if cmd == "list-sessions":
            if not self.server:
                raise TmuxCommandError(list(args), 1, "no server running")
            if args[2] == "#{session_name}":
                return "".join(f"{name}\n" for name in self.server)
            return "".join(
                f"{name}:{info['created']}:{info['attached']}\n"
                for name, info in self.server.items()
            )

        name = _target(args)
        if cmd == "has-session" and self.has_session_failures:
            self.has_session_failures -= 1
            raise TmuxCommandError(list(args), 1, "server busy")
        if name not in self.server:
            raise TmuxCommandError(list(args), 1, f"can't find session: {name}")

        if cmd == "kill-session":
            del self.server[name]
        elif cmd == "capture-pane":
            return "$ echo hi\nhi\n"
        return ""


class FakePTY:
    """Scriptable stand-in for PTYProcess."""

    _pids = itertools.count(1000)

    def __init__(
        self,
        command: list[str],
        cwd: str,
        env: dict[str, str],
        cols: int = 100,
        rows: int = 30,
        fail: bool = False,
    ) -> None:
        self.command = command
        self.cwd = cwd
        self.env = env
        self.cols = cols
        self.rows = rows
        self.fail = fail
        self.written: list[str] = []
        self.killed = False
        self._alive = False
        self._pid = next(self._pids)
        self._on_data: Callable[[str], None] | None = None
        self._on_exit: Callable[[int | None], None] | None = None

    @property
    def pid(self) -> int:
        return self._pid

    @property
    def alive(self) -> bool:
        return self._alive

    def set_on_data(self, callback: Callable[[str], None]) -> None:
        self._on_data = callback

    def set_on_exit(self, callback: Callable[[int | None], None]) -> None:
        self._on_exit = callback

    async def start(self) -> None:
        if self.fail:
            raise FileNotFoundError(f"No such file or directory: {self.command[0]!r}")
        self._alive = True

    def write(self, data: str) -> None:
        if not self._alive:
            raise RuntimeError("not running")
        self.written.append(data)

    def resize(self, cols: int, rows: int) -> None:
        self.cols, self.rows = cols, rows

    def kill(self) -> None:
        self._alive = False
        self.killed = True

    # Test helpers

    def emit(self, data: str) -> None:
        assert self._on_data is not None
        self._on_data(data)

    def exit(self, code: int | None = 0) -> None:
        """Simulate the process ending on its own."""
        self._alive = False
        assert self._on_exit is not None
        self._on_exit(code)


class FakePTYFactory:
    """Records every handle it creates; commands in ``failing`` fail to start."""

    def __init__(self) -> None:
        self.spawned: list[FakePTY] = []
        self.failing: set[str] = set()

    def __call__(self, **kwargs: Any) -> FakePTY:
        command = kwargs["command"]
        pty = FakePTY(fail=command[0] in self.failing, **kwargs)
        self.spawned.append(pty)
        return pty

    @property
    def live(self) -> list[FakePTY]:
        return [p for p in self.spawned if p.alive]


@pytest.fixture
def pty_factory() -> FakePTYFactory:
    return FakePTYFactory()


@pytest.fixture
def tmux(tmp_path: Any) -> FakeTmuxStore:
    return FakeTmuxStore(tmp_path)
