"""Exception types raised by the persistence engine."""

from __future__ import annotations


class ShellkeepError(Exception):
    """Base class for shellkeep errors."""


class PTYSpawnError(ShellkeepError):
    """A pseudo-terminal process could not be started."""

    def __init__(self, command: str, reason: str) -> None:
        super().__init__(f"Failed to spawn PTY for {command!r}: {reason}")
        self.command = command
        self.reason = reason


class MultiplexerUnavailableError(ShellkeepError):
    """tmux is not installed or failed its availability probe."""

    def __init__(self) -> None:
        super().__init__("tmux is not available")


class TmuxCommandError(ShellkeepError):
    """A tmux invocation exited non-zero or timed out."""

    def __init__(self, args: list[str], returncode: int | None, stderr: str = "") -> None:
        detail = stderr.strip() or ("timed out" if returncode is None else "no output")
        super().__init__(f"tmux {' '.join(args)} failed ({returncode}): {detail}")
        self.args_list = args
        self.returncode = returncode
        self.stderr = stderr
