"""PTY process management — supervised pseudo-terminal sessions.

Every shell runs on its own PTY with process group isolation. When tmux
is available the PTY only hosts an attach client and the shell itself
lives in a detached tmux session; output is kept in a bounded scrollback
cache for replay on reconnect.
"""

from shellkeep.pty.process import PTYHandle, PTYProcess, PTYStatus
from shellkeep.pty.supervisor import ManagedProcess, ProcessState, ProcessSupervisor, TerminalConfig
from shellkeep.pty.buffer import BufferSnapshot, BufferStats, ScrollbackCache
from shellkeep.pty.shells import ShellType

__all__ = [
    "PTYHandle",
    "PTYProcess",
    "PTYStatus",
    "ManagedProcess",
    "ProcessState",
    "ProcessSupervisor",
    "TerminalConfig",
    "BufferSnapshot",
    "BufferStats",
    "ScrollbackCache",
    "ShellType",
]
