"""Multiplexer backing store — detachable tmux sessions that outlive shellkeep."""

from shellkeep.mux.tmux import (
    SESSION_PREFIX,
    MultiplexerSession,
    TmuxBackingStore,
    session_id_from_name,
    session_name,
)

__all__ = [
    "SESSION_PREFIX",
    "MultiplexerSession",
    "TmuxBackingStore",
    "session_id_from_name",
    "session_name",
]
