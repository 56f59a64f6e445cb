"""Configuration — Pydantic models for shellkeep settings."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field

_STATE_DIR = Path(os.environ.get("HOME", "/tmp")) / ".config" / "shellkeep"


class MultiplexerConfig(BaseModel):
    """tmux backing store configuration.

    The config file and socket are private to shellkeep so its sessions
    never collide with a user's own tmux server.
    """

    config_path: str = Field(default=str(_STATE_DIR / "tmux.conf"))
    socket_path: str = Field(default=str(_STATE_DIR / "tmux.sock"))
    default_shell: str = Field(
        default_factory=lambda: os.environ.get("SHELL", "/bin/bash"),
        description="Shell used when a session is created without one",
    )
    command_timeout: float = Field(
        default=5.0, description="Hard timeout (seconds) for each tmux invocation"
    )


class BufferConfig(BaseModel):
    """Scrollback cache configuration."""

    max_chunks: int = Field(
        default=20_000, gt=0, description="Raw output chunks kept per session"
    )
    persist_to_disk: bool = Field(default=True)
    flush_interval: float = Field(
        default=5.0, gt=0, description="Seconds between periodic flushes"
    )


class CleanupConfig(BaseModel):
    """Lifecycle cleanup scheduler configuration."""

    idle_timeout: float = Field(
        default=48 * 60 * 60, description="Seconds of inactivity before a session is reaped"
    )
    max_sessions: int = Field(default=400, gt=0)
    check_interval: float = Field(default=5 * 60, gt=0)
    clean_orphans_on_startup: bool = Field(default=True)


class ShellkeepConfig(BaseModel):
    """Top-level shellkeep configuration."""

    multiplexer: MultiplexerConfig = Field(default_factory=MultiplexerConfig)
    buffer: BufferConfig = Field(default_factory=BufferConfig)
    cleanup: CleanupConfig = Field(default_factory=CleanupConfig)
    database_path: str = Field(default=str(_STATE_DIR / "shellkeep.db"))

    @classmethod
    def load(cls, config_path: str | None = None) -> ShellkeepConfig:
        """Load config from file, env vars, or defaults.

        Priority: env vars > config file > defaults.

        Env vars:
            SHELLKEEP_IDLE_TIMEOUT       - Idle seconds before a session is reaped
            SHELLKEEP_MAX_SESSIONS       - Maximum concurrent tmux sessions
            SHELLKEEP_CLEANUP_INTERVAL   - Seconds between cleanup cycles
            SHELLKEEP_CLEAN_ORPHANS      - Kill orphaned tmux sessions on startup (true/false)
            SHELLKEEP_SCROLLBACK_CHUNKS  - Output chunks kept per session
            SHELLKEEP_FLUSH_INTERVAL     - Seconds between scrollback flushes
            SHELLKEEP_PERSIST_BUFFERS    - Persist scrollback to the database (true/false)
            SHELLKEEP_SHELL              - Default shell path
            SHELLKEEP_TMUX_CONFIG        - Path of the generated tmux config file
            SHELLKEEP_TMUX_SOCKET        - Path of the private tmux socket
            SHELLKEEP_DATABASE           - SQLite database path
        """
        load_dotenv(find_dotenv(usecwd=True))

        config_data: dict[str, Any] = {}

        if config_path and os.path.exists(config_path):
            with open(config_path) as f:
                config_data = json.load(f)

        mux = config_data.get("multiplexer", {})
        buffer = config_data.get("buffer", {})
        cleanup = config_data.get("cleanup", {})

        _env_into(cleanup, "idle_timeout", "SHELLKEEP_IDLE_TIMEOUT", float)
        _env_into(cleanup, "max_sessions", "SHELLKEEP_MAX_SESSIONS", int)
        _env_into(cleanup, "check_interval", "SHELLKEEP_CLEANUP_INTERVAL", float)
        _env_into(cleanup, "clean_orphans_on_startup", "SHELLKEEP_CLEAN_ORPHANS", _parse_bool)
        _env_into(buffer, "max_chunks", "SHELLKEEP_SCROLLBACK_CHUNKS", int)
        _env_into(buffer, "flush_interval", "SHELLKEEP_FLUSH_INTERVAL", float)
        _env_into(buffer, "persist_to_disk", "SHELLKEEP_PERSIST_BUFFERS", _parse_bool)
        _env_into(mux, "default_shell", "SHELLKEEP_SHELL", str)
        _env_into(mux, "config_path", "SHELLKEEP_TMUX_CONFIG", str)
        _env_into(mux, "socket_path", "SHELLKEEP_TMUX_SOCKET", str)

        env_database = os.environ.get("SHELLKEEP_DATABASE")
        if env_database:
            config_data["database_path"] = env_database

        for key, section in (("multiplexer", mux), ("buffer", buffer), ("cleanup", cleanup)):
            if section:
                config_data[key] = section

        return cls.model_validate(config_data)


def _env_into(section: dict[str, Any], key: str, env_var: str, convert: Any) -> None:
    value = os.environ.get(env_var)
    if value:
        section[key] = convert(value)


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")
