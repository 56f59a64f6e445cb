"""Shell kinds, binary lookup and startup arguments."""

from __future__ import annotations

import enum
import logging
import os
import shutil

logger = logging.getLogger(__name__)


class ShellType(enum.StrEnum):
    BASH = "bash"
    ZSH = "zsh"
    FISH = "fish"
    SH = "sh"
    PWSH = "pwsh"


# Candidate binaries, tried in order
SHELL_BINARY_PATHS: dict[ShellType, list[str]] = {
    ShellType.BASH: ["/bin/bash", "/usr/bin/bash", "/usr/local/bin/bash"],
    ShellType.ZSH: ["/bin/zsh", "/usr/bin/zsh", "/usr/local/bin/zsh"],
    ShellType.FISH: ["/usr/bin/fish", "/usr/local/bin/fish", "/opt/homebrew/bin/fish"],
    ShellType.SH: ["/bin/sh", "/usr/bin/sh"],
    ShellType.PWSH: ["/usr/bin/pwsh", "/usr/local/bin/pwsh", "pwsh"],
}

SHELL_STARTUP_ARGS: dict[ShellType, tuple[str, ...]] = {
    ShellType.BASH: ("--login",),
    ShellType.ZSH: ("--login",),
    ShellType.FISH: ("--login",),
    ShellType.SH: (),
    ShellType.PWSH: ("-NoLogo",),
}

# Always exported to spawned shells and tmux sessions
SHELL_ENV_DEFAULTS: dict[str, str] = {
    "TERM": "xterm-256color",
    "COLORTERM": "truecolor",
    "LANG": "en_US.UTF-8",
}


def resolve_shell_path(shell: ShellType) -> str:
    """Return the binary for ``shell``.

    Absolute candidates are checked on disk first, then the bare command
    name is looked up on PATH. When nothing is found the first candidate
    is returned so the spawn fails with a meaningful error.
    """
    candidates = SHELL_BINARY_PATHS[shell]
    for path in candidates:
        if os.path.isabs(path) and os.path.exists(path):
            return path

    resolved = shutil.which(shell.value)
    if resolved:
        logger.debug("Resolved %s via PATH: %s", shell, resolved)
        return resolved

    return candidates[0]


def shell_args(shell: ShellType) -> list[str]:
    return list(SHELL_STARTUP_ARGS[shell])
