"""Tests for shellkeep.pty.process.PTYProcess and shellkeep.pty.shells."""

from __future__ import annotations

import asyncio
import os
import sys

import pytest

from shellkeep.pty.process import PTYProcess, PTYStatus
from shellkeep.pty.shells import SHELL_BINARY_PATHS, ShellType, resolve_shell_path, shell_args

pytestmark = pytest.mark.skipif(
    sys.platform == "win32" or not os.path.exists("/bin/sh"), reason="needs a POSIX PTY"
)


def _collecting(proc: PTYProcess) -> tuple[list[str], asyncio.Future]:
    chunks: list[str] = []
    exited: asyncio.Future = asyncio.get_running_loop().create_future()
    proc.set_on_data(chunks.append)
    proc.set_on_exit(lambda code: exited.done() or exited.set_result(code))
    return chunks, exited


# ---------------------------------------------------------------------------
# PTYProcess
# ---------------------------------------------------------------------------


class TestPTYProcess:
    @pytest.mark.asyncio
    async def test_output_and_exit_code(self, tmp_path) -> None:
        proc = PTYProcess(
            command=["/bin/sh", "-c", "printf 'h\\303\\251llo'; exit 3"],
            cwd=str(tmp_path),
        )
        chunks, exited = _collecting(proc)
        await proc.start()
        assert proc.pid > 0

        code = await asyncio.wait_for(exited, timeout=5)

        assert code == 3
        assert "héllo" in "".join(chunks)
        assert proc.status == PTYStatus.EXITED
        assert not proc.alive

    @pytest.mark.asyncio
    async def test_environment_defaults(self, tmp_path) -> None:
        proc = PTYProcess(
            command=["/bin/sh", "-c", "printf '%s|%s' \"$TERM\" \"$EXTRA\""],
            cwd=str(tmp_path),
            env={"EXTRA": "yes"},
        )
        chunks, exited = _collecting(proc)
        await proc.start()
        await asyncio.wait_for(exited, timeout=5)
        assert "xterm-256color|yes" in "".join(chunks)

    @pytest.mark.asyncio
    async def test_window_size(self, tmp_path) -> None:
        proc = PTYProcess(
            command=["/bin/sh", "-c", "stty size"], cwd=str(tmp_path), cols=132, rows=43
        )
        chunks, exited = _collecting(proc)
        await proc.start()
        await asyncio.wait_for(exited, timeout=5)
        assert "43 132" in "".join(chunks)

    @pytest.mark.asyncio
    async def test_write(self, tmp_path) -> None:
        proc = PTYProcess(command=["/bin/sh", "-c", "read line; echo got:$line"], cwd=str(tmp_path))
        chunks, exited = _collecting(proc)
        await proc.start()
        proc.write("ping\n")
        await asyncio.wait_for(exited, timeout=5)
        assert "got:ping" in "".join(chunks)

    @pytest.mark.asyncio
    async def test_kill_does_not_report_exit(self, tmp_path) -> None:
        proc = PTYProcess(command=["/bin/sh", "-c", "sleep 30"], cwd=str(tmp_path))
        _, exited = _collecting(proc)
        await proc.start()

        proc.kill()
        await asyncio.sleep(0.1)

        assert proc.status == PTYStatus.KILLED
        assert not exited.done()
        with pytest.raises(RuntimeError):
            proc.write("x")

    @pytest.mark.asyncio
    async def test_missing_command(self, tmp_path) -> None:
        proc = PTYProcess(command=["/no/such/binary"], cwd=str(tmp_path))
        with pytest.raises(OSError):
            await proc.start()
        assert proc.status == PTYStatus.CREATED


# ---------------------------------------------------------------------------
# Shells
# ---------------------------------------------------------------------------


class TestShells:
    def test_startup_args(self) -> None:
        assert shell_args(ShellType.BASH) == ["--login"]
        assert shell_args(ShellType.PWSH) == ["-NoLogo"]
        assert shell_args(ShellType.SH) == []

    def test_resolve_sh(self) -> None:
        assert resolve_shell_path(ShellType.SH) in ("/bin/sh", "/usr/bin/sh")

    def test_resolve_falls_back_to_first_candidate(self, monkeypatch) -> None:
        monkeypatch.setitem(SHELL_BINARY_PATHS, ShellType.FISH, ["/nonexistent/fish"])
        monkeypatch.setattr("shellkeep.pty.shells.shutil.which", lambda _name: None)
        assert resolve_shell_path(ShellType.FISH) == "/nonexistent/fish"
