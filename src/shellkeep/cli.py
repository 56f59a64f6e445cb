"""CLI entry point for shellkeep — inspect and tidy persisted sessions."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

import typer
from rich.console import Console
from rich.table import Table

from shellkeep.config import ShellkeepConfig
from shellkeep.lifecycle.cleanup import CleanupScheduler
from shellkeep.mux.tmux import TmuxBackingStore
from shellkeep.store import SessionStatus, SqliteSessionStore

app = typer.Typer(
    name="shellkeep",
    help="Persistent shell sessions backed by tmux.",
    no_args_is_help=True,
)

console = Console()

_VERBOSE_OPTION = typer.Option(False, "--verbose", "-v", help="Enable debug logging.")
_CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Config file path.")


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _format_time(ts: float | None) -> str:
    if ts is None:
        return "-"
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


async def _open_backing_store(config: ShellkeepConfig) -> TmuxBackingStore:
    """A backing store that leaves every live session alone."""
    backing_store = TmuxBackingStore(config.multiplexer)
    await backing_store.initialize(is_known_session=lambda _session_id: True)
    if not backing_store.is_available():
        typer.echo("Error: tmux is not available.", err=True)
        raise typer.Exit(1)
    return backing_store


class _StoreRegistry:
    """Cleanup registry view over the row store for one-shot CLI sweeps."""

    def __init__(self, store: SqliteSessionStore, backing_store: TmuxBackingStore) -> None:
        self._store = store
        self._backing_store = backing_store

    def has_session(self, session_id: str) -> bool:
        row = self._store.get_session(session_id)
        return row is not None and row.status != SessionStatus.TERMINATED

    async def terminate_session(self, session_id: str) -> None:
        await self._backing_store.kill_session(session_id)
        self._store.delete_buffer(session_id)
        if self._store.session_exists(session_id):
            self._store.update_session_status(session_id, SessionStatus.TERMINATED)


@app.command()
def info(
    verbose: bool = _VERBOSE_OPTION,
    config_file: str | None = _CONFIG_OPTION,
) -> None:
    """Show tmux availability and the effective configuration."""
    setup_logging(verbose)
    config = ShellkeepConfig.load(config_file)

    async def _run() -> None:
        backing_store = TmuxBackingStore(config.multiplexer)
        await backing_store.initialize(is_known_session=lambda _session_id: True)
        typer.echo(f"tmux: {backing_store.version or 'not available'}")

    asyncio.run(_run())
    typer.echo(f"Config file: {config.multiplexer.config_path}")
    typer.echo(f"Socket: {config.multiplexer.socket_path}")
    typer.echo(f"Database: {config.database_path}")
    typer.echo(f"Default shell: {config.multiplexer.default_shell}")
    typer.echo(
        f"Cleanup: idle {config.cleanup.idle_timeout:.0f}s, "
        f"max {config.cleanup.max_sessions} sessions, "
        f"every {config.cleanup.check_interval:.0f}s"
    )
    typer.echo(
        f"Scrollback: {config.buffer.max_chunks} chunks, "
        f"flush every {config.buffer.flush_interval:.0f}s"
    )


@app.command()
def sessions(
    verbose: bool = _VERBOSE_OPTION,
    config_file: str | None = _CONFIG_OPTION,
) -> None:
    """List live tmux sessions and their recorded status."""
    setup_logging(verbose)
    config = ShellkeepConfig.load(config_file)
    store = SqliteSessionStore(config.database_path)

    async def _run() -> None:
        backing_store = await _open_backing_store(config)
        live = await backing_store.list_sessions()

        table = Table(title=f"shellkeep sessions ({len(live)})")
        table.add_column("Session")
        table.add_column("tmux name")
        table.add_column("Status")
        table.add_column("Created")
        table.add_column("Last active")
        table.add_column("Attached")

        for session in sorted(live, key=lambda s: s.created_at):
            row = store.get_session(session.session_id)
            last_active = row.last_active_at if row else session.last_active_at
            table.add_row(
                session.session_id,
                session.tmux_name,
                row.status.value if row else "orphan",
                _format_time(session.created_at),
                _format_time(last_active),
                "yes" if session.attached else "no",
            )
        console.print(table)

    asyncio.run(_run())


@app.command()
def capture(
    session_id: str = typer.Argument(help="Session to capture."),
    lines: int | None = typer.Option(
        None, "--lines", "-n", help="Only the last N lines of history."
    ),
    verbose: bool = _VERBOSE_OPTION,
    config_file: str | None = _CONFIG_OPTION,
) -> None:
    """Print the scrollback of a live session."""
    setup_logging(verbose)
    config = ShellkeepConfig.load(config_file)

    async def _run() -> str | None:
        backing_store = await _open_backing_store(config)
        if not await backing_store.session_exists(session_id):
            typer.echo(f"Error: No such session: {session_id}", err=True)
            raise typer.Exit(1)
        return await backing_store.capture_scrollback(session_id, lines)

    output = asyncio.run(_run())
    if output is None:
        typer.echo("Error: Capture failed.", err=True)
        raise typer.Exit(1)
    typer.echo(output, nl=False)


@app.command()
def kill(
    session_id: str = typer.Argument(help="Session to kill."),
    verbose: bool = _VERBOSE_OPTION,
    config_file: str | None = _CONFIG_OPTION,
) -> None:
    """Kill a session's tmux session and mark it terminated."""
    setup_logging(verbose)
    config = ShellkeepConfig.load(config_file)
    store = SqliteSessionStore(config.database_path)

    async def _run() -> None:
        backing_store = await _open_backing_store(config)
        await _StoreRegistry(store, backing_store).terminate_session(session_id)

    asyncio.run(_run())
    typer.echo(f"Killed {session_id}")


@app.command()
def sweep(
    orphans: bool = typer.Option(
        True, "--orphans/--no-orphans", help="Kill tmux sessions with no session record."
    ),
    verbose: bool = _VERBOSE_OPTION,
    config_file: str | None = _CONFIG_OPTION,
) -> None:
    """Run one cleanup cycle now (orphan, idle and capacity sweeps)."""
    setup_logging(verbose)
    config = ShellkeepConfig.load(config_file)
    store = SqliteSessionStore(config.database_path)

    async def _run() -> None:
        backing_store = await _open_backing_store(config)
        # A fresh process knows nothing about activity; take it from the row store
        for session in await backing_store.list_sessions():
            row = store.get_session(session.session_id)
            if row is not None:
                session.last_active_at = row.last_active_at

        scheduler = CleanupScheduler(
            backing_store,
            _StoreRegistry(store, backing_store),
            config.cleanup,
            store=store,
        )
        if orphans:
            await scheduler.clean_orphaned_sessions()
        await scheduler.run_cleanup()

        stats = scheduler.stats()
        typer.echo(
            f"Orphans: {stats.orphans_cleaned}  "
            f"Idle: {stats.idle_cleaned}  "
            f"Over limit: {stats.max_sessions_cleaned}"
        )

    asyncio.run(_run())


def main() -> None:
    app()


if __name__ == "__main__":
    main()
