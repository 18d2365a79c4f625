"""
Root Typer application for the ``dbsem`` admin CLI.

None of these commands sit on the acquire/release hot path: they create
the tables once, inspect pools and heartbeats, force a reclaim pass, or
change a pool's capacity.
"""

from __future__ import annotations

import typer
from typer import Typer

from dbsemaphore import __version__
from dbsemaphore.cli.utils import console, fail, load_settings, open_stores, output, print_dict
from dbsemaphore.core.errors import SemaphoreError, UnknownSemaphoreError
from dbsemaphore.core.logging import configure_logging
from dbsemaphore.core.schema import ensure_schema
from dbsemaphore.semaphore.reaper import Reaper

app = Typer(
    name="dbsem",
    help="dbsem: administer database-backed distributed semaphores.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"dbsemaphore {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    log_level: str | None = typer.Option(
        None, "--log-level", help="Log level for store events (defaults to DBSEM_LOG_LEVEL)."
    ),
) -> None:
    """dbsem CLI: schema, status, reaping and capacity of semaphore pools."""
    settings = load_settings()
    configure_logging(level=log_level or settings.log_level, json_format=settings.log_json)


# ── Commands ─────────────────────────────────────────────────────────────


@app.command("init-schema")
def init_schema(
    database: str | None = typer.Option(None, "--database", "-d", help="SQLAlchemy database URL"),
) -> None:
    """Create the heartbeat, pool and ledger tables if missing."""
    settings, engine, heartbeats, semaphores = open_stores(database)
    try:
        created = ensure_schema(engine, heartbeats.desc, semaphores.desc)
    except SemaphoreError as exc:
        fail(exc)
    if created:
        console.print(f"[green]Created[/green] {', '.join(created)}")
    else:
        console.print("[dim]All tables already exist.[/dim]")


@app.command()
def status(
    name: str | None = typer.Argument(None, help="Show a single pool and its holders"),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json", help="JSON output"),
) -> None:
    """Show pools, permit holders and heartbeats."""
    settings, _engine, heartbeats, semaphores = open_stores(database)
    try:
        if name is not None:
            pool = semaphores.get_pool(name)
            if pool is None:
                raise UnknownSemaphoreError(name)
            holders = semaphores.list_holders(name)
            if json_out:
                output({"pool": pool, "holders": holders}, as_json=True)
                return
            print_dict(
                {
                    "total_permits": pool.total_permits,
                    "available_permits": pool.available_permits,
                    "checked_out": pool.checked_out,
                },
                title=f"Semaphore {name}",
            )
            output(holders, title="Holders")
            return

        pools = semaphores.list_pools()
        now = heartbeats.current_time_millis()
        beats = [
            {
                "owner": record.owner,
                "interval_ms": record.interval_millis,
                "age_ms": now - record.last_heartbeat_millis,
                "stale": record.is_stale(now, settings.grace_multiplier),
            }
            for record in heartbeats.list_all()
        ]
    except SemaphoreError as exc:
        fail(exc)

    if json_out:
        output({"pools": pools, "heartbeats": beats}, as_json=True)
        return
    output(pools, title="Semaphores")
    output(beats, title="Heartbeats")


@app.command()
def reap(
    names: list[str] | None = typer.Option(
        None, "--name", "-n", help="Restrict reclaiming to these pools (repeatable)"
    ),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json", help="JSON output"),
) -> None:
    """Reclaim permits of stale and orphaned owners now."""
    settings, _engine, heartbeats, semaphores = open_stores(database)
    reaper = Reaper(
        heartbeats,
        semaphores,
        grace_multiplier=settings.grace_multiplier,
        scope=names or None,
    )
    try:
        result = reaper.run()
    except SemaphoreError as exc:
        fail(exc)

    if json_out:
        output(result.to_dict(), as_json=True)
        return
    if not result.reclaimed and not result.removed_owners:
        console.print("[dim]Nothing to reclaim.[/dim]")
        return
    output(result.to_dict()["reclaimed"], title="Reclaimed")
    if result.removed_owners:
        console.print(f"Removed heartbeats: {', '.join(result.removed_owners)}")


@app.command()
def resize(
    name: str = typer.Argument(..., help="Pool name"),
    total: int = typer.Argument(..., help="New total permits"),
    database: str | None = typer.Option(None, "--database", "-d"),
) -> None:
    """Change a pool's capacity (fails if more permits are checked out)."""
    _settings, _engine, _heartbeats, semaphores = open_stores(database)
    try:
        pool = semaphores.resize_pool(name, total)
    except SemaphoreError as exc:
        fail(exc)
    console.print(
        f"[green]Resized[/green] {pool.name}: total={pool.total_permits} "
        f"available={pool.available_permits}"
    )
