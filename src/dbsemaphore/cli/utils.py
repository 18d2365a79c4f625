"""
CLI utility helpers for output formatting and store wiring.
"""

from __future__ import annotations

import json
from dataclasses import asdict
from typing import Any, NoReturn

import typer
from rich.console import Console
from rich.table import Table
from sqlalchemy.engine import Engine

from dbsemaphore.core.engine import create_semaphore_engine
from dbsemaphore.core.errors import SemaphoreError
from dbsemaphore.core.settings import SemaphoreSettings
from dbsemaphore.heartbeat.store import HeartbeatStore
from dbsemaphore.semaphore.store import SemaphoreStore

console = Console()
err_console = Console(stderr=True)


# ── Store helpers ────────────────────────────────────────────────────────


def load_settings(database: str | None = None) -> SemaphoreSettings:
    """Settings from the environment, with ``--database`` taking precedence."""
    settings = SemaphoreSettings()
    if database:
        settings = settings.model_copy(update={"database_url": database})
    return settings


def open_stores(
    database: str | None = None,
) -> tuple[SemaphoreSettings, Engine, HeartbeatStore, SemaphoreStore]:
    """Build engine plus both stores from settings."""
    settings = load_settings(database)
    engine = create_semaphore_engine(settings.database_url)
    hb_desc = settings.heartbeat_table_desc(dialect=engine.dialect.name)
    heartbeats = HeartbeatStore(engine, hb_desc)
    semaphores = SemaphoreStore(engine, settings.semaphore_tables_desc(), heartbeat_desc=hb_desc)
    return settings, engine, heartbeats, semaphores


def fail(exc: SemaphoreError) -> NoReturn:
    """Print a store error the way every command does, then exit 1."""
    err_console.print(f"[bold red]Error[/bold red] ({exc.category.value}): {exc.message}")
    raise typer.Exit(code=1)


# ── Output helpers ───────────────────────────────────────────────────────


def _to_dict(obj: Any) -> dict[str, Any]:
    """Convert dataclass or dict to plain dict."""
    if hasattr(obj, "__dataclass_fields__"):
        return asdict(obj)
    if isinstance(obj, dict):
        return obj
    return {"value": str(obj)}


def _jsonable(obj: Any) -> Any:
    """Recursively convert dataclasses nested in lists and dicts."""
    if isinstance(obj, list | tuple):
        return [_jsonable(o) for o in obj]
    if isinstance(obj, dict):
        return {k: _jsonable(v) for k, v in obj.items()}
    if hasattr(obj, "__dataclass_fields__"):
        return _to_dict(obj)
    return obj


def output(data: Any, *, as_json: bool = False, title: str = "") -> None:
    """Render a dataclass, dict or list of them to the terminal."""
    if as_json:
        console.print_json(json.dumps(_jsonable(data), default=str))
        return

    if isinstance(data, list):
        if not data:
            console.print(f"[dim]No {title.lower() or 'items'}.[/dim]")
            return
        print_table(data, title=title)
    else:
        print_dict(_to_dict(data), title=title)


def print_table(items: list, *, title: str = "") -> None:
    """Render a list of dataclasses/dicts as a Rich table."""
    first = _to_dict(items[0])
    table = Table(title=title or None, show_lines=False, pad_edge=False)
    for col in first:
        table.add_column(col, overflow="fold")
    for item in items:
        d = _to_dict(item)
        table.add_row(*(str(v) for v in d.values()))
    console.print(table)


def print_dict(data: dict[str, Any], *, title: str = "") -> None:
    """Render a single dict as key-value pairs."""
    if title:
        console.print(f"[bold]{title}[/bold]")
    for k, v in data.items():
        console.print(f"  [cyan]{k}[/cyan]: {v}")
