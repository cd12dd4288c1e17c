"""Command-line interface for the task timer."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import timedelta
from pathlib import Path
from typing import Optional

import typer

from .config import EngineSettings
from .paths import get_config_path, get_db_path, get_log_path
from .server_runner import run_dashboard

app = typer.Typer(help="Task timer with idle-aware automatic pausing.")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


@app.callback(no_args_is_help=True)
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logs.")) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
    )


def _resolve_settings(
    config_path: Optional[Path],
    idle_minutes: Optional[float],
    check_seconds: Optional[float],
) -> EngineSettings:
    settings = EngineSettings.load(config_path or get_config_path())
    if idle_minutes is not None:
        settings.idle = replace(settings.idle, idle_threshold=timedelta(minutes=idle_minutes))
    if check_seconds is not None:
        settings.idle = replace(settings.idle, check_interval=timedelta(seconds=check_seconds))
    return settings


@app.command()
def add(
    title: str = typer.Argument(..., help="Task title."),
    estimate: str = typer.Option(
        "00:00:00", "--estimate", "-e", help="Estimated time as HH:MM:SS."
    ),
    db_path: Optional[Path] = typer.Option(
        None, "--db", path_type=Path, help="Location of the task SQLite database."
    ),
) -> None:
    """Create a new task."""
    from .db import TaskStore

    try:
        task = TaskStore(db_path or get_db_path()).create_task(title, estimate)
    except ValueError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    typer.echo(f"Created task {task.id}: {task.title} (estimate {task.estimated_time})")


@app.command()
def summary(
    completed: bool = typer.Option(
        False, "--completed", help="Also list completed tasks."
    ),
    db_path: Optional[Path] = typer.Option(
        None, "--db", path_type=Path, help="Location of the task SQLite database."
    ),
) -> None:
    """Print tracked versus estimated time for every task."""
    from .reporting import SummaryPrinter

    SummaryPrinter(db_path=db_path or get_db_path()).print_summary(include_completed=completed)


@app.command()
def track(
    task_id: int = typer.Argument(..., help="Id of the task to time."),
    db_path: Optional[Path] = typer.Option(
        None, "--db", path_type=Path, help="Location of the task SQLite database."
    ),
    config_path: Optional[Path] = typer.Option(
        None, "--config", path_type=Path, help="Engine settings TOML file."
    ),
    idle_minutes: Optional[float] = typer.Option(
        None,
        "--idle-threshold",
        min=0.5,
        help="Minutes of inactivity before the task is paused.",
    ),
    check_seconds: Optional[float] = typer.Option(
        None, "--check-interval", min=0.1, help="Idle polling interval in seconds."
    ),
    log_file: bool = typer.Option(
        True, "--log-file/--no-log-file", help="Also write logs to the data directory."
    ),
) -> None:
    """Time a task in the foreground until interrupted."""
    from .db import TaskNotFound, TaskStore
    from .engine import TrackingEngine

    if log_file:
        handler = logging.FileHandler(get_log_path(), encoding="utf-8")
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(handler)

    settings = _resolve_settings(config_path, idle_minutes, check_seconds)
    engine = TrackingEngine(TaskStore(db_path or get_db_path()), settings)

    async def run() -> None:
        engine.start()
        try:
            if not await engine.start_task(task_id):
                raise typer.Exit(code=1)
            typer.echo(f"Tracking task {task_id}. Press Ctrl+C to stop.")
            await asyncio.Event().wait()
        finally:
            await engine.stop()

    try:
        asyncio.run(run())
    except TaskNotFound as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    except KeyboardInterrupt:
        typer.echo("Stopped.")


@app.command()
def idle() -> None:
    """Print the current system idle time."""
    from .idle_sources import IdleSourceUnavailable, system_idle_source
    from .time_codec import format_duration

    try:
        source = system_idle_source()
    except IdleSourceUnavailable as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    idle_ms = asyncio.run(source())
    typer.echo(f"Idle for {format_duration(idle_ms / 1000)} ({idle_ms} ms)")


@app.command()
def web(
    host: str = typer.Option("127.0.0.1", "--host", help="Interface to bind the API."),
    port: int = typer.Option(
        8765, "--port", min=1, max=65535, help="TCP port for the API."
    ),
    db_path: Optional[Path] = typer.Option(
        None, "--db", path_type=Path, help="Location of the task SQLite database."
    ),
    config_path: Optional[Path] = typer.Option(
        None, "--config", path_type=Path, help="Engine settings TOML file."
    ),
    idle_minutes: Optional[float] = typer.Option(
        None,
        "--idle-threshold",
        min=0.5,
        help="Minutes of inactivity before the task is paused.",
    ),
    check_seconds: Optional[float] = typer.Option(
        None, "--check-interval", min=0.1, help="Idle polling interval in seconds."
    ),
    open_browser: bool = typer.Option(
        False,
        "--open-browser/--no-open-browser",
        help="Open the interactive API docs in your default browser.",
    ),
) -> None:
    """Serve the JSON API with the tracking engine running in the background."""
    run_dashboard(
        host=host,
        port=port,
        db_path=db_path or get_db_path(),
        settings=_resolve_settings(config_path, idle_minutes, check_seconds),
        open_browser=open_browser,
    )
