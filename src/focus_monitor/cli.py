"""Command-line interface for focus-monitor."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterator, Optional

import typer

from .config import StorageSettings
from .coordinator import CoordinatorStatus, StorageCoordinator
from .errors import MigrationError, StorageError
from .models import MigrationState
from .paths import get_log_path
from .runtime import build_coordinator

app = typer.Typer(help="Local-first focus and context-switch tracker.")
categories_app = typer.Typer(help="Inspect and edit categories.")
app.add_typer(categories_app, name="categories")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


@app.callback(no_args_is_help=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logs."),
    data_dir: Optional[Path] = typer.Option(
        None,
        "--data-dir",
        path_type=Path,
        help="Directory holding the event log, database and migration marker.",
    ),
    log_file: bool = typer.Option(
        False, "--log-file", help="Also write logs to a rotating file in the data directory."
    ),
    quick_seconds: float = typer.Option(
        10.0, "--quick-seconds", min=0.1, help="Switches shorter than this are quick."
    ),
    focused_seconds: float = typer.Option(
        120.0, "--focused-seconds", min=0.2, help="Switches at least this long are focused."
    ),
    idle_minutes: float = typer.Option(
        5.0, "--idle-minutes", min=0.5, help="Idle gap that starts a new session."
    ),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
    )
    if log_file:
        handler = RotatingFileHandler(
            get_log_path(data_dir), maxBytes=5_000_000, backupCount=3
        )
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(handler)

    try:
        settings = StorageSettings.from_options(
            quick_seconds=quick_seconds,
            focused_seconds=focused_seconds,
            idle_minutes=idle_minutes,
        )
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    ctx.obj = {"data_dir": data_dir, "settings": settings}


@contextmanager
def _coordinator(ctx: typer.Context, **overrides: object) -> Iterator[StorageCoordinator]:
    settings: StorageSettings = ctx.obj["settings"]
    for name, value in overrides.items():
        setattr(settings, name, value)
    coordinator = build_coordinator(settings, ctx.obj["data_dir"])
    try:
        yield coordinator
    finally:
        coordinator.close()


def _fail(message: str) -> None:
    typer.secho(message, fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1)


@app.command()
def status(ctx: typer.Context) -> None:
    """Show the active backend and migration state."""
    from .analytics import AnalyticsService
    from .reporting import SummaryPrinter

    with _coordinator(ctx) as coordinator:
        SummaryPrinter(coordinator, AnalyticsService(coordinator)).print_status()


@app.command()
def migrate(
    ctx: typer.Context,
    force: bool = typer.Option(
        False, "--force", help="Re-run even if the database already holds this event log."
    ),
    batch_size: int = typer.Option(500, "--batch-size", min=1, help="Records per transaction."),
) -> None:
    """Copy the JSON event log into SQLite and switch over to it."""
    with _coordinator(ctx, batch_size=batch_size) as coordinator:
        if not force and not coordinator.needs_migration():
            typer.echo(
                f"Nothing to migrate (backend {coordinator.current_storage_type.value}, "
                f"state {coordinator.migration_state.value})."
            )
            if coordinator.migration_state is MigrationState.FAILED:
                _fail("The last migration failed; run 'rollback' before retrying.")
            return

        def show(status: CoordinatorStatus) -> None:
            if status.migration_state is MigrationState.IN_PROGRESS:
                typer.echo(f"\rMigrating... {status.progress:6.1%}", nl=False)

        unsubscribe = coordinator.subscribe(show)
        try:
            state = coordinator.run_migration(force=force)
        finally:
            unsubscribe()
        typer.echo("")
        if state is not MigrationState.COMPLETED:
            _fail(f"Migration {state.value}: {coordinator.last_error or 'unknown error'}")
        if force and coordinator.last_error:
            _fail(f"Re-run stopped: {coordinator.last_error}")
        typer.secho(
            f"Migration completed; now using {coordinator.current_storage_type.value}.",
            fg=typer.colors.GREEN,
        )


@app.command()
def rollback(ctx: typer.Context) -> None:
    """Empty the SQLite tables after a failed migration."""
    with _coordinator(ctx) as coordinator:
        try:
            coordinator.rollback_migration()
        except MigrationError as exc:
            _fail(str(exc))
        typer.echo(f"Rolled back; migration state is {coordinator.migration_state.value}.")


@app.command()
def record(
    ctx: typer.Context,
    app_name: str = typer.Argument(..., help="Name of the application that became frontmost."),
    bundle_identifier: Optional[str] = typer.Option(None, "--bundle", help="Bundle identifier."),
    category: Optional[str] = typer.Option(None, "--category", help="Category name."),
    url: Optional[str] = typer.Option(None, "--url", help="Browser tab URL."),
    title: Optional[str] = typer.Option(None, "--title", help="Browser tab title."),
) -> None:
    """Record a single activation (useful for scripting and testing)."""
    from .collector import ActivityCollector

    with _coordinator(ctx) as coordinator:
        collector = ActivityCollector(coordinator, thresholds=coordinator.settings.thresholds)
        try:
            event = collector.record_activation(
                app_name,
                bundle_identifier,
                category_name=category,
                chrome_tab_url=url,
                chrome_tab_title=title,
            )
        except StorageError as exc:
            _fail(f"Could not record activation: {exc}")
        typer.echo(f"Recorded {event.id} ({event.category_name})")


@app.command()
def summary(
    ctx: typer.Context,
    date: Optional[str] = typer.Option(
        None,
        "--date",
        help="Date (YYYY-MM-DD) to summarize. Defaults to today.",
    ),
) -> None:
    """Print a high-level summary for a specific day."""
    from .analytics import AnalyticsService
    from .reporting import SummaryPrinter

    try:
        target = datetime.strptime(date, "%Y-%m-%d") if date else datetime.now()
    except ValueError as exc:
        raise typer.BadParameter("Use the YYYY-MM-DD format", param_hint="--date") from exc
    with _coordinator(ctx) as coordinator:
        SummaryPrinter(coordinator, AnalyticsService(coordinator)).print_daily_summary(target)


@categories_app.command("list")
def list_categories(ctx: typer.Context) -> None:
    """List default and custom categories."""
    with _coordinator(ctx) as coordinator:
        for category in coordinator.list_categories():
            marker = "default" if category.is_default else "custom"
            typer.echo(f"{category.name:<25} {marker:<8} {category.color_hex or ''}")


@categories_app.command("add")
def add_category(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Category name."),
    color_hex: Optional[str] = typer.Option(None, "--color", help="Display color, e.g. #336699."),
    description: Optional[str] = typer.Option(None, "--description"),
) -> None:
    """Create a custom category."""
    with _coordinator(ctx) as coordinator:
        try:
            reference = coordinator.add_category(
                name, color_hex=color_hex, description=description
            )
        except (ValueError, StorageError) as exc:
            _fail(str(exc))
        typer.echo(f"Added {reference.name} ({reference.id})")


@categories_app.command("delete")
def delete_category(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Category to delete."),
    fallback: str = typer.Option("Other", "--fallback", help="Category that inherits its events."),
) -> None:
    """Delete a custom category, moving its events to the fallback."""
    with _coordinator(ctx) as coordinator:
        try:
            moved = coordinator.delete_category(name, fallback)
        except (LookupError, ValueError, StorageError) as exc:
            _fail(str(exc))
        typer.echo(f"Deleted {name}; {moved} records moved to {fallback}.")


@categories_app.command("move")
def move_category(
    ctx: typer.Context,
    source: str = typer.Argument(..., help="Category whose records are moved."),
    target: str = typer.Argument(..., help="Category that receives them."),
) -> None:
    """Refile every event and switch from one category under another."""
    with _coordinator(ctx) as coordinator:
        try:
            moved = coordinator.reassign_category(source, target)
        except (ValueError, StorageError) as exc:
            _fail(str(exc))
        typer.echo(f"Moved {moved} records from {source} to {target}.")


@app.command()
def reset(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt."),
) -> None:
    """Delete all recorded activity from both stores."""
    if not yes:
        typer.confirm("Delete every recorded event and context switch?", abort=True)
    with _coordinator(ctx) as coordinator:
        try:
            coordinator.reset_data()
        except StorageError as exc:
            _fail(str(exc))
        typer.echo(f"All activity deleted; now using {coordinator.current_storage_type.value}.")


@app.command()
def web(
    ctx: typer.Context,
    host: str = typer.Option("127.0.0.1", "--host", help="Interface to bind the API."),
    port: int = typer.Option(
        8765, "--port", min=1, max=65535, help="TCP port for the API."
    ),
    open_browser: bool = typer.Option(
        False,
        "--open-browser/--no-open-browser",
        help="Open the interactive API docs in your default browser.",
    ),
) -> None:
    """Serve the HTTP API for a UI or an out-of-process focus observer."""
    from .server_runner import run_api_server

    run_api_server(
        host=host,
        port=port,
        data_dir=ctx.obj["data_dir"],
        settings=ctx.obj["settings"],
        open_browser=open_browser,
    )
