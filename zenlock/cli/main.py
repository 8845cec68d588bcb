"""
CLI interface for ZenLock.

Provides command-line access to the usage store and quota state.
"""

import logging
import sys
from datetime import datetime
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from zenlock.config.loader import Settings, load_settings_from_env
from zenlock.core.aggregation import format_duration
from zenlock.core.days import MS_PER_MINUTE, previous_month, to_millis
from zenlock.core.errors import ZenLockError
from zenlock.core.quota import QuotaStatus
from zenlock.core.service import UsageService

app = typer.Typer()
console = Console()

EXIT_CODE_OK = 0
EXIT_CODE_FAIL = 1

# Width of the longest bar in the usage chart
CHART_WIDTH = 40


def _configure_logging(verbose: bool) -> None:
    logger = logging.getLogger("zenlock")
    if verbose:
        if not any(isinstance(h, RichHandler) for h in logger.handlers):
            logger.addHandler(RichHandler(console=Console(stderr=True), show_path=False))
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(logging.ERROR)


def _open_service(ctx: typer.Context) -> UsageService:
    settings: Settings = ctx.obj["settings"]
    return UsageService(db_path=ctx.obj["db_path"], settings=settings)


def _parse_moment(value: Optional[str], service: UsageService) -> Optional[int]:
    """Parse an ISO-8601 moment; naive values are read in the configured zone."""
    if value is None:
        return None
    try:
        moment = datetime.fromisoformat(value)
    except ValueError:
        raise typer.BadParameter(f"Not an ISO-8601 date/time: {value}")
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=service.tz)
    return to_millis(moment)


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {message}")
    sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: Optional[str] = typer.Option(None, "--db", help="SQLite database file"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="YAML configuration file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging")
):
    """ZenLock usage CLI."""
    _configure_logging(verbose)
    try:
        settings = load_settings_from_env(config)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        _fail(f"Invalid configuration: {e}")
    ctx.obj = {"settings": settings, "db_path": db or settings.storage.db_path}
    if ctx.invoked_subcommand is None:
        console.print("ZenLock - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the database and apply limits from the configuration."""
    try:
        with _open_service(ctx) as service:
            for app_identifier, limit in ctx.obj["settings"].limits.items():
                service.set_limit(app_identifier, limit.daily_limit_ms, limit.enabled)
            applied = len(ctx.obj["settings"].limits)
    except ZenLockError as e:
        _fail(f"Error initializing database: {e}")
    console.print(f"[green]✓[/] Database initialized ({applied} limits applied)")
    sys.exit(EXIT_CODE_OK)


@app.command()
def start(
    ctx: typer.Context,
    app_identifier: str = typer.Argument(..., help="App that came to the foreground"),
    at: Optional[str] = typer.Option(None, "--at", help="Start time (ISO-8601), default now")
):
    """Record the start of an app session."""
    try:
        with _open_service(ctx) as service:
            session_id = service.record_session_start(app_identifier, _parse_moment(at, service))
    except (ZenLockError, ValueError) as e:
        _fail(str(e))
    console.print(f"[green]✓[/] Session {session_id} started for {app_identifier}")
    sys.exit(EXIT_CODE_OK)


@app.command()
def end(
    ctx: typer.Context,
    session_id: int = typer.Argument(..., help="Session id printed by 'start'"),
    at: Optional[str] = typer.Option(None, "--at", help="End time (ISO-8601), default now")
):
    """Record the end of an app session."""
    try:
        with _open_service(ctx) as service:
            closed = service.record_session_end(session_id, _parse_moment(at, service))
            status = service.get_quota_status(closed.app_identifier)
    except ZenLockError as e:
        _fail(str(e))
    console.print(
        f"[green]✓[/] Session {session_id} closed "
        f"({format_duration(closed.duration_ms)} of {closed.app_identifier})"
    )
    if status is not None and status.is_exceeded:
        console.print(f"[bold red]Daily limit reached for {closed.app_identifier}[/]")
    sys.exit(EXIT_CODE_OK)


@app.command()
def limit(
    ctx: typer.Context,
    app_identifier: str = typer.Argument(..., help="App to limit"),
    minutes: float = typer.Option(..., "--minutes", "-m", help="Daily allowance in minutes"),
    disable: bool = typer.Option(False, "--disable", help="Store the limit but do not enforce it")
):
    """Set the daily limit of an app."""
    if minutes < 0:
        _fail("--minutes cannot be negative")
    try:
        with _open_service(ctx) as service:
            status = service.set_limit(app_identifier, int(round(minutes * MS_PER_MINUTE)), not disable)
    except (ZenLockError, ValueError) as e:
        _fail(str(e))
    state = "disabled" if disable else "enabled"
    console.print(
        f"[green]✓[/] Limit for {app_identifier}: {format_duration(status.limit_ms)} ({state})"
    )
    sys.exit(EXIT_CODE_OK)


@app.command()
def status(
    ctx: typer.Context,
    app_identifier: Optional[str] = typer.Argument(None, help="Only show this app")
):
    """Show today's quota status."""
    try:
        with _open_service(ctx) as service:
            if app_identifier is None:
                statuses = list(service.get_all_quota_statuses().values())
            else:
                single = service.get_quota_status(app_identifier)
                statuses = [single] if single is not None else []
    except ZenLockError as e:
        _fail(str(e))

    if not statuses:
        console.print("[dim]No limits configured.[/]")
        sys.exit(EXIT_CODE_OK)

    _display_statuses(sorted(statuses, key=lambda s: s.app_identifier))
    sys.exit(EXIT_CODE_OK)


@app.command()
def usage(
    ctx: typer.Context,
    app_identifier: str = typer.Argument(..., help="App to chart"),
    days: int = typer.Option(7, "--days", "-d", help="Number of days to show")
):
    """Chart daily usage of an app."""
    if days <= 0:
        _fail("--days must be > 0")
    try:
        with _open_service(ctx) as service:
            history = service.get_usage_history(app_identifier, days)
    except ZenLockError as e:
        _fail(str(e))

    console.print(f"\n[bold]Daily usage: {app_identifier}[/bold]")
    console.print("-" * 40)
    peak = max(d.total_used_ms for d in history)
    for aggregate in history:
        width = round(aggregate.total_used_ms / peak * CHART_WIDTH) if peak else 0
        console.print(
            f"{aggregate.day.isoformat()}  [cyan]{'█' * width}[/] "
            f"{format_duration(aggregate.total_used_ms)}"
        )
    sys.exit(EXIT_CODE_OK)


@app.command()
def week(
    ctx: typer.Context,
    app_identifier: str = typer.Argument(..., help="App to summarize")
):
    """Summarize this week's usage of an app."""
    try:
        with _open_service(ctx) as service:
            weekly = service.get_weekly_usage(app_identifier)
    except ZenLockError as e:
        _fail(str(e))

    console.print(f"\n[bold]Week of {weekly.week_start.isoformat()}: {app_identifier}[/bold]")
    console.print(f"Total: {format_duration(weekly.total_used_ms)}")
    busiest = weekly.busiest_day
    if busiest is not None:
        console.print(
            f"Busiest day: {busiest.day.strftime('%A')} ({format_duration(busiest.total_used_ms)})"
        )
    sys.exit(EXIT_CODE_OK)


@app.command()
def month(
    ctx: typer.Context,
    app_identifier: str = typer.Argument(..., help="App to summarize"),
    previous: bool = typer.Option(False, "--previous", help="Summarize last month instead")
):
    """Summarize a month's usage of an app."""
    try:
        with _open_service(ctx) as service:
            day = previous_month(service.today()) if previous else None
            monthly = service.get_monthly_usage(app_identifier, day)
    except ZenLockError as e:
        _fail(str(e))

    console.print(f"\n[bold]Month {monthly.month_key}: {app_identifier}[/bold]")
    console.print(f"Total: {format_duration(monthly.total_used_ms)}")
    console.print(f"Sessions: {monthly.session_count}")
    console.print(f"Active days: {monthly.active_days} of {len(monthly.days)}")
    console.print(f"Daily average: {format_duration(monthly.average_daily_ms)}")
    busiest = monthly.busiest_day
    if busiest is not None:
        console.print(
            f"Busiest day: {busiest.day.isoformat()} ({format_duration(busiest.total_used_ms)})"
        )
    sys.exit(EXIT_CODE_OK)


@app.command()
def purge(ctx: typer.Context):
    """Delete sessions older than the retention period."""
    try:
        with _open_service(ctx) as service:
            deleted = service.purge_expired()
    except ZenLockError as e:
        _fail(str(e))
    console.print(f"[green]✓[/] Purged {deleted} sessions")
    sys.exit(EXIT_CODE_OK)


def _display_statuses(statuses) -> None:
    """Display quota statuses as a table."""
    table = Table(title="Quota status")
    table.add_column("App")
    table.add_column("Used", justify="right")
    table.add_column("Limit", justify="right")
    table.add_column("Remaining", justify="right")
    table.add_column("State")
    for s in statuses:
        table.add_row(
            s.app_identifier,
            format_duration(s.used_ms),
            format_duration(s.limit_ms),
            format_duration(s.remaining_ms),
            _state_label(s)
        )
    console.print(table)


def _state_label(status: QuotaStatus) -> str:
    if not status.enabled:
        return "[dim]disabled[/]"
    if status.is_exceeded:
        return "[red]EXCEEDED[/]"
    return "[green]ok[/]"


if __name__ == "__main__":
    app()
