"""guildtrack schedules command - Manage scheduled guild refreshes."""

import asyncio
from pathlib import Path
from typing import Dict, List, Optional

import typer
from rich.console import Console
from rich.table import Table

from guildtrack.cli.context import run_with_schedule_service
from guildtrack.cli.error_handler import handle_errors
from guildtrack.database.models import ScheduledRefresh
from guildtrack.exceptions import ValidationError

app = typer.Typer(help="Manage scheduled guild tracker refreshes.")
console = Console()

STATUS_STYLES = {
    "PENDING": "yellow",
    "COMPLETED": "green",
    "CANCELLED": "dim",
    "FAILED": "red",
}

ConfigOption = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to configuration file.",
    exists=True,
    file_okay=True,
    dir_okay=False,
    resolve_path=True,
)


def _parse_metadata(items: List[str]) -> Dict[str, str]:
    metadata: Dict[str, str] = {}
    for item in items:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise ValidationError(f"Invalid metadata entry '{item}', expected key=value")
        metadata[key.strip()] = value.strip()
    return metadata


def _format_time(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S UTC") if value else "-"


def _styled_status(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def _print_schedule(schedule: ScheduledRefresh) -> None:
    console.print(f"  ID: {schedule.id}")
    console.print(f"  Guild: {schedule.guild_id}")
    console.print(f"  Scheduled at: {_format_time(schedule.scheduled_at)}")
    console.print(f"  Status: {_styled_status(schedule.status)}")
    console.print(f"  Created by: {schedule.created_by}")
    if schedule.executed_at:
        console.print(f"  Executed at: {_format_time(schedule.executed_at)}")
    if schedule.error_message:
        console.print(f"  Error: [red]{schedule.error_message}[/red]")
    if schedule.refresh_metadata:
        for key, value in schedule.refresh_metadata.items():
            console.print(f"  [dim]{key}:[/dim] {value}")


@app.command("create")
@handle_errors
def create_schedule(
    guild: str = typer.Option(..., "--guild", "-g", help="Guild ID to refresh."),
    at: str = typer.Option(
        ...,
        "--at",
        help="When to refresh, ISO-8601 (e.g. 2026-01-01T18:00:00Z). Naive times are UTC.",
    ),
    created_by: str = typer.Option(..., "--created-by", help="ID of the requesting user."),
    meta: Optional[List[str]] = typer.Option(
        None,
        "--meta",
        "-m",
        help="Metadata entry as key=value (repeatable).",
    ),
    config_file: Optional[Path] = ConfigOption,
) -> None:
    """Schedule a one-off refresh of a guild's trackers.

    Example:
        guildtrack schedules create --guild 1234 --at 2026-01-01T18:00:00Z --created-by 42
    """
    metadata = _parse_metadata(meta or [])

    schedule = asyncio.run(run_with_schedule_service(
        config_file,
        lambda service: service.create_schedule(
            guild_id=guild,
            scheduled_at=at,
            created_by=created_by,
            metadata=metadata,
        ),
    ))

    console.print(f"[green]✓[/green] Scheduled refresh created: {schedule.id}")
    _print_schedule(schedule)


@app.command("list")
@handle_errors
def list_schedules(
    guild: str = typer.Option(..., "--guild", "-g", help="Guild ID."),
    status: Optional[str] = typer.Option(
        None,
        "--status",
        "-s",
        help="Filter by status (pending, completed, cancelled, failed).",
    ),
    exclude_completed: bool = typer.Option(
        False,
        "--exclude-completed",
        help="Hide completed schedules (ignored when --status is given).",
    ),
    config_file: Optional[Path] = ConfigOption,
) -> None:
    """List a guild's scheduled refreshes.

    Example:
        guildtrack schedules list --guild 1234
        guildtrack schedules list --guild 1234 --status pending
    """
    schedules = asyncio.run(run_with_schedule_service(
        config_file,
        lambda service: service.list_for_guild(
            guild,
            status=status,
            include_completed=not exclude_completed,
        ),
    ))

    if not schedules:
        console.print(f"[dim]No scheduled refreshes for guild {guild}[/dim]")
        return

    table = Table(title=f"Scheduled Refreshes ({guild})")
    table.add_column("ID", style="cyan")
    table.add_column("Scheduled At", style="green")
    table.add_column("Status", style="bold")
    table.add_column("Created By", style="magenta")
    table.add_column("Executed At")
    table.add_column("Error")

    for schedule in schedules:
        table.add_row(
            schedule.id,
            _format_time(schedule.scheduled_at),
            _styled_status(schedule.status),
            schedule.created_by,
            _format_time(schedule.executed_at),
            schedule.error_message or "",
        )

    console.print(table)


@app.command("show")
@handle_errors
def show_schedule(
    schedule_id: str = typer.Argument(..., help="Scheduled refresh ID."),
    config_file: Optional[Path] = ConfigOption,
) -> None:
    """Show one scheduled refresh.

    Example:
        guildtrack schedules show 3f2c...
    """
    schedule = asyncio.run(run_with_schedule_service(
        config_file,
        lambda service: service.get_schedule(schedule_id),
    ))

    console.print("[bold]Scheduled Refresh[/bold]")
    _print_schedule(schedule)


@app.command("cancel")
@handle_errors
def cancel_schedule(
    schedule_id: str = typer.Argument(..., help="Scheduled refresh ID."),
    config_file: Optional[Path] = ConfigOption,
) -> None:
    """Cancel a pending scheduled refresh.

    Example:
        guildtrack schedules cancel 3f2c...
    """
    schedule = asyncio.run(run_with_schedule_service(
        config_file,
        lambda service: service.cancel_schedule(schedule_id),
    ))

    console.print(f"[green]✓[/green] Scheduled refresh cancelled: {schedule.id}")


@app.command("cleanup")
@handle_errors
def cleanup_schedules(
    days: Optional[int] = typer.Option(
        None,
        "--days",
        "-d",
        help="Delete finished schedules older than this many days (default from config).",
        min=0,
    ),
    config_file: Optional[Path] = ConfigOption,
) -> None:
    """Delete finished scheduled refreshes.

    Example:
        guildtrack schedules cleanup --days 7
    """
    deleted = asyncio.run(run_with_schedule_service(
        config_file,
        lambda service: service.cleanup_finished(days),
    ))

    console.print(f"[green]✓[/green] Deleted {deleted} finished scheduled refreshes")
