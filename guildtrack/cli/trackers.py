"""guildtrack trackers command - On-demand tracker refreshes."""

import asyncio
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from guildtrack.cli.context import load_cli_config, open_services
from guildtrack.cli.error_handler import handle_errors_async
from guildtrack.services.batch_processor import BatchResult

app = typer.Typer(help="Refresh trackers on demand.")
console = Console()


@handle_errors_async
async def _process(guild: Optional[str], config_file: Optional[Path]) -> BatchResult:
    config = load_cli_config(config_file)
    processor = open_services(config).batch_processor

    if guild is None:
        return await processor.process_all_pending()
    return await processor.process_pending_for_guild(guild)


@app.command("process")
def process_trackers(
    guild: Optional[str] = typer.Option(
        None,
        "--guild",
        "-g",
        help="Only refresh trackers of this guild's members.",
    ),
    config_file: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to configuration file.",
        exists=True,
        file_okay=True,
        dir_okay=False,
        resolve_path=True,
    ),
    show_ids: bool = typer.Option(
        False,
        "--show-ids",
        help="Print the IDs of the submitted trackers.",
    ),
) -> None:
    """Submit pending and stale trackers for scraping now.

    Example:
        guildtrack trackers process
        guildtrack trackers process --guild 1234 --show-ids
    """
    result = asyncio.run(_process(guild, config_file))

    scope = f"guild {guild}" if guild else "all guilds"
    if result.processed_count == 0:
        console.print(f"[dim]No trackers to refresh for {scope}[/dim]")
        return

    console.print(f"[green]✓[/green] Enqueued {result.processed_count} trackers for {scope}")
    if show_ids:
        for tracker_id in result.tracker_ids:
            console.print(f"  {tracker_id}")
