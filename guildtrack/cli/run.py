"""guildtrack run command - Start the scheduler daemon."""

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from guildtrack.cli.error_handler import handle_errors
from guildtrack.cli.exit_codes import ExitCode
from guildtrack.config import GuildtrackConfig, load_config, set_config, validate_config
from guildtrack.daemon.service import run_daemon

app = typer.Typer(help="Start the guildtrack scheduler daemon.")
console = Console()


def _setup_logging(
    config: GuildtrackConfig,
    verbose: bool,
    log_file: Optional[Path] = None,
) -> None:
    """Set up daemon logging from config, overridden by command options.

    Args:
        config: Guildtrack configuration
        verbose: Enable verbose (DEBUG) logging
        log_file: Optional log file path
    """
    level = logging.DEBUG if verbose else getattr(logging, config.logging.level.upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler()]

    log_file = log_file or config.logging.file
    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format=config.logging.format,
        handlers=handlers,
        force=True,
    )


@app.callback(invoke_without_command=True)
@handle_errors
def run(
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
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose logging.",
    ),
    log_file: Optional[Path] = typer.Option(
        None,
        "--log-file",
        help="Also write logs to this file.",
    ),
) -> None:
    """Start the scheduler daemon in the foreground.

    The daemon restores pending scheduled refreshes, fires them at their
    scheduled time and picks up schedules created from other processes.
    Stop it with Ctrl+C or SIGTERM.

    Example:
        guildtrack run
        guildtrack run --config config.toml --verbose
    """
    config = load_config(config_file)
    set_config(config)

    issues = validate_config(config)
    errors = [issue for issue in issues if issue.severity == "error"]
    if errors:
        console.print("[red]Error: Configuration is invalid[/red]")
        for issue in errors:
            console.print(f"  [red]✗[/red] {issue.field}: {issue.message}")
        raise typer.Exit(code=ExitCode.CONFIGURATION_ERROR)

    console.print("[bold green]Starting guildtrack daemon...[/bold green]")
    if verbose:
        console.print(f"Config: {config_file or 'default'}")
        console.print(f"Database: {config.database_url}")
        console.print(f"Sync interval: {config.scheduler.check_interval}s")

    _setup_logging(config, verbose, log_file)

    try:
        asyncio.run(run_daemon(config))
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
