"""Main CLI entry point for guildtrack."""

import logging
import sys
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from guildtrack import __app_name__, __version__
from guildtrack.cli import config, run, schedules, trackers
from guildtrack.cli.exit_codes import ExitCode

# Create the main Typer app
app = typer.Typer(
    name=__app_name__,
    help="guildtrack - Scheduled tracker refreshes for Discord league guilds.",
    add_completion=True,
    no_args_is_help=True,
    rich_markup_mode="rich",
)

# Console for CLI output
console = Console()

# Register command groups
app.add_typer(schedules.app, name="schedules")
app.add_typer(trackers.app, name="trackers")
app.add_typer(run.app, name="run")
app.add_typer(config.app, name="config")


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"{__app_name__} v{__version__}")
        raise typer.Exit(code=ExitCode.SUCCESS)


def _setup_logging(
    verbose: bool = False,
    debug: bool = False,
    quiet: bool = False,
    log_file: Optional[Path] = None,
) -> None:
    """Set up logging configuration based on CLI options.

    Args:
        verbose: Enable INFO level logging
        debug: Enable DEBUG level logging
        quiet: Only report errors
        log_file: Optional log file path
    """
    if debug:
        level = logging.DEBUG
    elif verbose:
        level = logging.INFO
    elif quiet:
        level = logging.ERROR
    else:
        level = logging.WARNING

    if debug:
        format_str = "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
    else:
        format_str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    handlers: list[logging.Handler] = []

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)  # Always log debug to file
        handlers.append(file_handler)

    if not quiet:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level)
        handlers.append(console_handler)
    elif not log_file:
        handlers.append(logging.NullHandler())

    logging.basicConfig(
        level=level,
        format=format_str,
        handlers=handlers,
        force=True,
    )

    logger = logging.getLogger(__name__)
    logger.debug(f"Logging configured: level={logging.getLevelName(level)}, debug={debug}")


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-V",
        help="Enable verbose output (INFO level logging).",
    ),
    debug: bool = typer.Option(
        False,
        "--debug",
        help="Enable debug mode (DEBUG level logging).",
    ),
    quiet: bool = typer.Option(
        False,
        "--quiet",
        "-q",
        help="Suppress non-error output.",
    ),
    log_file: Optional[Path] = typer.Option(
        None,
        "--log-file",
        help="Log to file (logs DEBUG level regardless of console settings).",
    ),
) -> None:
    """guildtrack - Scheduled tracker refreshes for Discord league guilds.

    [bold]Commands:[/bold]

    • [cyan]schedules[/cyan] - Create, list and cancel scheduled guild refreshes
    • [cyan]trackers[/cyan] - Refresh pending and stale trackers now
    • [cyan]run[/cyan] - Start the scheduler daemon
    • [cyan]config[/cyan] - Inspect configuration

    [bold]Examples:[/bold]

        guildtrack schedules create --guild 1234 --at 2026-01-01T18:00:00Z --created-by 42
        guildtrack schedules list --guild 1234
        guildtrack trackers process --guild 1234
        guildtrack run
    """
    if quiet and (verbose or debug):
        console.print("[red]Error:[/red] --quiet cannot be combined with --verbose or --debug")
        raise typer.Exit(code=ExitCode.INVALID_ARGUMENT)

    _setup_logging(verbose=verbose, debug=debug, quiet=quiet, log_file=log_file)

    logger = logging.getLogger(__name__)
    logger.debug(f"guildtrack v{__version__} starting")


if __name__ == "__main__":
    app()
