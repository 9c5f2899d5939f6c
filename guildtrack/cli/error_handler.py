"""Global exception handling for the guildtrack CLI.

Decorators that turn GuildtrackError (and database failures) into a
readable message on stderr and the matching exit code.
"""

from functools import wraps
from typing import Any, Callable, NoReturn, TypeVar
import logging

import typer
from rich.console import Console
from sqlalchemy.exc import SQLAlchemyError

from guildtrack.cli.exit_codes import ExitCode
from guildtrack.exceptions import GuildtrackError

# Console for error output (stderr)
console = Console(stderr=True)

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


def _exit_for(error: BaseException) -> NoReturn:
    """Report an error and raise the matching typer.Exit."""
    if isinstance(error, GuildtrackError):
        logger.error(
            f"{type(error).__name__}: {error.message}",
            extra={"exit_code": error.exit_code, "details": error.details},
        )
        console.print(f"[red]Error:[/red] {error.message}")
        for key, value in error.details.items():
            console.print(f"  [dim]{key}:[/dim] {value}")
        raise typer.Exit(code=error.exit_code)

    if isinstance(error, SQLAlchemyError):
        logger.exception("Database error")
        console.print(f"[red]Database error:[/red] {error}")
        raise typer.Exit(code=ExitCode.STORAGE_ERROR)

    if isinstance(error, KeyboardInterrupt):
        console.print("\n[yellow]Operation cancelled by user.[/yellow]")
        logger.info("Operation cancelled by user (KeyboardInterrupt)")
        raise typer.Exit(code=ExitCode.CANCELLED)

    logger.exception("Unexpected error occurred")
    console.print(f"[red]Unexpected error:[/red] {error}")
    console.print("[dim]Run with --verbose for more details[/dim]")
    raise typer.Exit(code=ExitCode.GENERAL_ERROR)


def handle_errors(func: F) -> F:
    """Decorator for consistent error handling across CLI commands.

    Example:
        @app.command()
        @handle_errors
        def cancel(schedule_id: str):
            ...
    """
    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except typer.Exit:
            raise
        except (Exception, KeyboardInterrupt) as e:
            _exit_for(e)

    return wrapper  # type: ignore[return-value]


def handle_errors_async(func: F) -> F:
    """Variant of handle_errors for coroutine functions."""
    @wraps(func)
    async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return await func(*args, **kwargs)
        except typer.Exit:
            raise
        except (Exception, KeyboardInterrupt) as e:
            _exit_for(e)

    return async_wrapper  # type: ignore[return-value]
