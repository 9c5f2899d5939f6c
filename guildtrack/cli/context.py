"""Shared setup for CLI commands that touch the database."""

from pathlib import Path
from typing import Awaitable, Callable, Optional, TypeVar

from guildtrack.config import GuildtrackConfig, get_config, load_config, set_config
from guildtrack.database.connection import create_tables
from guildtrack.services.factory import RefreshServices, create_services
from guildtrack.services.schedule_service import ScheduledRefreshService

T = TypeVar("T")


def load_cli_config(config_file: Optional[Path] = None) -> GuildtrackConfig:
    """Load configuration for a command and make it the global one."""
    if config_file is None:
        return get_config()

    config = load_config(config_file)
    set_config(config)
    return config


def open_services(config: GuildtrackConfig) -> RefreshServices:
    """Make sure the schema exists and wire the refresh services."""
    create_tables(config)
    return create_services(config)


async def run_with_schedule_service(
    config_file: Optional[Path],
    operation: Callable[[ScheduledRefreshService], Awaitable[T]],
) -> T:
    """Run one operation against a short-lived schedule service.

    The registry is never started here: schedules created from the CLI
    are picked up by the running daemon on its next sync. Overdue rows
    are left for the daemon to fire or fail.
    """
    config = load_cli_config(config_file)
    service = open_services(config).schedule_service
    await service.load_pending_on_startup(apply_missed_policy=False)
    try:
        return await operation(service)
    finally:
        service.shutdown()
