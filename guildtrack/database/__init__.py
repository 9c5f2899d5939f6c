"""Persistence layer: SQLAlchemy models, repositories and session handling."""

from guildtrack.database.connection import create_tables, get_db_session, init_engine
from guildtrack.database.models import (
    Base,
    Guild,
    GuildMember,
    ScheduledRefresh,
    ScheduledRefreshStatus,
    ScrapeLease,
    Tracker,
    TrackerScrapingStatus,
)

__all__ = [
    "Base",
    "Guild",
    "GuildMember",
    "ScheduledRefresh",
    "ScheduledRefreshStatus",
    "ScrapeLease",
    "Tracker",
    "TrackerScrapingStatus",
    "create_tables",
    "get_db_session",
    "init_engine",
]
