"""Shared fixtures: an in-memory database per test and row factories."""

from datetime import datetime
from typing import Callable, Optional

import pytest

from guildtrack.config import GuildtrackConfig, clear_config_cache, set_config
from guildtrack.database.connection import create_tables, dispose_engine, get_db_session
from guildtrack.database.models import Guild, ScheduledRefreshStatus
from guildtrack.database.repositories import (
    GuildRepository,
    ScheduledRefreshRepository,
    TrackerRepository,
)

GUILD_ID = "1001"


@pytest.fixture
def config(tmp_path) -> GuildtrackConfig:
    """Configuration pointing at a private in-memory database."""
    return GuildtrackConfig(
        config_dir=tmp_path / "config",
        data_dir=tmp_path / "data",
        database_url="sqlite://",
    )


@pytest.fixture
def db(config: GuildtrackConfig):
    """Install the config globally and create the schema."""
    clear_config_cache()
    dispose_engine()
    set_config(config)
    create_tables(config)
    yield config
    dispose_engine()
    clear_config_cache()


@pytest.fixture
def guild(db) -> Guild:
    with get_db_session() as session:
        return GuildRepository(session).create(GUILD_ID, "Test League")


@pytest.fixture
def add_member(guild) -> Callable[..., None]:
    """Add a user to the test guild."""

    def _add(user_id: str, guild_id: str = GUILD_ID, **kwargs) -> None:
        with get_db_session() as session:
            GuildRepository(session).add_member(guild_id, user_id, **kwargs)

    return _add


@pytest.fixture
def make_tracker(db) -> Callable[..., str]:
    """Create a tracker and return its ID."""

    def _make(user_id: str = "user-1", **kwargs) -> str:
        with get_db_session() as session:
            return TrackerRepository(session).create(user_id=user_id, **kwargs).id

    return _make


@pytest.fixture
def make_schedule(guild) -> Callable[..., str]:
    """Insert a scheduled refresh row directly and return its ID."""

    def _make(
        scheduled_at: datetime,
        status: ScheduledRefreshStatus = ScheduledRefreshStatus.PENDING,
        guild_id: str = GUILD_ID,
        updated_at: Optional[datetime] = None,
    ) -> str:
        values = {
            "guild_id": guild_id,
            "scheduled_at": scheduled_at,
            "status": status.value,
            "created_by": "admin-1",
        }
        if updated_at is not None:
            values["updated_at"] = updated_at
        with get_db_session() as session:
            return ScheduledRefreshRepository(session).create(**values).id

    return _make


@pytest.fixture
def fetch_schedule(db) -> Callable[[str], object]:
    """Re-read a scheduled refresh from the database."""

    def _fetch(schedule_id: str):
        with get_db_session() as session:
            return ScheduledRefreshRepository(session).get_by_id(schedule_id)

    return _fetch
