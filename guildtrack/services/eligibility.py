"""Eligibility selection for tracker refreshes.

Decides which trackers need a scrape: pending ones, never-scraped ones
and ones whose last scrape is older than the refresh interval. Trackers
already IN_PROGRESS are never selected.
"""

import logging
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from guildtrack.database.connection import get_db_session
from guildtrack.database.models import utcnow
from guildtrack.database.repositories import TrackerRepository

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractContextManager[Session]]


class EligibilitySelector:
    """Selects tracker ids that are due for a refresh."""

    def __init__(self, session_factory: SessionFactory = get_db_session) -> None:
        self._session_factory = session_factory

    def select_for_guild(
        self,
        guild_id: str,
        refresh_interval_hours: float,
        now: Optional[datetime] = None,
    ) -> List[str]:
        """
        Select eligible trackers owned by live members of a guild.

        Args:
            guild_id: Guild whose members' trackers are considered
            refresh_interval_hours: Staleness threshold in hours
            now: Reference time, computed once per call when omitted

        Returns:
            Tracker ids ordered by tracker creation time
        """
        now = now or utcnow()
        with self._session_factory() as session:
            tracker_ids = TrackerRepository(session).find_pending_and_stale(
                refresh_interval_hours, guild_id=guild_id, now=now
            )

        logger.debug(f"Guild {guild_id}: {len(tracker_ids)} trackers eligible for refresh")
        return tracker_ids

    def select_all(
        self,
        refresh_interval_hours: float,
        now: Optional[datetime] = None,
    ) -> List[str]:
        """Select eligible trackers across every guild."""
        now = now or utcnow()
        with self._session_factory() as session:
            tracker_ids = TrackerRepository(session).find_pending_and_stale(
                refresh_interval_hours, now=now
            )

        logger.debug(f"{len(tracker_ids)} trackers eligible for refresh")
        return tracker_ids
