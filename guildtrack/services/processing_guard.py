"""Concurrency guard that keeps in-flight trackers out of new batches."""

import logging
from typing import List, Sequence

from guildtrack.database.connection import get_db_session
from guildtrack.database.models import utcnow
from guildtrack.database.repositories import ScrapeLeaseRepository
from guildtrack.services.eligibility import SessionFactory

logger = logging.getLogger(__name__)


class TrackerProcessingGuard:
    """Filters out trackers that hold an active scrape lease.

    The guard only reads leases. Leases are taken by the scrape queue
    when a batch is submitted.
    """

    def __init__(self, session_factory: SessionFactory = get_db_session) -> None:
        self._session_factory = session_factory

    def filter_processable(self, tracker_ids: Sequence[str]) -> List[str]:
        """
        Remove trackers that are already being processed.

        Args:
            tracker_ids: Candidate tracker ids

        Returns:
            The candidates without an active lease, in input order
        """
        if not tracker_ids:
            return []

        with self._session_factory() as session:
            leased = ScrapeLeaseRepository(session).get_active_tracker_ids(
                tracker_ids, now=utcnow()
            )

        processable = [tracker_id for tracker_id in tracker_ids if tracker_id not in leased]
        if leased:
            logger.info(
                f"Skipping {len(tracker_ids) - len(processable)} trackers with active leases"
            )
        return processable
