"""Batch processing of trackers that are due for a refresh.

Composes the eligibility selector and the processing guard, then submits
whatever survives to the scrape queue as a single batch.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from guildtrack.config import GuildtrackConfig, get_config
from guildtrack.exceptions import ConfigurationError
from guildtrack.services.eligibility import EligibilitySelector
from guildtrack.services.processing_guard import TrackerProcessingGuard
from guildtrack.services.scrape_queue import ScrapeQueue

logger = logging.getLogger(__name__)


@dataclass
class BatchResult:
    """Outcome of one batch run.

    Attributes:
        processed_count: Number of trackers submitted to the queue
        tracker_ids: The submitted tracker ids, in selection order
    """

    processed_count: int = 0
    tracker_ids: List[str] = field(default_factory=list)

    @classmethod
    def empty(cls) -> "BatchResult":
        return cls()


class TrackerBatchProcessor:
    """Selects due trackers and submits them for scraping.

    The refresh interval is read once at construction. A missing tracker
    configuration section is fatal: without it there is no staleness
    cutoff to select against.
    """

    def __init__(
        self,
        queue: ScrapeQueue,
        config: Optional[GuildtrackConfig] = None,
        selector: Optional[EligibilitySelector] = None,
        guard: Optional[TrackerProcessingGuard] = None,
    ) -> None:
        """Initialize the batch processor.

        Args:
            queue: Scrape queue receiving the batches
            config: Configuration (uses global if not provided)
            selector: Eligibility selector
            guard: Processing guard

        Raises:
            ConfigurationError: If the tracker section is missing or the
                refresh interval is not positive
        """
        config = config or get_config()
        if config.tracker is None:
            raise ConfigurationError("Tracker configuration is missing")

        interval = config.tracker.refresh_interval_hours
        if interval is None or interval <= 0:
            raise ConfigurationError(
                "Tracker refresh interval must be positive",
                details={"refresh_interval_hours": interval},
            )

        self._refresh_interval_hours = float(interval)
        self._queue = queue
        self._selector = selector or EligibilitySelector()
        self._guard = guard or TrackerProcessingGuard()

    @property
    def refresh_interval_hours(self) -> float:
        return self._refresh_interval_hours

    async def process_all_pending(self) -> BatchResult:
        """Refresh due trackers across every guild."""
        candidates = self._selector.select_all(self._refresh_interval_hours)
        return await self._submit(candidates, scope="all guilds")

    async def process_pending_for_guild(self, guild_id: str) -> BatchResult:
        """Refresh due trackers owned by live members of one guild.

        Args:
            guild_id: Guild to refresh

        Returns:
            What was submitted
        """
        candidates = self._selector.select_for_guild(guild_id, self._refresh_interval_hours)
        return await self._submit(candidates, scope=f"guild {guild_id}")

    async def _submit(self, candidates: List[str], scope: str) -> BatchResult:
        if not candidates:
            logger.info(f"No pending or stale trackers to process for {scope}")
            return BatchResult.empty()

        processable = self._guard.filter_processable(candidates)
        if not processable:
            logger.info(
                f"Found {len(candidates)} trackers for {scope}, "
                f"but all are already being processed"
            )
            return BatchResult.empty()

        await self._queue.submit_batch(processable)

        logger.info(
            f"Enqueued {len(processable)} trackers for {scope} "
            f"({len(candidates) - len(processable)} skipped as in flight)"
        )
        return BatchResult(processed_count=len(processable), tracker_ids=list(processable))
