"""Wiring of the refresh services from configuration."""

from dataclasses import dataclass
from typing import Optional

from guildtrack.config import GuildtrackConfig, get_config
from guildtrack.exceptions import ConfigurationError
from guildtrack.scheduler.job_registry import TimedJobRegistry
from guildtrack.services.batch_processor import TrackerBatchProcessor
from guildtrack.services.eligibility import EligibilitySelector
from guildtrack.services.processing_guard import TrackerProcessingGuard
from guildtrack.services.schedule_service import ScheduledRefreshService
from guildtrack.services.scrape_queue import (
    BatchDispatcher,
    LeasedScrapeQueue,
    ScrapeQueue,
    load_dispatcher,
)


@dataclass
class RefreshServices:
    """The refresh components sharing one registry and queue."""

    registry: TimedJobRegistry
    queue: ScrapeQueue
    batch_processor: TrackerBatchProcessor
    schedule_service: ScheduledRefreshService


def create_services(
    config: Optional[GuildtrackConfig] = None,
    registry: Optional[TimedJobRegistry] = None,
    queue: Optional[ScrapeQueue] = None,
    dispatcher: Optional[BatchDispatcher] = None,
) -> RefreshServices:
    """Build the refresh services.

    Args:
        config: Configuration (uses global if not provided)
        registry: Timed job registry (a new, unstarted one if omitted)
        queue: Scrape queue (a LeasedScrapeQueue if omitted)
        dispatcher: Worker hand-off for the default queue (loaded from
            tracker.dispatcher when omitted)

    Returns:
        Wired services

    Raises:
        ConfigurationError: If the tracker section is missing or the
            configured dispatcher cannot be loaded
    """
    config = config or get_config()
    if config.tracker is None:
        raise ConfigurationError("Tracker configuration is missing")

    if queue is None and dispatcher is None and config.tracker.dispatcher:
        dispatcher = load_dispatcher(config.tracker.dispatcher)

    registry = registry or TimedJobRegistry(config.scheduler)
    queue = queue or LeasedScrapeQueue(
        lease_ttl_seconds=config.tracker.lease_ttl_seconds,
        dispatcher=dispatcher,
    )
    batch_processor = TrackerBatchProcessor(
        queue,
        config=config,
        selector=EligibilitySelector(),
        guard=TrackerProcessingGuard(),
    )
    schedule_service = ScheduledRefreshService(
        batch_processor,
        registry=registry,
        config=config,
    )

    return RefreshServices(
        registry=registry,
        queue=queue,
        batch_processor=batch_processor,
        schedule_service=schedule_service,
    )
