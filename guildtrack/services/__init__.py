"""Tracker refresh services.

Eligibility selection, the processing guard, batch submission to the
scrape queue and the scheduled refresh orchestrator.
"""

from guildtrack.services.batch_processor import BatchResult, TrackerBatchProcessor
from guildtrack.services.eligibility import EligibilitySelector
from guildtrack.services.processing_guard import TrackerProcessingGuard
from guildtrack.services.schedule_service import RefreshExecution, ScheduledRefreshService
from guildtrack.services.scrape_queue import LeasedScrapeQueue, ScrapeQueue

__all__ = [
    "BatchResult",
    "EligibilitySelector",
    "LeasedScrapeQueue",
    "RefreshExecution",
    "ScheduledRefreshService",
    "ScrapeQueue",
    "TrackerBatchProcessor",
    "TrackerProcessingGuard",
]
