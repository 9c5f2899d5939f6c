"""Tests for the tracker batch processor."""

from datetime import timedelta
from unittest.mock import AsyncMock, Mock

import pytest

from guildtrack.config import GuildtrackConfig, TrackerConfig
from guildtrack.database.models import TrackerScrapingStatus, utcnow
from guildtrack.exceptions import ConfigurationError
from guildtrack.services.batch_processor import BatchResult, TrackerBatchProcessor
from guildtrack.services.eligibility import EligibilitySelector
from guildtrack.services.processing_guard import TrackerProcessingGuard
from guildtrack.services.scrape_queue import ScrapeQueue


@pytest.fixture
def queue() -> Mock:
    queue = Mock(spec=ScrapeQueue)
    queue.submit_batch = AsyncMock()
    return queue


@pytest.fixture
def selector() -> Mock:
    return Mock(spec=EligibilitySelector)


@pytest.fixture
def guard() -> Mock:
    guard = Mock(spec=TrackerProcessingGuard)
    guard.filter_processable.side_effect = lambda ids: list(ids)
    return guard


@pytest.fixture
def processor(queue, selector, guard) -> TrackerBatchProcessor:
    return TrackerBatchProcessor(queue, config=GuildtrackConfig(), selector=selector, guard=guard)


class TestConstruction:
    """Tests for configuration handling."""

    def test_missing_tracker_config_is_fatal(self, queue) -> None:
        config = GuildtrackConfig(tracker=None)

        with pytest.raises(ConfigurationError, match="missing"):
            TrackerBatchProcessor(queue, config=config)

    @pytest.mark.parametrize("interval", [0, -1])
    def test_non_positive_interval_rejected(self, queue, interval) -> None:
        config = GuildtrackConfig(tracker=TrackerConfig(refresh_interval_hours=interval))

        with pytest.raises(ConfigurationError):
            TrackerBatchProcessor(queue, config=config)

    def test_interval_resolved_once(self, queue, selector, guard) -> None:
        config = GuildtrackConfig(tracker=TrackerConfig(refresh_interval_hours=6))
        processor = TrackerBatchProcessor(queue, config=config, selector=selector, guard=guard)

        config.tracker.refresh_interval_hours = 48

        assert processor.refresh_interval_hours == 6


class TestProcessing:
    """Tests for the select-guard-submit pipeline with mocked collaborators."""

    @pytest.mark.asyncio
    async def test_process_pending_for_guild(self, processor, queue, selector, guard) -> None:
        selector.select_for_guild.return_value = ["a", "b", "c"]
        guard.filter_processable.side_effect = None
        guard.filter_processable.return_value = ["a", "c"]

        result = await processor.process_pending_for_guild("1001")

        selector.select_for_guild.assert_called_once_with("1001", 24.0)
        guard.filter_processable.assert_called_once_with(["a", "b", "c"])
        queue.submit_batch.assert_awaited_once_with(["a", "c"])
        assert result == BatchResult(processed_count=2, tracker_ids=["a", "c"])

    @pytest.mark.asyncio
    async def test_process_all_pending(self, processor, queue, selector) -> None:
        selector.select_all.return_value = ["a"]

        result = await processor.process_all_pending()

        selector.select_all.assert_called_once_with(24.0)
        queue.submit_batch.assert_awaited_once_with(["a"])
        assert result.processed_count == 1

    @pytest.mark.asyncio
    async def test_no_candidates_skips_submission(self, processor, queue, selector, guard) -> None:
        selector.select_for_guild.return_value = []

        result = await processor.process_pending_for_guild("1001")

        assert result == BatchResult(processed_count=0, tracker_ids=[])
        guard.filter_processable.assert_not_called()
        queue.submit_batch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_all_guarded_skips_submission(self, processor, queue, selector, guard) -> None:
        selector.select_all.return_value = ["a", "b"]
        guard.filter_processable.side_effect = None
        guard.filter_processable.return_value = []

        result = await processor.process_all_pending()

        assert result.processed_count == 0
        queue.submit_batch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_queue_failure_propagates(self, processor, queue, selector) -> None:
        selector.select_for_guild.return_value = ["a"]
        queue.submit_batch.side_effect = RuntimeError("queue down")

        with pytest.raises(RuntimeError, match="queue down"):
            await processor.process_pending_for_guild("1001")


class TestWithDatabase:
    """Tests against a real database."""

    @pytest.mark.asyncio
    async def test_guild_scenario(self, db, add_member, make_tracker, queue) -> None:
        now = utcnow()
        add_member("user-1")
        pending = make_tracker(scraping_status=TrackerScrapingStatus.PENDING.value)
        never_scraped = make_tracker(
            scraping_status=TrackerScrapingStatus.COMPLETED.value,
            last_scraped_at=None,
        )
        stale = make_tracker(
            scraping_status=TrackerScrapingStatus.COMPLETED.value,
            last_scraped_at=now - timedelta(hours=25),
        )
        in_progress = make_tracker(scraping_status=TrackerScrapingStatus.IN_PROGRESS.value)

        processor = TrackerBatchProcessor(queue, config=db)
        result = await processor.process_pending_for_guild("1001")

        assert set(result.tracker_ids) == {pending, never_scraped, stale}
        assert in_progress not in result.tracker_ids
        assert result.processed_count == 3
        queue.submit_batch.assert_awaited_once()
