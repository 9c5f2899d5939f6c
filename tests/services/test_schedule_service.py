"""Tests for the scheduled refresh service."""

import logging
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock, patch

import pytest
import pytest_asyncio

from guildtrack.database.connection import get_db_session
from guildtrack.database.models import (
    ScheduledRefresh,
    ScheduledRefreshStatus,
    TrackerScrapingStatus,
    scheduled_job_id,
    utcnow,
)
from guildtrack.database.repositories import ScheduledRefreshRepository
from guildtrack.exceptions import (
    InvalidScheduleStateError,
    NotFoundError,
    SchedulerNotReadyError,
    ValidationError,
)
from guildtrack.scheduler.job_registry import TimedJobRegistry
from guildtrack.services.batch_processor import BatchResult, TrackerBatchProcessor
from guildtrack.services.schedule_service import (
    MISSED_SCHEDULE_MESSAGE,
    RefreshExecution,
    ScheduledRefreshService,
)
from guildtrack.services.scrape_queue import ScrapeQueue

GUILD_ID = "1001"


def _count_rows() -> int:
    with get_db_session() as session:
        return len(ScheduledRefreshRepository(session).find_many())


@pytest.fixture
def batch_processor() -> Mock:
    processor = Mock(spec=TrackerBatchProcessor)
    processor.process_pending_for_guild = AsyncMock(
        return_value=BatchResult(processed_count=2, tracker_ids=["a", "b"])
    )
    return processor


@pytest.fixture
def registry(db) -> TimedJobRegistry:
    return TimedJobRegistry(db.scheduler)


@pytest.fixture
def service(db, guild, batch_processor, registry) -> ScheduledRefreshService:
    return ScheduledRefreshService(batch_processor, registry=registry, config=db)


@pytest_asyncio.fixture
async def ready_service(service) -> ScheduledRefreshService:
    await service.load_pending_on_startup()
    return service


async def _fire(registry: TimedJobRegistry, schedule_id: str) -> None:
    """Invoke a registered execution the way the registry does."""
    await registry._fire(scheduled_job_id(schedule_id))


class TestCreateSchedule:
    """Tests for create_schedule."""

    @pytest.mark.asyncio
    async def test_registers_exactly_one_timer(self, ready_service, registry) -> None:
        run_at = utcnow() + timedelta(hours=1)

        schedule = await ready_service.create_schedule(GUILD_ID, run_at, "admin-1")

        assert schedule.status == ScheduledRefreshStatus.PENDING.value
        assert schedule.scheduled_at == run_at
        assert schedule.created_by == "admin-1"
        assert registry.list_ids() == [f"scheduled-processing-{schedule.id}"]

    @pytest.mark.asyncio
    async def test_metadata_stored_verbatim(self, ready_service, fetch_schedule) -> None:
        metadata = {"reason": "playoffs", "nested": {"round": 2}}

        schedule = await ready_service.create_schedule(
            GUILD_ID, utcnow() + timedelta(hours=1), "admin-1", metadata=metadata
        )

        assert fetch_schedule(schedule.id).refresh_metadata == metadata

    @pytest.mark.asyncio
    async def test_accepts_iso_string_and_aware_datetime(self, ready_service) -> None:
        aware = datetime.now(timezone(timedelta(hours=2))) + timedelta(hours=1)

        from_string = await ready_service.create_schedule(
            GUILD_ID, "2099-06-01T18:00:00Z", "admin-1"
        )
        from_aware = await ready_service.create_schedule(GUILD_ID, aware, "admin-1")

        assert from_string.scheduled_at == datetime(2099, 6, 1, 18, 0, 0)
        assert from_aware.scheduled_at == aware.astimezone(timezone.utc).replace(tzinfo=None)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("offset", [timedelta(0), timedelta(seconds=-1), timedelta(days=-3)])
    async def test_rejects_now_and_past(self, ready_service, registry, offset) -> None:
        with pytest.raises(ValidationError):
            await ready_service.create_schedule(GUILD_ID, utcnow() + offset, "admin-1")

        assert _count_rows() == 0
        assert registry.list_ids() == []

    @pytest.mark.asyncio
    async def test_rejects_unparseable_time(self, ready_service) -> None:
        with pytest.raises(ValidationError):
            await ready_service.create_schedule(GUILD_ID, "next tuesday", "admin-1")

    @pytest.mark.asyncio
    async def test_unknown_guild(self, ready_service, registry) -> None:
        with pytest.raises(NotFoundError):
            await ready_service.create_schedule("9999", utcnow() + timedelta(hours=1), "admin-1")

        assert _count_rows() == 0
        assert registry.list_ids() == []

    @pytest.mark.asyncio
    async def test_refused_before_recovery(self, service, registry) -> None:
        with pytest.raises(SchedulerNotReadyError):
            await service.create_schedule(GUILD_ID, utcnow() + timedelta(hours=1), "admin-1")

        assert _count_rows() == 0
        assert registry.list_ids() == []


class TestCancelSchedule:
    """Tests for cancel_schedule."""

    @pytest.mark.asyncio
    async def test_cancel_pending(self, ready_service, registry, fetch_schedule) -> None:
        schedule = await ready_service.create_schedule(
            GUILD_ID, utcnow() + timedelta(hours=1), "admin-1"
        )

        cancelled = await ready_service.cancel_schedule(schedule.id)

        assert cancelled.status == ScheduledRefreshStatus.CANCELLED.value
        assert fetch_schedule(schedule.id).status == ScheduledRefreshStatus.CANCELLED.value
        assert not registry.has_job(schedule.job_id)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status",
        [
            ScheduledRefreshStatus.COMPLETED,
            ScheduledRefreshStatus.CANCELLED,
            ScheduledRefreshStatus.FAILED,
        ],
    )
    async def test_cancel_terminal_fails_without_mutation(
        self, ready_service, make_schedule, fetch_schedule, status
    ) -> None:
        schedule_id = make_schedule(utcnow() - timedelta(hours=1), status=status)
        before = fetch_schedule(schedule_id)

        with pytest.raises(InvalidScheduleStateError):
            await ready_service.cancel_schedule(schedule_id)

        after = fetch_schedule(schedule_id)
        assert after.status == status.value
        assert after.updated_at == before.updated_at

    @pytest.mark.asyncio
    async def test_lost_race_reports_current_status(
        self, ready_service, make_schedule, fetch_schedule
    ) -> None:
        schedule_id = make_schedule(utcnow() + timedelta(hours=1))

        def completed_meanwhile(repo, target_id, to_status, **kwargs):
            repo.session.query(ScheduledRefresh).filter(
                ScheduledRefresh.id == target_id
            ).update(
                {"status": ScheduledRefreshStatus.COMPLETED.value},
                synchronize_session=False,
            )
            repo.session.commit()
            return False

        with patch.object(
            ScheduledRefreshRepository,
            "transition",
            autospec=True,
            side_effect=completed_meanwhile,
        ):
            with pytest.raises(InvalidScheduleStateError) as exc_info:
                await ready_service.cancel_schedule(schedule_id)

        assert exc_info.value.details["status"] == ScheduledRefreshStatus.COMPLETED.value
        assert fetch_schedule(schedule_id).status == ScheduledRefreshStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_cancel_missing(self, ready_service) -> None:
        with pytest.raises(NotFoundError):
            await ready_service.cancel_schedule("missing")

    @pytest.mark.asyncio
    async def test_cancel_survives_registry_failure(
        self, ready_service, registry, fetch_schedule
    ) -> None:
        schedule = await ready_service.create_schedule(
            GUILD_ID, utcnow() + timedelta(hours=1), "admin-1"
        )

        with patch.object(registry.scheduler, "remove_job", side_effect=RuntimeError("boom")):
            await ready_service.cancel_schedule(schedule.id)

        assert fetch_schedule(schedule.id).status == ScheduledRefreshStatus.CANCELLED.value


class TestQueries:
    """Tests for get_schedule and list_for_guild."""

    @pytest.mark.asyncio
    async def test_get_schedule(self, ready_service, make_schedule) -> None:
        schedule_id = make_schedule(utcnow() + timedelta(hours=1))

        schedule = await ready_service.get_schedule(schedule_id)

        assert schedule.id == schedule_id
        with pytest.raises(NotFoundError):
            await ready_service.get_schedule("missing")

    @pytest.mark.asyncio
    async def test_list_ordering_and_filters(self, ready_service, make_schedule) -> None:
        now = utcnow()
        third = make_schedule(now + timedelta(hours=3))
        first = make_schedule(now - timedelta(hours=2), status=ScheduledRefreshStatus.COMPLETED)
        second = make_schedule(now + timedelta(hours=1), status=ScheduledRefreshStatus.FAILED)

        everything = await ready_service.list_for_guild(GUILD_ID)
        without_completed = await ready_service.list_for_guild(GUILD_ID, include_completed=False)
        only_completed = await ready_service.list_for_guild(
            GUILD_ID, status=ScheduledRefreshStatus.COMPLETED, include_completed=False
        )
        by_name = await ready_service.list_for_guild(GUILD_ID, status="failed")

        assert [s.id for s in everything] == [first, second, third]
        assert [s.id for s in without_completed] == [second, third]
        assert [s.id for s in only_completed] == [first]
        assert [s.id for s in by_name] == [second]

    @pytest.mark.asyncio
    async def test_list_empty_guild(self, ready_service) -> None:
        assert await ready_service.list_for_guild("9999") == []

    @pytest.mark.asyncio
    async def test_list_unknown_status(self, ready_service) -> None:
        with pytest.raises(ValidationError):
            await ready_service.list_for_guild(GUILD_ID, status="paused")


class TestLoadPendingOnStartup:
    """Tests for crash recovery."""

    @pytest.mark.asyncio
    async def test_registers_one_timer_per_pending_row(
        self, service, registry, make_schedule
    ) -> None:
        now = utcnow()
        a = make_schedule(now + timedelta(hours=1))
        b = make_schedule(now + timedelta(hours=2))
        make_schedule(now + timedelta(hours=3), status=ScheduledRefreshStatus.CANCELLED)
        make_schedule(now - timedelta(hours=3), status=ScheduledRefreshStatus.COMPLETED)

        count = await service.load_pending_on_startup()

        assert count == 2
        assert sorted(registry.list_ids()) == sorted([scheduled_job_id(a), scheduled_job_id(b)])
        assert registry.get_handle(scheduled_job_id(a)).run_at.replace(tzinfo=None) == (
            now + timedelta(hours=1)
        )

    @pytest.mark.asyncio
    async def test_no_pending_rows(self, service, registry) -> None:
        assert await service.load_pending_on_startup() == 0
        assert registry.list_ids() == []
        assert service.is_ready

    @pytest.mark.asyncio
    async def test_runs_only_once(self, service, registry, make_schedule, caplog) -> None:
        make_schedule(utcnow() + timedelta(hours=1))

        assert await service.load_pending_on_startup() == 1
        with caplog.at_level(logging.WARNING):
            assert await service.load_pending_on_startup() == 0

        assert len(registry.list_ids()) == 1
        assert "already loaded" in caplog.text

    @pytest.mark.asyncio
    async def test_missed_schedule_fires_by_default(self, service, registry, make_schedule) -> None:
        missed = make_schedule(utcnow() - timedelta(hours=1))

        assert await service.load_pending_on_startup() == 1
        assert registry.has_job(scheduled_job_id(missed))

    @pytest.mark.asyncio
    async def test_missed_schedule_marked_failed_when_configured(
        self, db, guild, batch_processor, registry, make_schedule, fetch_schedule
    ) -> None:
        db.scheduler.fire_missed_on_startup = False
        service = ScheduledRefreshService(batch_processor, registry=registry, config=db)
        missed = make_schedule(utcnow() - timedelta(hours=1))
        upcoming = make_schedule(utcnow() + timedelta(hours=1))

        assert await service.load_pending_on_startup() == 1

        assert registry.list_ids() == [scheduled_job_id(upcoming)]
        row = fetch_schedule(missed)
        assert row.status == ScheduledRefreshStatus.FAILED.value
        assert row.error_message == MISSED_SCHEDULE_MESSAGE

    @pytest.mark.asyncio
    async def test_missed_policy_can_be_skipped(
        self, db, guild, batch_processor, registry, make_schedule, fetch_schedule
    ) -> None:
        db.scheduler.fire_missed_on_startup = False
        service = ScheduledRefreshService(batch_processor, registry=registry, config=db)
        overdue = make_schedule(utcnow() - timedelta(seconds=1))

        assert await service.load_pending_on_startup(apply_missed_policy=False) == 1

        assert registry.list_ids() == [scheduled_job_id(overdue)]
        row = fetch_schedule(overdue)
        assert row.status == ScheduledRefreshStatus.PENDING.value
        assert row.error_message is None


class TestExecution:
    """Tests for the execution callback."""

    @pytest.mark.asyncio
    async def test_success_marks_completed(
        self, ready_service, registry, batch_processor, fetch_schedule
    ) -> None:
        schedule = await ready_service.create_schedule(
            GUILD_ID, utcnow() + timedelta(hours=1), "admin-1"
        )

        await _fire(registry, schedule.id)

        batch_processor.process_pending_for_guild.assert_awaited_once_with(GUILD_ID)
        row = fetch_schedule(schedule.id)
        assert row.status == ScheduledRefreshStatus.COMPLETED.value
        assert row.executed_at is not None
        assert row.error_message is None
        assert registry.list_ids() == []

    @pytest.mark.asyncio
    async def test_failure_marks_failed_and_reraises(
        self, ready_service, registry, batch_processor, fetch_schedule
    ) -> None:
        batch_processor.process_pending_for_guild.side_effect = RuntimeError("queue unavailable")
        schedule = await ready_service.create_schedule(
            GUILD_ID, utcnow() + timedelta(hours=1), "admin-1"
        )

        with pytest.raises(RuntimeError, match="queue unavailable"):
            await _fire(registry, schedule.id)

        row = fetch_schedule(schedule.id)
        assert row.status == ScheduledRefreshStatus.FAILED.value
        assert row.error_message == "queue unavailable"
        assert row.executed_at is not None
        assert registry.list_ids() == []

    @pytest.mark.asyncio
    async def test_cleanup_failure_does_not_mask_success(
        self, ready_service, registry, fetch_schedule
    ) -> None:
        schedule = await ready_service.create_schedule(
            GUILD_ID, utcnow() + timedelta(hours=1), "admin-1"
        )
        execution = registry.get_handle(schedule.job_id).callback

        with patch.object(registry, "cancel", side_effect=RuntimeError("cleanup failed")):
            await execution()

        assert fetch_schedule(schedule.id).status == ScheduledRefreshStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_cleanup_failure_does_not_mask_original_error(
        self, ready_service, registry, batch_processor, fetch_schedule
    ) -> None:
        batch_processor.process_pending_for_guild.side_effect = ValueError("bad batch")
        schedule = await ready_service.create_schedule(
            GUILD_ID, utcnow() + timedelta(hours=1), "admin-1"
        )
        execution = registry.get_handle(schedule.job_id).callback

        with patch.object(registry, "cancel", side_effect=RuntimeError("cleanup failed")):
            with pytest.raises(ValueError, match="bad batch"):
                await execution()

        assert fetch_schedule(schedule.id).error_message == "bad batch"

    @pytest.mark.asyncio
    async def test_failed_status_write_still_reraises_original(
        self, ready_service, registry, batch_processor
    ) -> None:
        batch_processor.process_pending_for_guild.side_effect = ValueError("bad batch")
        schedule = await ready_service.create_schedule(
            GUILD_ID, utcnow() + timedelta(hours=1), "admin-1"
        )

        with patch.object(ready_service, "_finish", side_effect=RuntimeError("db down")):
            with pytest.raises(ValueError, match="bad batch"):
                await _fire(registry, schedule.id)

    @pytest.mark.asyncio
    async def test_completed_status_write_failure_propagates(
        self, ready_service, registry
    ) -> None:
        schedule = await ready_service.create_schedule(
            GUILD_ID, utcnow() + timedelta(hours=1), "admin-1"
        )

        with patch.object(ready_service, "_finish", side_effect=RuntimeError("db down")):
            with pytest.raises(RuntimeError, match="db down"):
                await _fire(registry, schedule.id)

        assert registry.list_ids() == []

    @pytest.mark.asyncio
    async def test_cancelled_row_is_skipped(
        self, ready_service, batch_processor, make_schedule, fetch_schedule
    ) -> None:
        schedule_id = make_schedule(
            utcnow() + timedelta(hours=1), status=ScheduledRefreshStatus.CANCELLED
        )
        execution = RefreshExecution(schedule_id, GUILD_ID, ready_service)

        await execution()

        batch_processor.process_pending_for_guild.assert_not_awaited()
        assert fetch_schedule(schedule_id).status == ScheduledRefreshStatus.CANCELLED.value

    @pytest.mark.asyncio
    async def test_missing_row_is_skipped(self, ready_service, batch_processor) -> None:
        await RefreshExecution("missing", GUILD_ID, ready_service)()

        batch_processor.process_pending_for_guild.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancel_during_run_is_not_overwritten(
        self, ready_service, registry, batch_processor, fetch_schedule
    ) -> None:
        schedule = await ready_service.create_schedule(
            GUILD_ID, utcnow() + timedelta(hours=1), "admin-1"
        )

        async def cancel_mid_run(guild_id):
            await ready_service.cancel_schedule(schedule.id)
            return BatchResult()

        batch_processor.process_pending_for_guild.side_effect = cancel_mid_run

        await _fire(registry, schedule.id)

        row = fetch_schedule(schedule.id)
        assert row.status == ScheduledRefreshStatus.CANCELLED.value
        assert row.executed_at is None

    def test_execution_value_object(self, service) -> None:
        a = RefreshExecution("s1", GUILD_ID, service)
        b = RefreshExecution("s1", GUILD_ID, Mock())

        assert a == b
        assert a.job_id == "scheduled-processing-s1"
        with pytest.raises(AttributeError):
            a.schedule_id = "s2"


class TestMaintenance:
    """Tests for sync_pending, cleanup_finished and shutdown."""

    @pytest.mark.asyncio
    async def test_sync_registers_rows_from_other_processes(
        self, ready_service, registry, make_schedule
    ) -> None:
        schedule_id = make_schedule(utcnow() + timedelta(hours=1))

        result = await ready_service.sync_pending()

        assert result == {"added": 1, "dropped": 0}
        assert registry.has_job(scheduled_job_id(schedule_id))

    @pytest.mark.asyncio
    async def test_sync_drops_timers_of_finished_rows(self, ready_service, registry) -> None:
        schedule = await ready_service.create_schedule(
            GUILD_ID, utcnow() + timedelta(hours=1), "admin-1"
        )
        with get_db_session() as session:
            ScheduledRefreshRepository(session).transition(
                schedule.id, ScheduledRefreshStatus.CANCELLED
            )

        result = await ready_service.sync_pending()

        assert result == {"added": 0, "dropped": 1}
        assert registry.list_ids() == []

    @pytest.mark.asyncio
    async def test_sync_requires_recovery(self, service) -> None:
        with pytest.raises(SchedulerNotReadyError):
            await service.sync_pending()

    @pytest.mark.asyncio
    async def test_cleanup_finished(self, ready_service, make_schedule, fetch_schedule) -> None:
        old = utcnow() - timedelta(days=45)
        old_done = make_schedule(old, status=ScheduledRefreshStatus.COMPLETED, updated_at=old)
        recent_done = make_schedule(utcnow(), status=ScheduledRefreshStatus.CANCELLED)

        assert await ready_service.cleanup_finished() == 1
        assert fetch_schedule(old_done) is None
        assert fetch_schedule(recent_done) is not None

    @pytest.mark.asyncio
    async def test_cleanup_rejects_negative_days(self, ready_service) -> None:
        with pytest.raises(ValidationError):
            await ready_service.cleanup_finished(-1)

    @pytest.mark.asyncio
    async def test_shutdown_stops_timers(self, ready_service, registry) -> None:
        await ready_service.create_schedule(GUILD_ID, utcnow() + timedelta(hours=1), "admin-1")

        ready_service.shutdown()

        assert registry.list_ids() == []


class TestEndToEnd:
    """Create, restart, fire."""

    @pytest.mark.asyncio
    async def test_schedule_survives_restart_and_fires(
        self, db, guild, add_member, make_tracker, fetch_schedule
    ) -> None:
        now = utcnow()
        add_member("player-1")
        pending = make_tracker(
            user_id="player-1",
            scraping_status=TrackerScrapingStatus.PENDING.value,
            created_at=now - timedelta(days=2),
        )
        stale = make_tracker(
            user_id="player-1",
            scraping_status=TrackerScrapingStatus.COMPLETED.value,
            last_scraped_at=now - timedelta(hours=30),
            created_at=now - timedelta(days=1),
        )

        queue = Mock(spec=ScrapeQueue)
        queue.submit_batch = AsyncMock()

        # First process: create the schedule, then "crash"
        first = ScheduledRefreshService(
            TrackerBatchProcessor(queue, config=db),
            registry=TimedJobRegistry(db.scheduler),
            config=db,
        )
        await first.load_pending_on_startup()
        schedule = await first.create_schedule(GUILD_ID, now + timedelta(hours=1), "admin-1")

        # Second process: recover and fire
        registry = TimedJobRegistry(db.scheduler)
        second = ScheduledRefreshService(
            TrackerBatchProcessor(queue, config=db),
            registry=registry,
            config=db,
        )
        assert await second.load_pending_on_startup() == 1
        assert registry.list_ids() == [scheduled_job_id(schedule.id)]

        await _fire(registry, schedule.id)

        queue.submit_batch.assert_awaited_once_with([pending, stale])
        row = fetch_schedule(schedule.id)
        assert row.status == ScheduledRefreshStatus.COMPLETED.value
        assert row.executed_at is not None
        assert registry.list_ids() == []
