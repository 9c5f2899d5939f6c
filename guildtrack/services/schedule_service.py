"""Scheduled guild-wide tracker refreshes.

ScheduledRefreshService owns the lifecycle of ScheduledRefresh rows:

    PENDING --(fires, succeeds)--> COMPLETED
    PENDING --(fires, raises)----> FAILED
    PENDING --(cancelled)--------> CANCELLED

Rows are the durable record; the timed job registry holds the live
timers and is rebuilt from the PENDING rows every time the process
starts. Terminal writes are conditional on the row still being PENDING,
so a cancel and a firing timer can race without overwriting each other.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Union

from guildtrack.config import GuildtrackConfig, get_config
from guildtrack.database.connection import get_db_session
from guildtrack.database.models import (
    SCHEDULED_JOB_PREFIX,
    ScheduledRefresh,
    ScheduledRefreshStatus,
    scheduled_job_id,
    to_naive_utc,
    utcnow,
)
from guildtrack.database.repositories import GuildRepository, ScheduledRefreshRepository
from guildtrack.exceptions import (
    InvalidScheduleStateError,
    JobAlreadyScheduledError,
    NotFoundError,
    SchedulerNotReadyError,
    ValidationError,
)
from guildtrack.scheduler.job_registry import TimedJobRegistry
from guildtrack.services.batch_processor import TrackerBatchProcessor
from guildtrack.services.eligibility import SessionFactory

logger = logging.getLogger(__name__)

MISSED_SCHEDULE_MESSAGE = "Scheduled time passed while the scheduler was not running"


@dataclass(frozen=True)
class RefreshExecution:
    """Callback bound to one registry entry.

    Carries only what execution needs; the row itself is re-read when
    the timer fires.
    """

    schedule_id: str
    guild_id: str
    service: "ScheduledRefreshService" = field(repr=False, compare=False)

    @property
    def job_id(self) -> str:
        return scheduled_job_id(self.schedule_id)

    async def __call__(self) -> None:
        await self.service._execute(self)


class ScheduledRefreshService:
    """Creates, cancels and executes scheduled guild refreshes.

    load_pending_on_startup() must run once before new schedules are
    accepted, so that timers lost with the previous process are back in
    the registry first.

    Example:
        service = ScheduledRefreshService(batch_processor, registry)
        await service.load_pending_on_startup()

        schedule = await service.create_schedule(
            guild_id="123", scheduled_at="2026-01-01T18:00:00Z", created_by="456"
        )
        await service.cancel_schedule(schedule.id)
    """

    def __init__(
        self,
        batch_processor: TrackerBatchProcessor,
        registry: Optional[TimedJobRegistry] = None,
        config: Optional[GuildtrackConfig] = None,
        session_factory: SessionFactory = get_db_session,
    ) -> None:
        """Initialize the service.

        Args:
            batch_processor: Processor invoked when a schedule fires
            registry: Timed job registry (created from config if omitted)
            config: Configuration (uses global if not provided)
            session_factory: Context manager factory yielding DB sessions
        """
        self._config = config or get_config()
        self._batch_processor = batch_processor
        self._registry = registry or TimedJobRegistry(self._config.scheduler)
        self._session_factory = session_factory
        self._recovered = False

    @property
    def registry(self) -> TimedJobRegistry:
        return self._registry

    @property
    def is_ready(self) -> bool:
        """Whether pending schedules have been recovered."""
        return self._recovered

    async def create_schedule(
        self,
        guild_id: str,
        scheduled_at: Union[datetime, str],
        created_by: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> ScheduledRefresh:
        """
        Schedule a one-off refresh of a guild's trackers.

        Args:
            guild_id: Guild to refresh
            scheduled_at: When to fire; datetime or ISO-8601 string,
                naive values are UTC
            created_by: Requesting actor
            metadata: Caller payload stored verbatim

        Returns:
            The persisted PENDING schedule

        Raises:
            SchedulerNotReadyError: Pending schedules were not recovered yet
            ValidationError: scheduled_at is not strictly in the future
            NotFoundError: Guild does not exist
        """
        if not self._recovered:
            raise SchedulerNotReadyError(
                "Pending schedules must be loaded before new schedules are accepted"
            )

        run_at = self._parse_scheduled_at(scheduled_at)
        if run_at <= utcnow():
            raise ValidationError(
                "Scheduled time must be in the future",
                details={"scheduled_at": run_at.isoformat()},
            )

        if metadata is not None and not isinstance(metadata, Mapping):
            raise ValidationError("Metadata must be a mapping")

        with self._session_factory() as session:
            if not GuildRepository(session).exists(guild_id):
                raise NotFoundError(f"Guild {guild_id} not found")

            schedule = ScheduledRefreshRepository(session).create(
                guild_id=guild_id,
                scheduled_at=run_at,
                status=ScheduledRefreshStatus.PENDING.value,
                created_by=created_by,
                refresh_metadata=dict(metadata or {}),
            )

        self._register(schedule)
        logger.info(
            f"Created scheduled refresh {schedule.id} for guild {guild_id} "
            f"at {run_at.isoformat()} (requested by {created_by})"
        )
        return schedule

    async def cancel_schedule(self, schedule_id: str) -> ScheduledRefresh:
        """
        Cancel a pending schedule.

        Raises:
            NotFoundError: Schedule does not exist
            InvalidScheduleStateError: Schedule is no longer PENDING
        """
        with self._session_factory() as session:
            repo = ScheduledRefreshRepository(session)
            schedule = repo.get_by_id(schedule_id)
            if schedule is None:
                raise NotFoundError(f"Scheduled refresh {schedule_id} not found")
            if schedule.status != ScheduledRefreshStatus.PENDING.value:
                raise InvalidScheduleStateError(
                    f"Scheduled refresh {schedule_id} cannot be cancelled",
                    details={"status": schedule.status},
                )

            self._release_timer(schedule.job_id)

            if not repo.transition(schedule_id, ScheduledRefreshStatus.CANCELLED):
                # The timer fired between the read and the write
                current = repo.get_by_id(schedule_id)
                if current is not None:
                    session.refresh(current)
                raise InvalidScheduleStateError(
                    f"Scheduled refresh {schedule_id} cannot be cancelled",
                    details={"status": current.status if current else "deleted"},
                )

            session.refresh(schedule)

        logger.info(f"Cancelled scheduled refresh {schedule_id}")
        return schedule

    async def get_schedule(self, schedule_id: str) -> ScheduledRefresh:
        """
        Get a schedule by ID.

        Raises:
            NotFoundError: Schedule does not exist
        """
        with self._session_factory() as session:
            schedule = ScheduledRefreshRepository(session).get_by_id(schedule_id)

        if schedule is None:
            raise NotFoundError(f"Scheduled refresh {schedule_id} not found")
        return schedule

    async def list_for_guild(
        self,
        guild_id: str,
        status: Optional[Union[ScheduledRefreshStatus, str]] = None,
        include_completed: bool = True,
    ) -> List[ScheduledRefresh]:
        """
        List a guild's schedules ordered by scheduled time.

        An explicit status filter takes precedence over include_completed.

        Args:
            guild_id: Guild to list
            status: Only schedules in this status
            include_completed: When False, COMPLETED schedules are left out

        Returns:
            Matching schedules (possibly empty)
        """
        if isinstance(status, str):
            try:
                status = ScheduledRefreshStatus(status.upper())
            except ValueError:
                raise ValidationError(f"Unknown schedule status: {status}")

        exclude_status = None
        if status is None and not include_completed:
            exclude_status = ScheduledRefreshStatus.COMPLETED

        with self._session_factory() as session:
            return ScheduledRefreshRepository(session).find_many(
                guild_id=guild_id,
                status=status,
                exclude_status=exclude_status,
            )

    async def load_pending_on_startup(self, apply_missed_policy: bool = True) -> int:
        """
        Re-register a timer for every PENDING schedule.

        Runs once per service instance; later calls log a warning and
        do nothing. Schedules whose time passed while the process was
        down fire right away, or are marked FAILED when
        scheduler.fire_missed_on_startup is off.

        Args:
            apply_missed_policy: When False, overdue rows are registered
                as-is and never marked FAILED. Processes that never start
                the registry pass False so they leave overdue rows to the
                daemon.

        Returns:
            Number of timers registered
        """
        if self._recovered:
            logger.warning("Pending scheduled refreshes already loaded, skipping")
            return 0

        with self._session_factory() as session:
            pending = ScheduledRefreshRepository(session).find_pending()

        now = utcnow()
        fire_missed = self._config.scheduler.fire_missed_on_startup
        registered = 0

        for schedule in pending:
            if apply_missed_policy and schedule.scheduled_at <= now:
                if not fire_missed:
                    self._mark_missed(schedule)
                    continue
                logger.warning(
                    f"Scheduled refresh {schedule.id} was due at "
                    f"{schedule.scheduled_at.isoformat()}, firing now"
                )

            try:
                self._register(schedule)
            except JobAlreadyScheduledError:
                logger.warning(f"Timer for scheduled refresh {schedule.id} already registered")
                continue
            registered += 1

        self._recovered = True
        logger.info(f"Loaded {registered} pending scheduled refreshes")
        return registered

    async def sync_pending(self) -> Dict[str, int]:
        """
        Reconcile the registry with the database.

        Registers PENDING rows created by another process and drops
        timers whose rows are no longer PENDING.

        Returns:
            Counts of added and dropped timers
        """
        if not self._recovered:
            raise SchedulerNotReadyError("Pending schedules have not been loaded yet")

        with self._session_factory() as session:
            pending = {
                schedule.job_id: schedule
                for schedule in ScheduledRefreshRepository(session).find_pending()
            }

        dropped = 0
        for job_id in self._registry.list_ids():
            if job_id.startswith(SCHEDULED_JOB_PREFIX) and job_id not in pending:
                self._release_timer(job_id)
                dropped += 1

        added = 0
        for job_id, schedule in pending.items():
            if not self._registry.has_job(job_id):
                self._register(schedule)
                added += 1

        if added or dropped:
            logger.info(f"Schedule sync: {added} timers added, {dropped} dropped")
        return {"added": added, "dropped": dropped}

    async def cleanup_finished(self, days: Optional[int] = None) -> int:
        """
        Delete finished schedules older than `days`.

        Args:
            days: Retention in days (defaults to scheduler.history_retention_days)

        Returns:
            Number of schedules deleted
        """
        if days is None:
            days = self._config.scheduler.history_retention_days
        if days < 0:
            raise ValidationError("Retention days must not be negative", details={"days": days})

        cutoff = utcnow() - timedelta(days=days)
        with self._session_factory() as session:
            deleted = ScheduledRefreshRepository(session).delete_finished_before(cutoff)

        logger.info(f"Deleted {deleted} finished scheduled refreshes older than {days} days")
        return deleted

    def shutdown(self) -> None:
        """Stop every timer owned by this service."""
        self._registry.stop_all()

    def _register(self, schedule: ScheduledRefresh) -> None:
        execution = RefreshExecution(
            schedule_id=schedule.id,
            guild_id=schedule.guild_id,
            service=self,
        )
        self._registry.schedule(execution.job_id, schedule.scheduled_at, execution)

    def _release_timer(self, job_id: str) -> None:
        try:
            self._registry.cancel(job_id)
        except Exception as e:
            logger.warning(f"Failed to release timer {job_id}: {e}")

    def _mark_missed(self, schedule: ScheduledRefresh) -> None:
        with self._session_factory() as session:
            updated = ScheduledRefreshRepository(session).transition(
                schedule.id,
                ScheduledRefreshStatus.FAILED,
                error_message=MISSED_SCHEDULE_MESSAGE,
            )
        if updated:
            logger.warning(
                f"Scheduled refresh {schedule.id} missed its time "
                f"({schedule.scheduled_at.isoformat()}), marked FAILED"
            )

    def _finish(
        self,
        schedule_id: str,
        status: ScheduledRefreshStatus,
        **values: Any,
    ) -> bool:
        with self._session_factory() as session:
            updated = ScheduledRefreshRepository(session).transition(
                schedule_id, status, **values
            )
        if not updated:
            logger.warning(
                f"Scheduled refresh {schedule_id} was no longer pending, "
                f"not marking it {status.value}"
            )
        return updated

    async def _execute(self, execution: RefreshExecution) -> None:
        """Run a fired schedule and record its terminal status."""
        schedule_id = execution.schedule_id

        with self._session_factory() as session:
            schedule = ScheduledRefreshRepository(session).get_by_id(schedule_id)

        if schedule is None:
            logger.warning(f"Scheduled refresh {schedule_id} no longer exists, skipping")
            self._release_timer(execution.job_id)
            return
        if schedule.status != ScheduledRefreshStatus.PENDING.value:
            logger.info(f"Scheduled refresh {schedule_id} is {schedule.status}, skipping")
            self._release_timer(execution.job_id)
            return

        logger.info(f"Executing scheduled refresh {schedule_id} for guild {execution.guild_id}")

        try:
            result = await self._batch_processor.process_pending_for_guild(execution.guild_id)
        except Exception as e:
            try:
                self._finish(
                    schedule_id,
                    ScheduledRefreshStatus.FAILED,
                    executed_at=utcnow(),
                    error_message=str(e),
                )
            except Exception as write_error:
                logger.error(
                    f"Failed to record failure of scheduled refresh {schedule_id}: {write_error}"
                )
            self._release_timer(execution.job_id)
            logger.error(f"Scheduled refresh {schedule_id} failed: {e}")
            raise

        try:
            self._finish(schedule_id, ScheduledRefreshStatus.COMPLETED, executed_at=utcnow())
        finally:
            self._release_timer(execution.job_id)

        logger.info(
            f"Scheduled refresh {schedule_id} completed: "
            f"{result.processed_count} trackers enqueued"
        )

    @staticmethod
    def _parse_scheduled_at(value: Union[datetime, str]) -> datetime:
        if isinstance(value, str):
            try:
                value = datetime.fromisoformat(value)
            except ValueError:
                raise ValidationError(f"Invalid scheduled time: {value}")
        if not isinstance(value, datetime):
            raise ValidationError("Scheduled time must be a datetime or ISO-8601 string")
        return to_naive_utc(value)
