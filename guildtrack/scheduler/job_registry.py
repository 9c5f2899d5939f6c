"""Timed job registry for one-shot scheduled execution.

The TimedJobRegistry wraps APScheduler's AsyncIOScheduler with
one-shot DateTrigger jobs and keeps the only map of live timers in the
process. It knows nothing about schedule status or persistence; the
scheduled refresh service rebuilds its entries from the database on
startup.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from apscheduler.events import (
    EVENT_JOB_ERROR,
    EVENT_JOB_EXECUTED,
    EVENT_JOB_MISSED,
)
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.job import Job as APJob
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

from guildtrack.config import SchedulerConfig
from guildtrack.exceptions import JobAlreadyScheduledError

logger = logging.getLogger(__name__)

JobCallback = Callable[[], Awaitable[Any]]


@dataclass
class TimedJobHandle:
    """A registered one-shot timer.

    Attributes:
        job_id: Registry key, also used as the APScheduler job id
        run_at: UTC instant the timer fires
        callback: Awaitable callable invoked when the timer fires
        aps_job: The underlying APScheduler job
    """

    job_id: str
    run_at: datetime
    callback: JobCallback
    aps_job: Optional[APJob] = None


class TimedJobRegistry:
    """Maps job ids to live one-shot timers.

    Registration fails only on a duplicate id. Cancellation is
    idempotent and best-effort: failures while stopping a timer are
    logged and never propagated.

    Example:
        registry = TimedJobRegistry(config.scheduler)
        registry.start()

        registry.schedule("scheduled-processing-42", run_at, callback)
        registry.cancel("scheduled-processing-42")

        registry.shutdown()
    """

    def __init__(
        self,
        config: Optional[SchedulerConfig] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
    ) -> None:
        """Initialize the registry.

        Args:
            config: Scheduler configuration
            scheduler: Pre-built APScheduler instance (mainly for tests)
        """
        self._config = config or SchedulerConfig()
        self._handles: Dict[str, TimedJobHandle] = {}
        self._scheduler = scheduler or self._create_scheduler()
        self._setup_listeners()

    @property
    def is_running(self) -> bool:
        """Check if the underlying scheduler is running."""
        return bool(self._scheduler.running)

    @property
    def scheduler(self) -> AsyncIOScheduler:
        """The underlying APScheduler instance."""
        return self._scheduler

    def _create_scheduler(self) -> AsyncIOScheduler:
        """Create and configure the APScheduler instance."""
        job_defaults = {
            "coalesce": True,
            "max_instances": 1,
            "misfire_grace_time": self._config.misfire_grace_time,
        }

        return AsyncIOScheduler(
            jobstores={"default": MemoryJobStore()},
            executors={"default": AsyncIOExecutor()},
            job_defaults=job_defaults,
            timezone=self._config.timezone,
        )

    def _setup_listeners(self) -> None:
        """Set up APScheduler event listeners."""

        def on_job_executed(event: Any) -> None:
            logger.debug(f"Timed job {event.job_id} executed")

        def on_job_error(event: Any) -> None:
            exception = getattr(event, "exception", "Unknown error")
            logger.error(f"Timed job {event.job_id} raised: {exception}")

        def on_job_missed(event: Any) -> None:
            # APScheduler drops a missed one-shot job, so the entry is dead
            self._handles.pop(event.job_id, None)
            logger.warning(f"Timed job {event.job_id} missed its run time and was dropped")

        self._scheduler.add_listener(on_job_executed, EVENT_JOB_EXECUTED)
        self._scheduler.add_listener(on_job_error, EVENT_JOB_ERROR)
        self._scheduler.add_listener(on_job_missed, EVENT_JOB_MISSED)

    def start(self) -> None:
        """Start firing timers. Must be called from a running event loop."""
        if self.is_running:
            logger.warning("Timed job registry already running")
            return

        self._scheduler.start()
        logger.info(f"Timed job registry started with {len(self._handles)} jobs")

    def shutdown(self) -> None:
        """Stop all timers and shut down the underlying scheduler.

        APScheduler queues the shutdown on the event loop, so is_running
        only turns False once the loop has had a chance to run it.
        """
        self.stop_all()
        if self.is_running:
            self._scheduler.shutdown(wait=False)
        logger.info("Timed job registry stopped")

    def schedule(
        self,
        job_id: str,
        run_at: datetime,
        callback: JobCallback,
    ) -> TimedJobHandle:
        """Register a one-shot timer.

        A run_at that is already in the past fires as soon as the
        scheduler runs.

        Args:
            job_id: Unique job identifier
            run_at: When to fire (naive values are UTC)
            callback: Awaitable callable to invoke

        Returns:
            The registered handle

        Raises:
            JobAlreadyScheduledError: If job_id is already registered
        """
        if job_id in self._handles:
            raise JobAlreadyScheduledError(
                f"Timed job {job_id} is already scheduled",
                details={"job_id": job_id},
            )

        if run_at.tzinfo is None:
            run_at = run_at.replace(tzinfo=timezone.utc)
        now = datetime.now(timezone.utc)
        fire_at = max(run_at, now)

        handle = TimedJobHandle(job_id=job_id, run_at=run_at, callback=callback)
        handle.aps_job = self._scheduler.add_job(
            func=self._fire,
            trigger=DateTrigger(run_date=fire_at, timezone=timezone.utc),
            id=job_id,
            name=job_id,
            args=[job_id],
        )
        self._handles[job_id] = handle

        logger.info(f"Scheduled timed job {job_id} for {run_at.isoformat()}")
        return handle

    def cancel(self, job_id: str) -> None:
        """Stop a timer and remove it from the registry.

        Unknown ids are ignored. Errors are logged, never raised.

        Args:
            job_id: Job identifier
        """
        handle = self._handles.pop(job_id, None)
        if handle is None:
            return

        self._stop_timer(job_id)
        logger.debug(f"Cancelled timed job {job_id}")

    def stop_all(self) -> None:
        """Cancel every registered timer, continuing past individual failures."""
        for job_id in list(self._handles):
            self.cancel(job_id)
            logger.info(f"Stopped timed job: {job_id}")
        self._handles.clear()

    def list_ids(self) -> List[str]:
        """Snapshot of registered job ids."""
        return list(self._handles)

    def has_job(self, job_id: str) -> bool:
        """Check if a job id is registered."""
        return job_id in self._handles

    def get_handle(self, job_id: str) -> Optional[TimedJobHandle]:
        """Get the handle for a job id."""
        return self._handles.get(job_id)

    def _stop_timer(self, job_id: str) -> None:
        """Remove the APScheduler job if it still exists."""
        try:
            if self._scheduler.get_job(job_id) is not None:
                self._scheduler.remove_job(job_id)
        except Exception as e:
            logger.error(f"Error stopping timed job {job_id}: {e}")

    async def _fire(self, job_id: str) -> None:
        """Invoked by APScheduler when a timer fires."""
        handle = self._handles.get(job_id)
        if handle is None:
            logger.warning(f"Timed job {job_id} fired but is no longer registered, skipping")
            return

        logger.info(f"Firing timed job {job_id}")
        try:
            await handle.callback()
        except Exception as e:
            logger.error(f"Timed job {job_id} failed: {e}")
            raise
        finally:
            # One-shot: the entry is spent whether or not the callback released it
            if self._handles.get(job_id) is handle:
                del self._handles[job_id]

    def get_status(self) -> Dict[str, Any]:
        """Get registry status.

        Returns:
            Dictionary with registry status information
        """
        return {
            "running": self.is_running,
            "total_jobs": len(self._handles),
            "jobs": [
                {"id": handle.job_id, "run_at": handle.run_at.isoformat()}
                for handle in self._handles.values()
            ],
        }
