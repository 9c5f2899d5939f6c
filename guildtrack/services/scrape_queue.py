"""Submission interface to the downstream scraping worker.

The scraping worker itself lives outside this package. ScrapeQueue is
the seam the batch processor talks to; LeasedScrapeQueue is the local
implementation that records an in-flight lease per tracker before
handing the batch on, so overlapping batches never resubmit a tracker
the worker is still holding.
"""

import importlib
import logging
import os
import socket
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, List, Optional, Sequence

from guildtrack.database.connection import get_db_session
from guildtrack.database.models import utcnow
from guildtrack.database.repositories import ScrapeLeaseRepository
from guildtrack.exceptions import ConfigurationError, QueueError
from guildtrack.services.eligibility import SessionFactory

logger = logging.getLogger(__name__)

BatchDispatcher = Callable[[List[str]], Awaitable[None]]


class ScrapeQueue(ABC):
    """Abstract scraping queue.

    Delivery is at-least-once: a tracker may be submitted more than once
    across batches and the worker is expected to tolerate that.
    """

    @abstractmethod
    async def submit_batch(self, tracker_ids: Sequence[str]) -> None:
        """Submit tracker ids for scraping as a single batch.

        Raises:
            QueueError: If the batch could not be handed off
        """


def default_lease_holder() -> str:
    """Identify this process as a lease holder."""
    return f"{socket.gethostname()}:{os.getpid()}"


def load_dispatcher(path: str) -> BatchDispatcher:
    """Resolve a dispatcher from a "package.module:callable" path.

    Raises:
        ConfigurationError: If the path is malformed, the module cannot be
            imported or the attribute is not callable
    """
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ConfigurationError(
            f"Dispatcher must look like 'package.module:callable', got '{path}'"
        )

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(
            f"Cannot import dispatcher module {module_name}: {e}",
            details={"dispatcher": path},
        ) from e

    dispatcher = getattr(module, attr, None)
    if not callable(dispatcher):
        raise ConfigurationError(
            f"Dispatcher {path} is not callable",
            details={"dispatcher": path},
        )

    logger.debug(f"Loaded scrape dispatcher {path}")
    return dispatcher


class LeasedScrapeQueue(ScrapeQueue):
    """Scrape queue that leases trackers before dispatching them.

    Trackers whose lease is still active are dropped from the batch, so
    a duplicate submission is ignored until the worker releases the
    tracker or the lease expires.

    Example:
        queue = LeasedScrapeQueue(lease_ttl_seconds=3600, dispatcher=send_to_worker)
        await queue.submit_batch(["t1", "t2"])
        ...
        queue.release(["t1"])
    """

    def __init__(
        self,
        session_factory: SessionFactory = get_db_session,
        lease_ttl_seconds: int = 3600,
        holder: Optional[str] = None,
        dispatcher: Optional[BatchDispatcher] = None,
    ) -> None:
        """Initialize the queue.

        Args:
            session_factory: Context manager factory yielding DB sessions
            lease_ttl_seconds: Lifetime of a lease taken on submission
            holder: Lease holder name (defaults to host:pid)
            dispatcher: Async callable that hands a batch to the worker.
                When omitted, batches are only leased and logged, and
                the worker picks them up from the scrape_leases table.
        """
        self._session_factory = session_factory
        self._lease_ttl_seconds = lease_ttl_seconds
        self._holder = holder or default_lease_holder()
        self._dispatcher = dispatcher

    @property
    def holder(self) -> str:
        return self._holder

    async def submit_batch(self, tracker_ids: Sequence[str]) -> None:
        if not tracker_ids:
            return

        with self._session_factory() as session:
            acquired = ScrapeLeaseRepository(session).acquire(
                tracker_ids,
                holder=self._holder,
                ttl_seconds=self._lease_ttl_seconds,
                now=utcnow(),
            )

        skipped = len(tracker_ids) - len(acquired)
        if skipped:
            logger.info(f"Ignoring {skipped} trackers already leased by another batch")
        if not acquired:
            return

        if self._dispatcher is None:
            logger.info(f"Queued {len(acquired)} trackers for scraping")
            return

        try:
            await self._dispatcher(acquired)
        except Exception as e:
            # Hand-off failed: free the trackers so the next batch can pick them up
            self.release(acquired)
            raise QueueError(
                f"Failed to dispatch scrape batch: {e}",
                details={"trackers": len(acquired)},
            ) from e

        logger.info(f"Dispatched {len(acquired)} trackers for scraping")

    def release(self, tracker_ids: Sequence[str]) -> int:
        """Release leases once the worker has finished with the trackers.

        Returns:
            Number of leases released
        """
        with self._session_factory() as session:
            released = ScrapeLeaseRepository(session).release(tracker_ids)

        logger.debug(f"Released {released} scrape leases")
        return released
