"""Main daemon service for guildtrack.

This module provides the long-running scheduler process:
- Startup recovery of pending scheduled refreshes
- Periodic reconciliation with schedules written by other processes
- Signal handling for graceful shutdown
"""

import asyncio
import logging
import signal
from typing import Optional

from guildtrack.config import GuildtrackConfig
from guildtrack.database.connection import create_tables
from guildtrack.services.factory import RefreshServices, create_services
from guildtrack.services.scrape_queue import BatchDispatcher

logger = logging.getLogger(__name__)


class GuildtrackDaemon:
    """Scheduler daemon for guildtrack.

    Recovers pending schedules exactly once on start, then keeps the
    timed job registry in step with the database every
    scheduler.check_interval seconds until shutdown is requested.

    Example:
        daemon = GuildtrackDaemon(config)

        await daemon.start()
        await daemon.run_until_shutdown()
        await daemon.stop()
    """

    def __init__(
        self,
        config: GuildtrackConfig,
        dispatcher: Optional[BatchDispatcher] = None,
    ):
        """Initialize the daemon service.

        Args:
            config: Guildtrack configuration
            dispatcher: Worker hand-off for submitted scrape batches
        """
        self._config = config
        self._dispatcher = dispatcher
        self._services: Optional[RefreshServices] = None
        self._reconcile_task: Optional[asyncio.Task] = None
        self._running = False
        self._shutdown_event = asyncio.Event()

    async def start(self) -> None:
        """Start the daemon services.

        Raises:
            ConfigurationError: If the configuration cannot drive a batch processor
        """
        logger.info("Starting guildtrack daemon...")

        create_tables(self._config)
        self._services = create_services(self._config, dispatcher=self._dispatcher)

        if not self._config.scheduler.enabled:
            logger.warning("Scheduler is disabled; scheduled refreshes will not fire")
            self._running = True
            return

        recovered = await self._services.schedule_service.load_pending_on_startup()
        self._services.registry.start()
        logger.info(f"Timed job registry started with {recovered} recovered schedules")

        self._reconcile_task = asyncio.create_task(self._reconcile_loop())

        self._running = True
        logger.info("Guildtrack daemon started successfully")

    async def stop(self) -> None:
        """Stop the daemon services."""
        logger.info("Stopping guildtrack daemon...")

        self._running = False
        self._shutdown_event.set()

        if self._reconcile_task is not None:
            self._reconcile_task.cancel()
            try:
                await self._reconcile_task
            except asyncio.CancelledError:
                pass
            self._reconcile_task = None

        if self._services is not None:
            try:
                self._services.schedule_service.shutdown()
                self._services.registry.shutdown()
                # APScheduler queues its shutdown on the event loop
                await asyncio.sleep(0)
                logger.info("Timed job registry stopped")
            except Exception as e:
                logger.warning(f"Error stopping timed job registry: {e}")

        logger.info("Guildtrack daemon stopped")

    async def _reconcile_loop(self) -> None:
        interval = self._config.scheduler.check_interval

        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await self._services.schedule_service.sync_pending()
            except Exception as e:
                logger.error(f"Schedule sync failed: {e}")

    async def run_until_shutdown(self) -> None:
        """Run daemon until shutdown signal received."""
        await self._shutdown_event.wait()

    def request_shutdown(self) -> None:
        """Request daemon shutdown."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def services(self) -> Optional[RefreshServices]:
        """The wired refresh services, or None if not started."""
        return self._services


async def run_daemon(
    config: GuildtrackConfig,
    dispatcher: Optional[BatchDispatcher] = None,
) -> None:
    """Run the guildtrack daemon with signal handling.

    Args:
        config: Guildtrack configuration
        dispatcher: Worker hand-off for submitted scrape batches
    """
    daemon = GuildtrackDaemon(config, dispatcher=dispatcher)

    loop = asyncio.get_running_loop()

    def handle_signal(sig: signal.Signals) -> None:
        logger.info(f"Received signal {sig.name}, initiating shutdown...")
        daemon.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            signal.signal(sig, lambda signum, frame: handle_signal(signal.Signals(signum)))

    try:
        await daemon.start()
        await daemon.run_until_shutdown()
    finally:
        await daemon.stop()
