"""
MonitorApp: composition root for the position monitor.

Builds every component explicitly from configuration and owns their
lifecycle. Nothing is a module-level singleton, so several independent
apps (e.g. in tests) can coexist in one process.
"""
import asyncio
import signal
from typing import Optional

from dlmm_monitor.chain.pool_client import HttpPoolQueryClient
from dlmm_monitor.config.config import Config
from dlmm_monitor.monitoring.logger import get_logger
from dlmm_monitor.notifications.telegram import TelegramNotifier
from dlmm_monitor.reconciliation.position_monitor import PositionMonitor
from dlmm_monitor.scheduler.task_scheduler import TaskScheduler
from dlmm_monitor.storage.factory import StorageFactory

logger = get_logger(__name__)


class MonitorApp:
    """Wires storage, pool client, notifier, scheduler and monitor together."""

    def __init__(self, config: Config):
        self.config = config

        self.storage_factory = StorageFactory(config.storage)
        self.storage = self.storage_factory.position_storage()
        self.wallet_map = self.storage_factory.wallet_map_storage()

        self.pool_client = HttpPoolQueryClient(
            config.chain.pool_api_url,
            timeout_seconds=config.chain.request_timeout_seconds,
        )

        self.notifier: Optional[TelegramNotifier] = None
        if config.notifications.telegram_bot_token:
            self.notifier = TelegramNotifier(
                config.notifications.telegram_bot_token,
                api_url=config.notifications.telegram_api_url,
                parse_mode=config.notifications.parse_mode,
                timeout_seconds=config.notifications.request_timeout_seconds,
            )
        else:
            logger.warning("No Telegram bot token configured; notifications disabled")

        self.scheduler = TaskScheduler(
            poll_interval=config.scheduler.poll_interval_seconds,
            registry_path=config.scheduler.registry_path,
            cancel_stuck_tasks=config.scheduler.cancel_stuck_tasks,
        )
        self.monitor = PositionMonitor(
            self.scheduler,
            self.storage,
            self.pool_client,
            notifier=self.notifier,
            destination_resolver=self.wallet_map,
            config=config.monitor,
        )
        self._initialized = False

    async def init(self, start_monitoring: Optional[bool] = None, interval: Optional[float] = None) -> None:
        """Start monitoring (defaults to ``monitor.auto_start``). Needs a running loop."""
        if self._initialized:
            return
        if start_monitoring is None:
            start_monitoring = self.config.monitor.auto_start
        if start_monitoring:
            self.monitor.start_monitoring(interval)
        self._initialized = True
        logger.info(
            "Monitor app initialized",
            monitoring=start_monitoring,
            storage_backend=self.config.storage.backend,
            notifications=self.notifier is not None,
        )

    async def shutdown(self) -> None:
        """Stop monitoring, wait for in-flight checks, release connections."""
        self.monitor.stop_monitoring()
        await self.scheduler.shutdown()
        await self.pool_client.close()
        self.storage_factory.close()
        self._initialized = False
        logger.info("Monitor app shut down")

    async def __aenter__(self) -> "MonitorApp":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    async def run_until_signalled(self, interval: Optional[float] = None) -> None:
        """Run monitoring until SIGINT/SIGTERM, then shut down gracefully."""
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:
                # Not available on every platform; KeyboardInterrupt still applies
                logger.debug("Signal handler not supported", signal=sig.name)

        await self.init(start_monitoring=True, interval=interval)
        try:
            await stop.wait()
            logger.info("Shutdown signal received")
        finally:
            await self.shutdown()
