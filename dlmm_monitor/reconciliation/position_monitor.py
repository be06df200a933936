"""
PositionMonitor: reconciles tracked positions against on-chain pool state.

One reconciliation (``check_position_status``) is fetch -> persist -> notify:
1. fetch the active bin and decide whether the position is in range
2. enrich with the user's on-chain record and the current price window
   (failures here degrade to an active-bin-only status)
3. append a ``status_check`` history record and replace ``last_status``
4. notify the owner when a trigger fires (first check, range drift,
   range flip, on-chain delta)

Retry policy is not handled here: ``check_all_active_positions`` raises when
any position failed so the scheduler's backoff engages.
"""
import asyncio
from typing import List, Optional, Tuple

from dlmm_monitor.config.config import MonitorConfig
from dlmm_monitor.domain.events import LogLevel
from dlmm_monitor.domain.models import (
    FetchedStatus,
    HistoryEventType,
    HistoryMetadata,
    OnChainSnapshot,
    Position,
    PositionHistory,
    utc_now,
)
from dlmm_monitor.domain.protocols import DestinationResolver, NotificationSink, PoolQueryClient, PositionStorage
from dlmm_monitor.exceptions import ReconciliationError
from dlmm_monitor.monitoring.logger import position_context
from dlmm_monitor.reconciliation.notifications import details_button, evaluate_triggers, render_message
from dlmm_monitor.scheduler.task_scheduler import TaskScheduler


class PositionMonitor:
    """Reconciliation engine for tracked DLMM positions."""

    TASK_NAME = "Position Status Monitor"

    def __init__(
        self,
        scheduler: TaskScheduler,
        storage: PositionStorage,
        pool_client: PoolQueryClient,
        *,
        notifier: Optional[NotificationSink] = None,
        destination_resolver: Optional[DestinationResolver] = None,
        config: Optional[MonitorConfig] = None,
    ):
        self.scheduler = scheduler
        self.storage = storage
        self.pool_client = pool_client
        self.notifier = notifier
        self.destination_resolver = destination_resolver
        self.config = config or MonitorConfig()
        self._interval = self.config.interval_seconds
        self._monitor_task_id: Optional[str] = None

    @property
    def monitor_task_id(self) -> Optional[str]:
        return self._monitor_task_id

    @property
    def interval(self) -> float:
        return self._interval

    def _log(self, level: LogLevel, message: str, **metadata) -> None:
        self.scheduler.log(level, message, **metadata)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def start_monitoring(self, interval: Optional[float] = None) -> str:
        """Register the bulk check (replacing any previous one) and start the scheduler."""
        if interval:
            self._interval = interval

        if self._monitor_task_id:
            self.stop_monitoring()

        self._monitor_task_id = self.scheduler.register_task(
            self.TASK_NAME,
            self._interval,
            self.check_all_active_positions,
            max_retries=self.config.max_retries,
            retry_delay=self.config.retry_delay_seconds,
            timeout=self.config.timeout_seconds,
        )
        self.scheduler.start()

        self._log(
            LogLevel.INFO,
            "Position monitoring started",
            interval=self._interval,
            task_id=self._monitor_task_id,
        )
        return self._monitor_task_id

    def stop_monitoring(self) -> None:
        if not self._monitor_task_id:
            return
        self.scheduler.remove_task(self._monitor_task_id)
        self._monitor_task_id = None
        self._log(LogLevel.INFO, "Position monitoring stopped")

    def update_monitor_interval(self, interval: float) -> None:
        self._interval = interval
        if self._monitor_task_id:
            self.scheduler.update_task(self._monitor_task_id, interval=interval)
            self._log(
                LogLevel.INFO,
                "Monitor interval updated",
                new_interval=interval,
                task_id=self._monitor_task_id,
            )

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    async def check_all_active_positions(self) -> int:
        """
        Reconcile every ACTIVE position concurrently.

        A failing position does not stop the others. Once all checks have
        finished, ReconciliationError is raised if any of them failed;
        writes made by the successful checks are kept.

        Returns:
            Number of positions checked
        """
        try:
            positions = await self.storage.get_all_positions()
        except Exception as e:
            self._log(LogLevel.ERROR, "Error loading positions", error=str(e))
            raise

        active = [p for p in positions if p.is_active]
        self._log(
            LogLevel.INFO,
            "Checking active positions",
            total_positions=len(positions),
            active_positions=len(active),
        )

        results = await asyncio.gather(
            *(self.check_position_status(position) for position in active),
            return_exceptions=True,
        )

        failures = {}
        for position, result in zip(active, results):
            if isinstance(result, Exception):
                failures[position.id] = str(result)
            elif isinstance(result, BaseException):
                raise result

        if failures:
            self._log(
                LogLevel.ERROR,
                "Error checking active positions",
                failed=len(failures),
                succeeded=len(active) - len(failures),
                position_ids=sorted(failures),
            )
            raise ReconciliationError(failures)

        self._log(LogLevel.INFO, "All position checks completed", checked=len(active))
        return len(active)

    async def check_position_status(self, position: Position) -> FetchedStatus:
        """
        Reconcile one position. Fetch and persistence errors propagate;
        notification problems never do.
        """
        with position_context(position.id):
            self._log(LogLevel.INFO, "Checking position status", position_id=position.id)
            try:
                status = await self.fetch_position_status(position)
                await self.save_position_status(position, status)
            except Exception as e:
                self._log(LogLevel.ERROR, f"Error checking position: {position.id}", error=str(e))
                raise

            # ``position`` still carries the previous last_status here
            await self.check_for_notifications(position, status)
            return status

    async def check_new_position(self, position_id: str) -> None:
        """First check right after creation. Never raises."""
        try:
            position = await self.storage.get_position(position_id)
        except Exception as e:
            self._log(LogLevel.ERROR, "Error loading new position", position_id=position_id, error=str(e))
            return

        if position is None:
            self._log(LogLevel.WARNING, "New position not found, skipping initial check", position_id=position_id)
            return

        try:
            await self.check_position_status(position)
        except Exception as e:
            self._log(LogLevel.ERROR, "Initial position check failed", position_id=position_id, error=str(e))

    # ------------------------------------------------------------------
    # Fetch
    # ------------------------------------------------------------------

    def range_window(self, position: Position, active_bin_id: int) -> Tuple[int, int]:
        """Bin window around the active bin, on the side the position sells into."""
        step = self.config.range_step_bins
        if position.sells_token_a:
            return active_bin_id, active_bin_id + step
        return active_bin_id - step, active_bin_id

    async def fetch_position_status(self, position: Position) -> FetchedStatus:
        """
        Fetch the current on-chain view of a position.

        Raises FetchError if the pool or its active bin cannot be fetched.
        Enrichment failures return a degraded status with ``error`` set.
        """
        pool = await self.pool_client.get_pool(position.pool_address)
        active_bin = await self.pool_client.get_active_bin(pool)

        active_bin_id = active_bin.bin_id
        current_price = active_bin.price
        bin_in_range = position.lower_bin_id <= active_bin_id <= position.upper_bin_id
        timestamp = utc_now()

        try:
            on_chain = await self._fetch_on_chain(pool, position)

            lower, upper = self.range_window(position, active_bin_id)
            bins = sorted(
                await self.pool_client.get_bins_in_range(pool, lower, upper),
                key=lambda b: b.bin_id,
            )
            current_lower_price = bins[0].price if bins else 0.0
            current_upper_price = bins[-1].price if bins else 0.0
        except Exception as e:
            self._log(
                LogLevel.WARNING,
                "Position status enrichment failed, using active bin only",
                position_id=position.id,
                error=str(e),
            )
            return FetchedStatus(
                active_bin=active_bin_id,
                bin_in_range=bin_in_range,
                current_price=current_price,
                timestamp=timestamp,
                error=str(e),
            )

        tolerance = self.config.price_drift_tolerance
        price_range_changed = (
            abs(current_lower_price - position.lower_price_limit) > tolerance
            or abs(current_upper_price - position.upper_price_limit) > tolerance
        )

        return FetchedStatus(
            active_bin=active_bin_id,
            bin_in_range=bin_in_range,
            current_price=current_price,
            timestamp=timestamp,
            current_lower_price=current_lower_price,
            current_upper_price=current_upper_price,
            price_range_changed=price_range_changed,
            on_chain=on_chain,
        )

    async def _fetch_on_chain(self, pool, position: Position) -> Optional[OnChainSnapshot]:
        records = await self.pool_client.get_user_position_records(pool, position.user_wallet)
        match = next((r for r in records if r.matches(position.lower_bin_id, position.upper_bin_id)), None)

        if match is None:
            self._log(
                LogLevel.WARNING,
                f"No matching on-chain position found for position {position.id}",
                user_wallet=position.user_wallet,
                lower_bin_id=position.lower_bin_id,
                upper_bin_id=position.upper_bin_id,
            )
            return None

        self._log(
            LogLevel.INFO,
            f"Retrieved on-chain position data for {position.id}",
            position_id=position.id,
            bin_range=f"{match.lower_bin_id} - {match.upper_bin_id}",
            last_updated_at=match.last_updated_at,
        )
        return match.to_snapshot()

    # ------------------------------------------------------------------
    # Persist
    # ------------------------------------------------------------------

    async def save_position_status(self, position: Position, status: FetchedStatus) -> None:
        """Append a status_check history record and replace ``last_status``."""
        on_chain = status.on_chain
        entry = PositionHistory(
            position_id=position.id,
            event_type=HistoryEventType.STATUS_CHECK.value,
            liquidity_a=on_chain.liquidity_x if on_chain else None,
            liquidity_b=on_chain.liquidity_y if on_chain else None,
            price_at_event=status.current_price,
            metadata=HistoryMetadata(
                active_bin=status.active_bin,
                bin_in_range=status.bin_in_range,
                current_lower_price=status.current_lower_price,
                current_upper_price=status.current_upper_price,
                on_chain=on_chain,
                error=status.error,
            ),
        )
        await self.storage.save_position_history(entry)
        await self.storage.update_position(position.id, {"last_status": status.to_last_status()})

    # ------------------------------------------------------------------
    # Notify
    # ------------------------------------------------------------------

    async def check_for_notifications(self, position: Position, status: FetchedStatus) -> bool:
        """
        Send an update if any trigger fired. Returns True if a message was sent.

        ``position.last_status`` must be the snapshot from before ``status``.
        """
        triggers = evaluate_triggers(position, status)
        if not triggers.should_notify:
            return False

        if self.notifier is None:
            self._log(LogLevel.INFO, "Skipping notification: no notifier configured", position_id=position.id)
            return False

        destination = await self._resolve_destination(position.user_wallet)
        if destination is None:
            self._log(
                LogLevel.INFO,
                "Cannot send notification: no destination for wallet",
                position_id=position.id,
                wallet=position.user_wallet,
            )
            return False

        message = render_message(position, status, triggers)
        try:
            await self.notifier.send(destination, message, details_button(position.id))
        except Exception as e:
            self._log(
                LogLevel.ERROR,
                "Error sending notification",
                position_id=position.id,
                destination=destination,
                error=str(e),
            )
            return False

        self._log(
            LogLevel.INFO,
            f"Sent notification about position {position.id}",
            destination=destination,
            sections=len(triggers.sections()),
        )
        return True

    async def _resolve_destination(self, wallet: str) -> Optional[int]:
        """Wallet map first, then a chat id stored on the wallet's positions."""
        try:
            if self.destination_resolver is not None:
                destinations: List[int] = await self.destination_resolver.get_destinations_for_wallet(wallet)
                if destinations:
                    return destinations[0]

            for position in await self.storage.get_positions_by_user(wallet):
                if position.chat_id is not None:
                    return position.chat_id
        except Exception as e:
            self._log(LogLevel.ERROR, "Error resolving notification destination", wallet=wallet, error=str(e))
            return None

        return None
