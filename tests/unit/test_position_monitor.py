"""
Tests for PositionMonitor: fetch -> persist -> notify, trigger rules,
per-position isolation and monitoring lifecycle.
"""
import pytest

from dlmm_monitor.config.config import MonitorConfig
from dlmm_monitor.domain.models import HistoryEventType
from dlmm_monitor.exceptions import FetchError, ReconciliationError
from dlmm_monitor.reconciliation.notifications import (
    IN_RANGE_SECTION,
    NEW_POSITION_SECTION,
    ON_CHAIN_SECTION,
    OUT_OF_RANGE_SECTION,
    RANGE_DRIFT_SECTION,
)
from dlmm_monitor.reconciliation.position_monitor import PositionMonitor
from dlmm_monitor.scheduler.task_scheduler import TaskScheduler
from tests.fakes import POOL, SOL_MINT, WALLET, RecordingNotifier, StaticResolver, make_record


@pytest.fixture
def scheduler(clock):
    return TaskScheduler(poll_interval=0.01, clock=clock)


@pytest.fixture
def monitor(scheduler, file_storage, pool_client, notifier):
    return PositionMonitor(scheduler, file_storage, pool_client, notifier=notifier, config=MonitorConfig())


async def _create(storage, make_params, pool_client, active_bin=150, **overrides):
    position = await storage.create_position(make_params(**overrides))
    pool_client.active_bins[position.pool_address] = active_bin
    return position


def _status_checks(history):
    return [h for h in history if h.event_type == HistoryEventType.STATUS_CHECK.value]


class TestCheckPositionStatus:

    @pytest.mark.asyncio
    async def test_first_check_persists_and_notifies(self, monitor, file_storage, make_params, pool_client, notifier):
        position = await _create(file_storage, make_params, pool_client)

        status = await monitor.check_position_status(position)

        assert status.active_bin == 150
        assert status.bin_in_range is True
        assert status.current_price == 1.0
        assert status.degraded is False

        stored = await file_storage.get_position(position.id)
        assert stored.last_status.active_bin == 150
        assert stored.last_status.bin_in_range is True
        assert stored.last_status.current_lower_price == 1.0

        checks = _status_checks(await file_storage.get_position_history(position.id))
        assert len(checks) == 1
        assert checks[0].metadata.active_bin == 150
        assert checks[0].metadata.bin_in_range is True
        assert checks[0].price_at_event == 1.0

        assert len(notifier.sent) == 1
        destination, text, options = notifier.sent[0]
        assert destination == 4242
        assert NEW_POSITION_SECTION in text
        assert "*In Range*: ✅" in text
        assert options["reply_markup"]["inline_keyboard"][0][0]["callback_data"] == f"position_{position.id}"

    @pytest.mark.asyncio
    async def test_first_check_out_of_range_still_notifies(self, monitor, file_storage, make_params, pool_client, notifier):
        position = await _create(file_storage, make_params, pool_client, active_bin=250)

        status = await monitor.check_position_status(position)

        assert status.bin_in_range is False
        assert len(notifier.sent) == 1
        assert NEW_POSITION_SECTION in notifier.texts[0]
        assert OUT_OF_RANGE_SECTION not in notifier.texts[0]

    @pytest.mark.asyncio
    async def test_bin_on_range_edge_is_in_range(self, monitor, file_storage, make_params, pool_client):
        position = await _create(file_storage, make_params, pool_client, active_bin=200)

        status = await monitor.check_position_status(position)

        assert status.bin_in_range is True

    @pytest.mark.asyncio
    async def test_active_bin_failure_propagates_without_writes(
        self, monitor, file_storage, make_params, pool_client, notifier
    ):
        position = await _create(file_storage, make_params, pool_client)
        pool_client.fail_active_bin.add(POOL)

        with pytest.raises(FetchError):
            await monitor.check_position_status(position)

        stored = await file_storage.get_position(position.id)
        assert stored.last_status is None
        assert _status_checks(await file_storage.get_position_history(position.id)) == []
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_enrichment_failure_degrades(self, monitor, file_storage, make_params, pool_client, notifier):
        position = await _create(file_storage, make_params, pool_client)
        pool_client.fail_enrichment.add(POOL)

        status = await monitor.check_position_status(position)

        assert status.degraded is True
        assert "unavailable" in status.error
        assert status.active_bin == 150
        assert status.current_lower_price is None
        assert status.on_chain is None

        stored = await file_storage.get_position(position.id)
        assert stored.last_status.active_bin == 150
        assert stored.last_status.current_lower_price is None

        checks = _status_checks(await file_storage.get_position_history(position.id))
        assert checks[0].metadata.error == status.error
        assert len(notifier.sent) == 1

    @pytest.mark.asyncio
    async def test_range_window_follows_sell_side(self, monitor, file_storage, make_params, pool_client):
        buys_a = await _create(file_storage, make_params, pool_client)
        await monitor.check_position_status(buys_a)
        assert pool_client.range_requests[-1] == (145, 150)

        sells_a = await _create(file_storage, make_params, pool_client, sell_token_mint=SOL_MINT)
        await monitor.check_position_status(sells_a)
        assert pool_client.range_requests[-1] == (150, 155)

    @pytest.mark.asyncio
    async def test_price_drift_beyond_tolerance_notifies(self, monitor, file_storage, make_params, pool_client, notifier):
        position = await _create(file_storage, make_params, pool_client)
        pool_client.prices[145] = "0.9"

        status = await monitor.check_position_status(position)

        assert status.price_range_changed is True
        assert RANGE_DRIFT_SECTION in notifier.texts[0]

    @pytest.mark.asyncio
    async def test_price_drift_within_tolerance_is_ignored(self, monitor, file_storage, make_params, pool_client):
        position = await _create(file_storage, make_params, pool_client)
        pool_client.prices[145] = "1.00005"

        status = await monitor.check_position_status(position)

        assert status.price_range_changed is False

    @pytest.mark.asyncio
    async def test_on_chain_record_is_matched_by_bin_range(self, monitor, file_storage, make_params, pool_client):
        position = await _create(file_storage, make_params, pool_client)
        pool_client.records[(POOL, WALLET)] = [
            make_record(lower=90, upper=200, total_x_amount=1),
            make_record(lower=100, upper=200, total_x_amount=2**80),
        ]

        status = await monitor.check_position_status(position)

        assert status.on_chain.liquidity_x == 2**80
        stored = await file_storage.get_position(position.id)
        assert stored.last_status.on_chain.liquidity_x == 2**80
        checks = _status_checks(await file_storage.get_position_history(position.id))
        assert checks[0].liquidity_a == 2**80

    @pytest.mark.asyncio
    async def test_no_matching_on_chain_record(self, monitor, file_storage, make_params, pool_client):
        position = await _create(file_storage, make_params, pool_client)
        pool_client.records[(POOL, WALLET)] = [make_record(lower=1, upper=2)]

        status = await monitor.check_position_status(position)

        assert status.on_chain is None
        assert status.degraded is False


class TestNotificationTriggers:

    @pytest.mark.asyncio
    async def test_range_flip_notifies_once(self, monitor, file_storage, make_params, pool_client, notifier):
        position = await _create(file_storage, make_params, pool_client)

        await monitor.check_all_active_positions()
        assert len(notifier.sent) == 1

        pool_client.active_bins[POOL] = 250
        await monitor.check_all_active_positions()
        assert len(notifier.sent) == 2
        assert OUT_OF_RANGE_SECTION in notifier.texts[1]
        assert NEW_POSITION_SECTION not in notifier.texts[1]

        await monitor.check_all_active_positions()
        assert len(notifier.sent) == 2

        pool_client.active_bins[POOL] = 120
        await monitor.check_all_active_positions()
        assert len(notifier.sent) == 3
        assert IN_RANGE_SECTION in notifier.texts[2]

        checks = _status_checks(await file_storage.get_position_history(position.id))
        assert [c.metadata.active_bin for c in checks] == [150, 250, 250, 120]

    @pytest.mark.asyncio
    async def test_steady_state_sends_nothing(self, monitor, file_storage, make_params, pool_client, notifier):
        await _create(file_storage, make_params, pool_client)

        await monitor.check_all_active_positions()
        await monitor.check_all_active_positions()
        await monitor.check_all_active_positions()

        assert len(notifier.sent) == 1

    @pytest.mark.asyncio
    async def test_on_chain_delta_notifies(self, monitor, file_storage, make_params, pool_client, notifier):
        await _create(file_storage, make_params, pool_client)
        pool_client.records[(POOL, WALLET)] = [make_record(fee_x=10)]
        await monitor.check_all_active_positions()

        pool_client.records[(POOL, WALLET)] = [make_record(fee_x=15)]
        await monitor.check_all_active_positions()

        assert len(notifier.sent) == 2
        assert ON_CHAIN_SECTION.format(changes="pending fees") in notifier.texts[1]
        assert "Pending SOL: 15" in notifier.texts[1]

    @pytest.mark.asyncio
    async def test_on_chain_delta_needs_previous_snapshot(
        self, monitor, file_storage, make_params, pool_client, notifier
    ):
        await _create(file_storage, make_params, pool_client)
        await monitor.check_all_active_positions()

        pool_client.records[(POOL, WALLET)] = [make_record()]
        await monitor.check_all_active_positions()

        assert len(notifier.sent) == 1

    @pytest.mark.asyncio
    async def test_resolver_destination_wins(self, scheduler, file_storage, pool_client, notifier, make_params):
        monitor = PositionMonitor(
            scheduler,
            file_storage,
            pool_client,
            notifier=notifier,
            destination_resolver=StaticResolver({WALLET: [777, 888]}),
        )
        position = await _create(file_storage, make_params, pool_client)

        await monitor.check_position_status(position)

        assert notifier.sent[0][0] == 777

    @pytest.mark.asyncio
    async def test_no_destination_skips_notification(self, monitor, file_storage, make_params, pool_client, notifier):
        position = await _create(file_storage, make_params, pool_client, chat_id=None)

        await monitor.check_position_status(position)

        assert notifier.sent == []
        assert (await file_storage.get_position(position.id)).last_status is not None

    @pytest.mark.asyncio
    async def test_notifier_failure_does_not_fail_check(self, scheduler, file_storage, pool_client, make_params):
        monitor = PositionMonitor(scheduler, file_storage, pool_client, notifier=RecordingNotifier(fail=True))
        position = await _create(file_storage, make_params, pool_client)

        status = await monitor.check_position_status(position)

        assert status.bin_in_range is True
        assert (await file_storage.get_position(position.id)).last_status.active_bin == 150

    @pytest.mark.asyncio
    async def test_without_notifier_nothing_is_sent(self, scheduler, file_storage, pool_client, make_params):
        monitor = PositionMonitor(scheduler, file_storage, pool_client)
        position = await _create(file_storage, make_params, pool_client)

        status = await monitor.check_position_status(position)

        # First-check trigger fires, but there is nobody to deliver it
        assert await monitor.check_for_notifications(position, status) is False
        assert (await file_storage.get_position(position.id)).last_status is not None


class TestBulkCheck:

    @pytest.mark.asyncio
    async def test_failing_position_does_not_block_others(self, monitor, file_storage, make_params, pool_client):
        first = await _create(file_storage, make_params, pool_client, pool_address="PoolOne")
        second = await _create(file_storage, make_params, pool_client, pool_address="PoolTwo")
        third = await _create(file_storage, make_params, pool_client, pool_address="PoolThree")
        pool_client.fail_active_bin.add("PoolTwo")

        with pytest.raises(ReconciliationError) as exc_info:
            await monitor.check_all_active_positions()

        assert set(exc_info.value.failures) == {second.id}
        assert "PoolTwo" in exc_info.value.failures[second.id]

        for ok in (first, third):
            stored = await file_storage.get_position(ok.id)
            assert stored.last_status is not None
            assert len(_status_checks(await file_storage.get_position_history(ok.id))) == 1

        failed = await file_storage.get_position(second.id)
        assert failed.last_status is None

    @pytest.mark.asyncio
    async def test_only_active_positions_are_checked(self, monitor, file_storage, make_params, pool_client):
        active = await _create(file_storage, make_params, pool_client)
        closed = await _create(file_storage, make_params, pool_client)
        await file_storage.update_position(closed.id, {"status": "closed"})

        checked = await monitor.check_all_active_positions()

        assert checked == 1
        assert (await file_storage.get_position(active.id)).last_status is not None
        assert (await file_storage.get_position(closed.id)).last_status is None

    @pytest.mark.asyncio
    async def test_no_positions(self, monitor):
        assert await monitor.check_all_active_positions() == 0


class TestCheckNewPosition:

    @pytest.mark.asyncio
    async def test_runs_first_check(self, monitor, file_storage, make_params, pool_client, notifier):
        position = await _create(file_storage, make_params, pool_client)

        await monitor.check_new_position(position.id)

        assert (await file_storage.get_position(position.id)).last_status is not None
        assert len(notifier.sent) == 1

    @pytest.mark.asyncio
    async def test_unknown_id_is_logged_not_raised(self, monitor, scheduler):
        events = []
        scheduler.subscribe(events.append)

        await monitor.check_new_position("missing")

        assert any("not found" in getattr(e, "message", "") for e in events)

    @pytest.mark.asyncio
    async def test_failure_is_swallowed(self, monitor, file_storage, make_params, pool_client):
        position = await _create(file_storage, make_params, pool_client)
        pool_client.fail_active_bin.add(POOL)

        await monitor.check_new_position(position.id)

        assert (await file_storage.get_position(position.id)).last_status is None


class TestMonitoringLifecycle:

    @pytest.mark.asyncio
    async def test_start_update_stop(self, monitor, scheduler):
        task_id = monitor.start_monitoring(30.0)

        task = scheduler.get_task(task_id)
        assert monitor.monitor_task_id == task_id
        assert task.name == PositionMonitor.TASK_NAME
        assert task.interval == 30.0
        assert task.max_retries == 3
        assert task.retry_delay == 30.0
        assert task.timeout == 120.0
        assert scheduler.is_running is True

        monitor.update_monitor_interval(60.0)
        assert scheduler.get_task(task_id).interval == 60.0
        assert monitor.interval == 60.0

        monitor.stop_monitoring()
        monitor.stop_monitoring()
        assert monitor.monitor_task_id is None
        assert scheduler.get_task(task_id) is None

        await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_restart_replaces_task(self, monitor, scheduler):
        first = monitor.start_monitoring()
        second = monitor.start_monitoring()

        assert first != second
        assert [t.id for t in scheduler.get_tasks()] == [second]
        assert scheduler.get_task(second).interval == 10.0

        await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_scheduled_run_reconciles(self, monitor, scheduler, clock, file_storage, make_params, pool_client):
        position = await _create(file_storage, make_params, pool_client)
        task_id = monitor.start_monitoring(5.0)

        await scheduler.run_task_now(task_id)

        assert (await file_storage.get_position(position.id)).last_status is not None
        await scheduler.shutdown()
