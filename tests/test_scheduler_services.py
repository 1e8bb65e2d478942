import asyncio
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch

from backend.services.scheduler_service import SchedulerService, compute_next_run
from charging.config import PricingConfig, SchedulerConfig


def _scheduler(results=None, enabled=True) -> SchedulerService:
    refresher = MagicMock()
    refresher.refresh_all = AsyncMock(return_value=results if results is not None else {"NL": object()})
    engine = MagicMock()
    engine.process_pending_overrides = AsyncMock(return_value=[])
    return SchedulerService(
        refresher,
        engine,
        PricingConfig(),
        SchedulerConfig(enabled=enabled, check_interval_seconds=1),
    )


class TestComputeNextRun:
    def test_later_today(self):
        now = datetime(2025, 1, 14, 23, 0, tzinfo=UTC)  # 00:00 local
        assert compute_next_run(now, "Europe/Amsterdam", "01:10") == datetime(
            2025, 1, 15, 0, 10, tzinfo=UTC
        )

    def test_already_passed_rolls_to_tomorrow(self):
        now = datetime(2025, 1, 15, 0, 10, tzinfo=UTC)  # exactly 01:10 local
        assert compute_next_run(now, "Europe/Amsterdam", "01:10") == datetime(
            2025, 1, 16, 0, 10, tzinfo=UTC
        )

    def test_summer_time_offset(self):
        now = datetime(2025, 7, 1, 12, 0, tzinfo=UTC)
        assert compute_next_run(now, "Europe/Amsterdam", "01:10") == datetime(
            2025, 7, 1, 23, 10, tzinfo=UTC
        )


def test_scheduler_service_lifecycle():
    asyncio.run(_test_scheduler_lifecycle_async())


async def _test_scheduler_lifecycle_async():
    scheduler = _scheduler()
    assert not scheduler.status.running
    assert scheduler.status.enabled

    await scheduler.start()
    assert scheduler.status.running
    assert scheduler.status.next_run_at is not None

    await scheduler.stop()
    assert not scheduler.status.running


def test_disabled_scheduler_does_not_start():
    asyncio.run(_test_disabled_scheduler_does_not_start())


async def _test_disabled_scheduler_does_not_start():
    scheduler = _scheduler(enabled=False)
    await scheduler.start()
    assert not scheduler.status.running
    assert scheduler._task is None


def test_trigger_now_records_success():
    asyncio.run(_test_trigger_now_records_success())


async def _test_trigger_now_records_success():
    scheduler = _scheduler()
    assert await scheduler.trigger_now() is True
    assert scheduler.status.last_run_status == "success"
    assert scheduler.status.current_task == "idle"


def test_failed_zone_triggers_smart_retry():
    asyncio.run(_test_failed_zone_triggers_smart_retry())


async def _test_failed_zone_triggers_smart_retry():
    scheduler = _scheduler()
    scheduler._running = True
    scheduler.refresher.refresh_all = AsyncMock(
        side_effect=[{"NL": None}, {"NL": None}, {"NL": object()}]
    )

    with patch("backend.services.scheduler_service.asyncio.sleep", new=AsyncMock()) as sleep:
        await scheduler._run_scheduled()

    assert [call.args[0] for call in sleep.await_args_list] == [60, 120]
    assert scheduler.refresher.refresh_all.await_count == 3
    assert scheduler.status.last_run_status == "success"
    assert scheduler.status.next_run_at is not None


def test_retries_exhausted_reports_error():
    asyncio.run(_test_retries_exhausted_reports_error())


async def _test_retries_exhausted_reports_error():
    scheduler = _scheduler(results={"NL": None})
    scheduler._running = True

    with patch("backend.services.scheduler_service.asyncio.sleep", new=AsyncMock()) as sleep:
        await scheduler._run_scheduled()

    assert [call.args[0] for call in sleep.await_args_list] == [60, 120, 300]
    assert scheduler.status.last_run_status == "error"
    assert "NL" in scheduler.status.last_error


def test_loop_sweeps_pending_overrides():
    asyncio.run(_test_loop_sweeps_pending_overrides())


async def _test_loop_sweeps_pending_overrides():
    scheduler = _scheduler()
    scheduler.config.check_interval_seconds = 0
    await scheduler.start()
    await asyncio.sleep(0.05)
    await scheduler.stop()

    assert scheduler.engine.process_pending_overrides.await_count >= 1
    scheduler.refresher.refresh_all.assert_not_awaited()
