"""
Async Scheduler Service

Background task that triggers the daily day-ahead price refresh at a fixed
local time and consumes override flags set outside the API.
"""

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import UTC, datetime, time, timedelta
from typing import TYPE_CHECKING, Any, Dict, Optional

import pytz

from charging.config import PricingConfig, SchedulerConfig, parse_fetch_time

if TYPE_CHECKING:
    from charging.engine import ChargingEngine
    from pricing.service import PriceRefresher

logger = logging.getLogger("smartcharge.services.scheduler")

RETRY_DELAYS_SECONDS = [60, 120, 300]


@dataclass
class SchedulerStatus:
    """Current state of the scheduler service."""

    running: bool = False
    enabled: bool = False
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None
    last_run_status: str | None = None
    last_error: str | None = None
    current_task: str = "idle"  # "idle", "refreshing_prices"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "enabled": self.enabled,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "next_run_at": self.next_run_at.isoformat() if self.next_run_at else None,
            "last_run_status": self.last_run_status,
            "last_error": self.last_error,
            "current_task": self.current_task,
        }


def compute_next_run(from_time: datetime, timezone: str, fetch_time: str) -> datetime:
    """Next occurrence of ``fetch_time`` (local HH:MM) strictly after ``from_time``, in UTC."""
    tz = pytz.timezone(timezone)
    hour, minute = parse_fetch_time(fetch_time)
    local_now = from_time.astimezone(tz)

    day = local_now.date()
    candidate = tz.localize(datetime.combine(day, time(hour, minute)))
    if candidate <= local_now:
        candidate = tz.localize(datetime.combine(day + timedelta(days=1), time(hour, minute)))
    return candidate.astimezone(UTC)


class SchedulerService:
    """Async scheduler service running as a FastAPI background task."""

    def __init__(
        self,
        refresher: "PriceRefresher",
        engine: "ChargingEngine",
        pricing: PricingConfig,
        config: SchedulerConfig,
    ) -> None:
        self.refresher = refresher
        self.engine = engine
        self.pricing = pricing
        self.config = config
        self._task: Optional[asyncio.Task[None]] = None
        self._running = False
        self._status = SchedulerStatus(enabled=config.enabled)

    @property
    def status(self) -> SchedulerStatus:
        return self._status

    async def start(self) -> None:
        """Start the scheduler background loop."""
        if self._running:
            logger.warning("Scheduler already running")
            return
        if not self.config.enabled:
            logger.info("Scheduler disabled in config")
            return

        self._running = True
        self._status.running = True
        self._status.next_run_at = compute_next_run(
            datetime.now(UTC), self.pricing.timezone, self.pricing.fetch_time
        )
        self._task = asyncio.create_task(self._loop(), name="scheduler_loop")
        logger.info("Scheduler started, next price refresh at %s", self._status.next_run_at)

    async def stop(self) -> None:
        """Gracefully stop the scheduler."""
        self._running = False
        self._status.running = False

        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError, TimeoutError):
                await asyncio.wait_for(self._task, timeout=5.0)
            self._task = None

        logger.info("Scheduler stopped")

    async def trigger_now(self) -> bool:
        """Manually trigger an immediate refresh of every zone."""
        return await self._refresh()

    async def _loop(self) -> None:
        logger.info("Scheduler loop started")

        while self._running:
            try:
                await asyncio.sleep(self.config.check_interval_seconds)

                await self.engine.process_pending_overrides()

                now = datetime.now(UTC)
                if self._status.next_run_at and now >= self._status.next_run_at:
                    await self._run_scheduled()

            except asyncio.CancelledError:
                logger.info("Scheduler loop cancelled")
                break
            except Exception as e:
                logger.exception(f"Scheduler loop error: {e}")
                await asyncio.sleep(60)  # Back off on error

    async def _run_scheduled(self) -> None:
        try:
            success = await self._refresh()
            if not success:
                await self._smart_retry()
        finally:
            self._status.next_run_at = compute_next_run(
                datetime.now(UTC), self.pricing.timezone, self.pricing.fetch_time
            )

    async def _refresh(self) -> bool:
        """Refresh every zone. True only if all zones published a series."""
        self._status.current_task = "refreshing_prices"
        try:
            results = await self.refresher.refresh_all()
        finally:
            self._status.current_task = "idle"

        failed = [zone for zone, result in results.items() if result is None]
        self._status.last_run_at = datetime.now(UTC)
        self._status.last_run_status = "error" if failed else "success"
        self._status.last_error = f"Refresh failed for {', '.join(failed)}" if failed else None
        return not failed

    async def _smart_retry(self) -> None:
        """Retry the refresh after failure with increasing delays."""
        for delay in RETRY_DELAYS_SECONDS:
            if not self._running:
                break

            logger.info(f"Smart retry in {delay}s...")
            await asyncio.sleep(delay)

            if await self._refresh():
                logger.info("Smart retry succeeded")
                break
