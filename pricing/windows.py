"""
Window Selection Strategy

Finds the cheapest contiguous charging window in a day's price series and
fans that computation out over every user whenever a zone's prices change.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

from charging.errors import InsufficientData
from charging.models import ChargingSettings

from .normalizer import PriceSeries

if TYPE_CHECKING:
    from backend.core.store import DocumentStore

logger = logging.getLogger(__name__)

MAX_WINDOW_HOURS = 24


@dataclass(frozen=True)
class WindowSelection:
    start_hour: int
    duration_hours: int
    average_price: Decimal


def select_optimal_window(prices: Sequence[Decimal], duration_hours: int) -> WindowSelection:
    """
    Find the contiguous window of ``duration_hours`` with the lowest mean price.

    Every start hour in [0, len(prices) - duration_hours] is scanned. Ties
    go to the earliest start: a later window must be strictly cheaper to
    replace the running minimum.

    Raises:
        ValueError: duration_hours < 1
        InsufficientData: duration_hours > 24, or fewer prices than hours needed
    """
    if duration_hours < 1:
        raise ValueError(f"duration_hours must be >= 1, got {duration_hours}")
    if duration_hours > MAX_WINDOW_HOURS:
        raise InsufficientData(
            f"Charging duration {duration_hours}h exceeds {MAX_WINDOW_HOURS}h"
        )
    if len(prices) < duration_hours:
        raise InsufficientData(
            f"Series has {len(prices)} prices, {duration_hours} needed"
        )

    best_start = 0
    best_mean = sum(prices[:duration_hours], Decimal(0)) / duration_hours
    for start in range(1, len(prices) - duration_hours + 1):
        window = prices[start : start + duration_hours]
        mean = sum(window, Decimal(0)) / duration_hours
        if mean < best_mean:
            best_mean = mean
            best_start = start

    return WindowSelection(
        start_hour=best_start,
        duration_hours=duration_hours,
        average_price=best_mean,
    )


@dataclass
class FanOutReport:
    """Joined outcome of one optimal-window recomputation across users."""

    zone: str
    updated: Dict[str, int] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "zone": self.zone,
            "updated": dict(self.updated),
            "skipped": list(self.skipped),
            "failed": dict(self.failed),
        }


class OptimalWindowPlanner:
    """
    Recomputes ``settings.optimalStartHour`` for every user of a zone.

    Each user is an independent task with its own error boundary; one
    user's failure never stops the others.
    """

    def __init__(self, store: "DocumentStore", default_zone: str = "NL"):
        self.store = store
        self.default_zone = default_zone

    async def recompute(self, zone: str, series: Optional[PriceSeries] = None) -> FanOutReport:
        report = FanOutReport(zone=zone)

        if series is None:
            doc = await self.store.get_price_series(zone)
            if not doc:
                logger.warning("No price series for zone %s, skipping window recompute", zone)
                return report
            series = PriceSeries.from_document(zone, doc)

        prices = series.prices
        users = await self.store.list_users()
        if not users:
            logger.info("No users registered, nothing to recompute")
            return report

        user_ids = list(users)
        outcomes = await asyncio.gather(
            *(self._recompute_user(user_id, users[user_id], zone, prices) for user_id in user_ids),
            return_exceptions=True,
        )

        for user_id, outcome in zip(user_ids, outcomes):
            if isinstance(outcome, BaseException):
                logger.error("Window recompute failed for user %s: %s", user_id, outcome)
                report.failed[user_id] = str(outcome)
            elif outcome is None:
                report.skipped.append(user_id)
            else:
                report.updated[user_id] = outcome

        logger.info(
            "Optimal windows for %s: %d updated, %d skipped, %d failed",
            zone,
            len(report.updated),
            len(report.skipped),
            len(report.failed),
        )
        return report

    async def _recompute_user(
        self,
        user_id: str,
        doc: Dict[str, Any],
        zone: str,
        prices: List[Decimal],
    ) -> Optional[int]:
        """Compute and store one user's window. Returns None if skipped."""
        settings = ChargingSettings.from_document(doc.get("settings"))
        if settings is None:
            return None
        if (settings.price_zone or self.default_zone) != zone:
            return None

        try:
            selection = select_optimal_window(prices, settings.charging_duration_hours)
        except InsufficientData as e:
            # Previous optimalStartHour stays in place
            logger.warning("Keeping previous window for user %s: %s", user_id, e)
            return None

        await self.store.update_user_fields(
            user_id, {"settings.optimalStartHour": selection.start_hour}
        )
        logger.debug(
            "User %s: optimal start %02d:00 for %dh (avg %s/kWh)",
            user_id,
            selection.start_hour,
            selection.duration_hours,
            selection.average_price,
        )
        return selection.start_hour
