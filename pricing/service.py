"""
Price Refresh Service

Fetches the day-ahead feed for a zone, publishes the normalized series
and recomputes every user's optimal window for that zone.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Callable, Dict, Optional

import pytz

from charging.config import PricingConfig
from charging.errors import PriceFeedError

from .feed import EntsoeClient
from .normalizer import PriceSeries, build_price_series, parse_day_ahead_document
from .windows import FanOutReport, OptimalWindowPlanner

if TYPE_CHECKING:
    from backend.core.store import DocumentStore

logger = logging.getLogger(__name__)


@dataclass
class RefreshResult:
    zone: str
    series: PriceSeries
    windows: Optional[FanOutReport] = None


class PriceRefresher:
    """
    Single writer of the zone price series documents.

    A failed refresh raises and leaves the previously published series in
    place until the next successful run.
    """

    def __init__(
        self,
        store: "DocumentStore",
        client: EntsoeClient,
        planner: OptimalWindowPlanner,
        config: PricingConfig,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.client = client
        self.planner = planner
        self.config = config
        self._now = now or (lambda: datetime.now(UTC))

    async def refresh_prices(self, zone: str) -> RefreshResult:
        """
        Refresh one zone.

        Raises:
            ValueError: zone is not configured
            FeedUnavailable / MalformedFeed: nothing was published
        """
        zone_config = self.config.zones.get(zone)
        if zone_config is None:
            raise ValueError(f"Unknown pricing zone {zone!r}")

        now = self._now()
        local_day = now.astimezone(pytz.timezone(self.config.timezone)).date()

        xml_text = await self.client.fetch_day_ahead(
            zone_config.area_code, local_day, self.config.timezone
        )
        feed = parse_day_ahead_document(xml_text)
        series = build_price_series(zone, feed, published_at=now)

        await self.store.put_price_series(zone, series.to_document())
        logger.info(
            "Published %d hourly rates for %s (%s .. %s)",
            len(series.rates),
            zone,
            series.rates[0].timestamp.isoformat(),
            series.rates[-1].timestamp.isoformat(),
        )

        result = RefreshResult(zone=zone, series=series)
        try:
            result.windows = await self.planner.recompute(zone, series)
        except Exception:
            # Prices are published; windows are recomputed on the next refresh
            logger.exception("Optimal window recompute failed for %s", zone)
        return result

    async def refresh_all(self) -> Dict[str, Optional[RefreshResult]]:
        """Refresh every configured zone; a failing zone maps to None."""
        results: Dict[str, Optional[RefreshResult]] = {}
        for zone in self.config.zones:
            try:
                results[zone] = await self.refresh_prices(zone)
            except PriceFeedError as e:
                logger.error("Price refresh for %s failed, keeping previous series: %s", zone, e)
                results[zone] = None
        return results
