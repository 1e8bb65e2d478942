"""
ENTSO-E Day-Ahead Price Client

Fetches the day-ahead (A44) price document for one bidding zone.
"""

import logging
from datetime import date, datetime, time, timedelta
from typing import Optional

import httpx
import pytz

from charging.errors import FeedUnavailable

logger = logging.getLogger(__name__)

DAY_AHEAD_DOCUMENT_TYPE = "A44"


def entsoe_period(day: date, timezone: str) -> tuple[str, str]:
    """
    periodStart/periodEnd for the local calendar day, in ENTSO-E's
    yyyyMMddHHmm UTC format.
    """
    tz = pytz.timezone(timezone)
    start_local = tz.localize(datetime.combine(day, time.min))
    end_local = tz.localize(datetime.combine(day + timedelta(days=1), time.min))
    fmt = "%Y%m%d%H%M"
    return (
        start_local.astimezone(pytz.utc).strftime(fmt),
        end_local.astimezone(pytz.utc).strftime(fmt),
    )


class EntsoeClient:
    def __init__(
        self,
        api_key: str,
        api_url: str = "https://web-api.tp.entsoe.eu/api",
        timeout_seconds: float = 30.0,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.api_url = api_url
        self.timeout_seconds = timeout_seconds
        self._http = http or httpx.AsyncClient(timeout=timeout_seconds)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def fetch_day_ahead(self, area_code: str, day: date, timezone: str) -> str:
        """Return the raw XML document for ``day`` in ``area_code``."""
        if not self.api_key:
            raise FeedUnavailable("ENTSO-E API key is not configured")

        period_start, period_end = entsoe_period(day, timezone)
        params = {
            "securityToken": self.api_key,
            "documentType": DAY_AHEAD_DOCUMENT_TYPE,
            "in_Domain": area_code,
            "out_Domain": area_code,
            "periodStart": period_start,
            "periodEnd": period_end,
        }
        logger.info("Fetching day-ahead prices for %s (%s - %s)", area_code, period_start, period_end)

        try:
            response = await self._http.get(
                self.api_url, params=params, timeout=self.timeout_seconds
            )
        except httpx.TimeoutException as e:
            raise FeedUnavailable("ENTSO-E request timed out") from e
        except httpx.HTTPError as e:
            raise FeedUnavailable(f"ENTSO-E request failed: {e}") from e

        if response.status_code != 200:
            raise FeedUnavailable(f"ENTSO-E returned HTTP {response.status_code}")
        return response.text
