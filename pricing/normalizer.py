"""
Price Normalizer

Turns a raw day-ahead price feed (1-based positions, prices per MWh and a
period start) into an ordered hourly rate series with absolute timestamps.
Also parses the ENTSO-E Publication_MarketDocument that carries the feed.
"""

from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

from charging.errors import MalformedFeed

logger = logging.getLogger(__name__)

# Feed prices are per MWh, rates are per kWh
MWH_TO_KWH = Decimal(1000)

# A delivery day has at most 25 hours (autumn DST change)
MAX_HOURS_PER_DAY = 25

_RESOLUTION_RE = re.compile(r"^PT(\d+)M$")


@dataclass(frozen=True)
class RawPricePoint:
    """A single <Point> from the upstream feed, still in feed units."""

    position: str | int
    price_amount: str | int | float | Decimal


@dataclass(frozen=True)
class RawPriceFeed:
    """One period of upstream price points."""

    period_start: str
    points: Tuple[RawPricePoint, ...]
    resolution: str = "PT60M"


@dataclass(frozen=True)
class HourlyRate:
    """Price for one hour of the delivery day."""

    hour: int
    price: Decimal  # currency/kWh
    timestamp: datetime  # UTC start of the hour

    def covers(self, instant: datetime) -> bool:
        return self.timestamp <= instant < self.timestamp + timedelta(hours=1)


@dataclass(frozen=True)
class PriceSeries:
    """
    The published rate series for one pricing zone.

    Attributes:
        zone: Pricing zone key (e.g. "NL")
        rates: HourlyRate values ordered by hour
        last_updated: When the series was published (UTC)
    """

    zone: str
    rates: Tuple[HourlyRate, ...]
    last_updated: datetime

    @property
    def prices(self) -> List[Decimal]:
        return [rate.price for rate in self.rates]

    def rate_at(self, instant: datetime) -> Optional[HourlyRate]:
        """Return the rate whose hour contains ``instant``, if any."""
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=UTC)
        instant = instant.astimezone(UTC)
        for rate in self.rates:
            if rate.covers(instant):
                return rate
        return None

    def to_document(self) -> Dict[str, Any]:
        """Serialize for the document store. Prices are kept as decimal strings."""
        return {
            "zone": self.zone,
            "lastUpdated": self.last_updated.isoformat(),
            "hourlyRates": {
                str(rate.hour): {
                    "price": str(rate.price),
                    "time": rate.timestamp.isoformat(),
                }
                for rate in self.rates
            },
        }

    @classmethod
    def from_document(cls, zone: str, doc: Dict[str, Any]) -> "PriceSeries":
        hourly = doc.get("hourlyRates") or {}
        try:
            rates = tuple(
                HourlyRate(
                    hour=int(hour),
                    price=Decimal(str(entry["price"])),
                    timestamp=_parse_instant(entry["time"]),
                )
                for hour, entry in sorted(hourly.items(), key=lambda item: int(item[0]))
            )
            last_updated = _parse_instant(doc["lastUpdated"]) if doc.get("lastUpdated") else None
        except (KeyError, TypeError, ValueError, InvalidOperation) as e:
            raise MalformedFeed(f"Stored price series for {zone} is unreadable: {e}") from e
        return cls(zone=zone, rates=rates, last_updated=last_updated or datetime.now(UTC))


def _parse_instant(value: str) -> datetime:
    """Parse an ISO-8601 instant; naive values are taken as UTC."""
    parsed = datetime.fromisoformat(value.strip())
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def normalize_prices(feed: RawPriceFeed) -> List[HourlyRate]:
    """
    Convert a raw feed into hourly rates.

    hour = position - 1, price = raw / 1000, timestamp = period start + hour.
    Sub-hourly feeds (PT15M, PT30M) are averaged into hourly rates first.

    Raises:
        MalformedFeed: no points, positions not exactly 1..N, a resolution
            that does not divide an hour, a partial final hour, more than
            25 hours, or an unparsable period start, position or price.
    """
    if not feed.points:
        raise MalformedFeed("Price feed contains no points")

    try:
        period_start = _parse_instant(str(feed.period_start))
    except ValueError as e:
        raise MalformedFeed(f"Unparsable period start {feed.period_start!r}") from e

    by_position: Dict[int, Decimal] = {}
    for point in feed.points:
        try:
            position = int(str(point.position).strip())
            amount = Decimal(str(point.price_amount).strip())
        except (ValueError, InvalidOperation) as e:
            raise MalformedFeed(f"Unparsable price point {point!r}") from e
        if not amount.is_finite():
            raise MalformedFeed(f"Non-finite price in point {point!r}")
        if position in by_position:
            raise MalformedFeed(f"Duplicate position {position}")
        by_position[position] = amount

    expected = set(range(1, len(by_position) + 1))
    if set(by_position) != expected:
        raise MalformedFeed(
            f"Positions are not a contiguous 1..{len(by_position)} range: "
            f"{sorted(by_position)}"
        )

    points_per_hour = _points_per_hour(feed.resolution)
    if len(by_position) % points_per_hour:
        raise MalformedFeed(
            f"{len(by_position)} points at {feed.resolution} do not make whole hours"
        )
    hours = len(by_position) // points_per_hour
    if hours > MAX_HOURS_PER_DAY:
        raise MalformedFeed(f"Feed spans {hours} hours, at most {MAX_HOURS_PER_DAY} expected")

    amounts = [by_position[position] for position in sorted(by_position)]
    rates = []
    for hour in range(hours):
        chunk = amounts[hour * points_per_hour : (hour + 1) * points_per_hour]
        mean = sum(chunk, Decimal(0)) / points_per_hour
        rates.append(
            HourlyRate(
                hour=hour,
                price=mean / MWH_TO_KWH,
                timestamp=period_start + timedelta(hours=hour),
            )
        )
    return rates


def _points_per_hour(resolution: str) -> int:
    match = _RESOLUTION_RE.match(resolution.strip())
    minutes = int(match.group(1)) if match else 0
    if minutes <= 0 or 60 % minutes:
        raise MalformedFeed(f"Unsupported resolution {resolution!r}")
    return 60 // minutes


def build_price_series(
    zone: str, feed: RawPriceFeed, published_at: Optional[datetime] = None
) -> PriceSeries:
    """Normalize a feed and wrap it as the zone's new series."""
    rates = normalize_prices(feed)
    return PriceSeries(
        zone=zone,
        rates=tuple(rates),
        last_updated=published_at or datetime.now(UTC),
    )


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _children(element: ET.Element, name: str) -> List[ET.Element]:
    return [child for child in element if _local_name(child.tag) == name]


def _child_text(element: ET.Element, name: str) -> Optional[str]:
    for child in element:
        if _local_name(child.tag) == name:
            return child.text
    return None


def parse_day_ahead_document(xml_text: str | bytes) -> RawPriceFeed:
    """
    Extract the price period from an ENTSO-E day-ahead (A44) document.

    The last TimeSeries in the document is used, and its first Period.
    Element names are matched without their namespace.
    """
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as e:
        raise MalformedFeed(f"Price document is not valid XML: {e}") from e

    if _local_name(root.tag) != "Publication_MarketDocument":
        # ENTSO-E answers "no data" with an Acknowledgement_MarketDocument
        raise MalformedFeed(f"Unexpected document {_local_name(root.tag)!r}")

    time_series = _children(root, "TimeSeries")
    if not time_series:
        raise MalformedFeed("Price document contains no TimeSeries")

    periods = _children(time_series[-1], "Period")
    if not periods:
        raise MalformedFeed("TimeSeries contains no Period")
    period = periods[0]

    intervals = _children(period, "timeInterval")
    start = _child_text(intervals[0], "start") if intervals else None
    if not start:
        raise MalformedFeed("Period has no timeInterval start")

    points = tuple(
        RawPricePoint(
            position=(_child_text(point, "position") or "").strip(),
            price_amount=(_child_text(point, "price.amount") or "").strip(),
        )
        for point in _children(period, "Point")
    )
    if not points:
        raise MalformedFeed("Period contains no Points")

    resolution = (_child_text(period, "resolution") or "PT60M").strip()
    return RawPriceFeed(period_start=start, points=points, resolution=resolution)
