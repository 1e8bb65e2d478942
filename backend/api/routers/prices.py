import logging
from typing import Any, Dict

from fastapi import APIRouter, HTTPException

from backend.api.deps import ServicesDep
from charging.errors import FeedUnavailable, MalformedFeed
from pricing.normalizer import PriceSeries

logger = logging.getLogger("smartcharge.api.prices")
router = APIRouter(prefix="/api/prices", tags=["prices"])


@router.get("/{zone}")
async def get_prices(zone: str, services: ServicesDep) -> Dict[str, Any]:
    """The published price series for a zone."""
    doc = await services.store.get_price_series(zone)
    if not doc:
        raise HTTPException(404, f"No price series for zone {zone}")
    try:
        PriceSeries.from_document(zone, doc)
    except MalformedFeed as e:
        raise HTTPException(500, f"Stored price series for {zone} is unreadable") from e
    return doc


@router.post("/{zone}/refresh")
async def refresh_prices(zone: str, services: ServicesDep) -> Dict[str, Any]:
    """Manually trigger the day-ahead refresh for one zone."""
    try:
        result = await services.refresher.refresh_prices(zone)
    except ValueError as e:
        raise HTTPException(404, str(e)) from e
    except FeedUnavailable as e:
        logger.error("Manual price refresh for %s failed: %s", zone, e)
        raise HTTPException(502, f"Price feed unavailable: {e}") from e
    except MalformedFeed as e:
        logger.error("Manual price refresh for %s got a malformed feed: %s", zone, e)
        raise HTTPException(502, f"Price feed malformed: {e}") from e

    return {
        "status": "success",
        "zone": result.zone,
        "hours": len(result.series.rates),
        "last_updated": result.series.last_updated.isoformat(),
        "windows": result.windows.to_dict() if result.windows else None,
    }
