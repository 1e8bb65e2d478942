import logging
import os
from datetime import UTC, datetime
from typing import Any, Dict

from fastapi import APIRouter

from backend.api.deps import ServicesDep

logger = logging.getLogger("smartcharge.api.system")
router = APIRouter(tags=["system"])

APP_VERSION = "1.0.0"


@router.get("/api/health")
async def health_check(services: ServicesDep) -> Dict[str, Any]:
    """Liveness plus scheduler and price series status."""
    zones: Dict[str, Any] = {}
    for zone in services.config.pricing.zones:
        doc = await services.store.get_price_series(zone)
        zones[zone] = {
            "published": bool(doc),
            "last_updated": (doc or {}).get("lastUpdated"),
        }

    return {
        "status": "ok",
        "healthy": True,
        "checked_at": datetime.now(UTC).isoformat(),
        "scheduler": services.scheduler.status.to_dict(),
        "zones": zones,
        "shadow_mode": services.config.fleet.shadow_mode,
    }


@router.get("/api/version")
async def get_version() -> Dict[str, str]:
    return {"version": os.getenv("SMARTCHARGE_VERSION", APP_VERSION)}
