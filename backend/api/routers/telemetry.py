import logging

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse

from backend.api.deps import ServicesDep

logger = logging.getLogger("smartcharge.api.telemetry")
router = APIRouter(tags=["telemetry"])


@router.post("/api/telemetry", response_class=PlainTextResponse)
async def receive_telemetry(request: Request, services: ServicesDep) -> PlainTextResponse:
    """
    Fleet Telemetry webhook.

    Malformed deliveries get a 400. Anything past validation is acknowledged
    with 200 so the sender does not redeliver, even if processing failed.
    """
    try:
        payload = await request.json()
    except ValueError:
        payload = None
    if not isinstance(payload, dict):
        return PlainTextResponse("Invalid request body", status_code=400)

    vin = payload.get("vin")
    data = payload.get("data")
    if not isinstance(vin, str) or not vin.strip() or not isinstance(data, dict):
        logger.warning("Telemetry delivery without vin or data rejected")
        return PlainTextResponse("Invalid request body", status_code=400)

    try:
        ack = await services.tracker.on_telemetry(vin.strip(), data)
        if ack.plug_in_detected:
            logger.info("Telemetry for VIN %s triggered a plug-in evaluation", ack.vin)
    except Exception as e:
        logger.exception(f"Telemetry processing failed for VIN {vin}: {e}")

    return PlainTextResponse("OK", status_code=200)
