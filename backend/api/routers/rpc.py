"""
Callable RPCs used by the mobile app.

Every endpoint requires a bearer token; failures are reported through
RpcError with one of the fixed status categories. Upstream response bodies
are logged, never returned.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter
from pydantic import BaseModel

from backend.api.deps import ServicesDep, UserDep
from backend.api.errors import RpcError, RpcRoute
from backend.services.container import Services
from charging.actions import AccessCredential, RefreshCredential, VehicleSummary
from charging.errors import CredentialExchangeFailed, DispatchError, VehicleNotFound
from charging.models import CredentialStatus, UserRecord
from charging.telemetry import TelemetryUpdate

logger = logging.getLogger("smartcharge.api.rpc")
router = APIRouter(prefix="/api/rpc", tags=["rpc"], route_class=RpcRoute)


# --- Models ---


class ExchangeAuthCodeRequest(BaseModel):
    code: Optional[str] = None
    userId: Optional[str] = None


class UserRequest(BaseModel):
    userId: Optional[str] = None


# --- Helpers ---


def _check_caller(user_id: str, claimed: Optional[str]) -> None:
    if claimed is not None and claimed != user_id:
        raise RpcError("unauthenticated", "Caller does not match userId.")


async def _fetch_summary(services: Services, access: AccessCredential) -> VehicleSummary:
    try:
        return await services.fleet.get_vehicle_summary(access)
    except VehicleNotFound as e:
        raise RpcError("failed-precondition", "No vehicles found for this Tesla account.") from e


async def _store_snapshot(
    services: Services,
    user_id: str,
    summary: VehicleSummary,
    extra_fields: Dict[str, Any],
) -> None:
    update = TelemetryUpdate(
        is_plugged_in=summary.is_plugged_in,
        battery_level_percent=summary.battery_level,
    )
    fields = {"vehicle.vin": summary.vin}
    fields.update(extra_fields)
    await services.tracker.apply_vehicle_snapshot(user_id, update, extra_fields=fields)


# --- Routes ---


@router.post("/exchangeAuthCode")
async def exchange_auth_code(
    services: ServicesDep,
    user_id: UserDep,
    body: Optional[ExchangeAuthCodeRequest] = None,
) -> Dict[str, Any]:
    """Trade a Tesla authorization code for a stored refresh credential."""
    body = body or ExchangeAuthCodeRequest()
    _check_caller(user_id, body.userId)
    if not body.code:
        raise RpcError("invalid-argument", 'The function must be called with a "code" argument.')

    logger.info("Exchanging auth code for user %s", user_id)
    try:
        grant = await services.fleet.exchange_auth_code(body.code)
        summary = await _fetch_summary(services, grant.access)
    except (CredentialExchangeFailed, DispatchError) as e:
        logger.error("Error exchanging auth code for user %s: %s", user_id, e)
        raise RpcError("internal", "Failed to connect to Tesla.") from e

    if await services.store.get_user(user_id) is None:
        await services.store.put_user(user_id, {})

    await _store_snapshot(
        services,
        user_id,
        summary,
        {
            "refreshCredential": grant.refresh.token,
            "credentialStatus": CredentialStatus.CONNECTED.value,
        },
    )
    logger.info("Stored credential and initial vehicle data for user %s", user_id)
    return {"success": True, "message": "Tesla account connected!"}


@router.post("/refreshVehicleData")
async def refresh_vehicle_data(
    services: ServicesDep,
    user_id: UserDep,
    body: Optional[UserRequest] = None,
) -> Dict[str, Any]:
    """Fetch battery and plug status from the vehicle and store them."""
    _check_caller(user_id, body.userId if body else None)
    logger.info("Refreshing vehicle data for user %s", user_id)

    doc = await services.store.get_user(user_id)
    if doc is None:
        raise RpcError("not-found", "User not found.")
    record = UserRecord.from_document(user_id, doc)
    if not record.is_connected:
        raise RpcError("failed-precondition", "Tesla account not connected.")

    try:
        access = await services.fleet.exchange(RefreshCredential(record.refresh_credential))
    except CredentialExchangeFailed as e:
        logger.error("Credential exchange failed for user %s: %s", user_id, e)
        await services.store.update_user_fields(
            user_id, {"credentialStatus": CredentialStatus.DISCONNECTED.value}
        )
        raise RpcError("internal", "Failed to refresh vehicle data.") from e

    # Persist a rotated credential before anything below can fail
    if access.rotated_refresh:
        await services.store.update_user_fields(
            user_id, {"refreshCredential": access.rotated_refresh.token}
        )

    try:
        summary = await _fetch_summary(services, access)
    except DispatchError as e:
        logger.error("Error refreshing vehicle data for user %s: %s", user_id, e)
        raise RpcError("internal", "Failed to refresh vehicle data.") from e

    await _store_snapshot(
        services, user_id, summary, {"credentialStatus": CredentialStatus.CONNECTED.value}
    )
    logger.info("Refreshed vehicle data for user %s", user_id)
    return {"success": True, "message": "Vehicle data refreshed!"}


@router.post("/requestChargeOverride")
async def request_charge_override(
    services: ServicesDep,
    user_id: UserDep,
    body: Optional[UserRequest] = None,
) -> Dict[str, Any]:
    """Arm the override and start charging now, regardless of price."""
    _check_caller(user_id, body.userId if body else None)

    doc = await services.store.get_user(user_id)
    if doc is None:
        raise RpcError("not-found", "User not found.")
    record = UserRecord.from_document(user_id, doc)
    if not record.is_connected:
        raise RpcError("failed-precondition", "Tesla account not connected.")
    if not record.vehicle.vin:
        raise RpcError("failed-precondition", "No vehicle registered.")

    outcome = await services.engine.request_override(user_id)
    if not outcome.dispatched:
        logger.error("Override for user %s not dispatched: %s", user_id, outcome.error)
        raise RpcError("internal", "Failed to start charging.")
    return {"success": True, "message": "Charging started.", "outcome": outcome.to_dict()}
