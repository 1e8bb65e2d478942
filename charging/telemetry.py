"""
Vehicle State Tracker

Applies partial vehicle telemetry to the owning user's document and
detects the moment a vehicle becomes plugged in.

Fields that are absent from an update are left untouched. A field that
is present but falsy (battery_level 0, charge port disengaged) is a real
update.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional

from .models import PlugState

if TYPE_CHECKING:
    from backend.core.store import DocumentStore

logger = logging.getLogger(__name__)

PlugInListener = Callable[[str], Awaitable[Any]]


@dataclass(frozen=True)
class TelemetryUpdate:
    """A partial vehicle update. None means "not reported in this update"."""

    is_charging: Optional[bool] = None
    is_plugged_in: Optional[bool] = None
    battery_level_percent: Optional[int] = None

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "TelemetryUpdate":
        """
        Map a Fleet Telemetry ``data`` object onto vehicle fields.

        charging_state == "Charging"   -> is_charging
        charge_port_latch == "Engaged" -> is_plugged_in
        battery_level                  -> battery_level_percent
        """
        is_charging = None
        if data.get("charging_state") is not None:
            is_charging = data["charging_state"] == "Charging"

        is_plugged_in = None
        if data.get("charge_port_latch") is not None:
            is_plugged_in = data["charge_port_latch"] == "Engaged"

        battery = None
        if data.get("battery_level") is not None:
            try:
                battery = int(round(float(data["battery_level"])))
            except (TypeError, ValueError):
                logger.warning("Ignoring unparsable battery_level %r", data["battery_level"])

        return cls(
            is_charging=is_charging,
            is_plugged_in=is_plugged_in,
            battery_level_percent=battery,
        )

    @property
    def is_empty(self) -> bool:
        return (
            self.is_charging is None
            and self.is_plugged_in is None
            and self.battery_level_percent is None
        )

    def to_partial(self) -> Dict[str, Any]:
        """Dotted-path fields for the store's merge update."""
        partial: Dict[str, Any] = {}
        if self.is_charging is not None:
            partial["vehicle.isCharging"] = self.is_charging
        if self.is_plugged_in is not None:
            partial["vehicle.isPluggedIn"] = self.is_plugged_in
        if self.battery_level_percent is not None:
            partial["vehicle.batteryLevel"] = self.battery_level_percent
        return partial


@dataclass
class TelemetryAck:
    """What happened to one telemetry delivery. Always an acknowledgement."""

    vin: str
    user_id: Optional[str] = None
    applied: Dict[str, Any] = field(default_factory=dict)
    plug_in_detected: bool = False


class VehicleStateTracker:
    """
    Merges telemetry into user documents and raises plug-in notifications.

    Updates for the same user are serialized so the before/after comparison
    always sees two consecutive snapshots.
    """

    def __init__(self, store: "DocumentStore"):
        self.store = store
        self._locks: Dict[str, asyncio.Lock] = {}
        self._listeners: List[PlugInListener] = []

    def add_plug_in_listener(self, listener: PlugInListener) -> None:
        self._listeners.append(listener)

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    async def on_telemetry(self, vin: str, data: Dict[str, Any]) -> TelemetryAck:
        """Handle one webhook delivery. Unknown VINs are acknowledged and ignored."""
        ack = TelemetryAck(vin=vin)

        match = await self.store.find_user_by_vin(vin)
        if match is None:
            logger.debug("Telemetry for unknown VIN %s ignored", vin)
            return ack
        user_id = match[0]
        ack.user_id = user_id

        update = TelemetryUpdate.from_payload(data or {})
        if update.is_empty:
            logger.debug("Telemetry for VIN %s carried no tracked fields", vin)
            return ack

        applied, plugged_in = await self.apply_vehicle_snapshot(user_id, update)
        ack.applied = applied
        ack.plug_in_detected = plugged_in
        return ack

    async def apply_vehicle_snapshot(
        self,
        user_id: str,
        update: TelemetryUpdate,
        extra_fields: Optional[Dict[str, Any]] = None,
    ) -> tuple[Dict[str, Any], bool]:
        """
        Merge ``update`` (plus any ``extra_fields``) into the user's vehicle.

        Returns the applied partial and whether a false -> true plug-in
        transition happened. Listeners are notified after the write.
        """
        async with self._lock_for(user_id):
            before_doc = await self.store.get_user(user_id) or {}
            before = (before_doc.get("vehicle") or {}).get("isPluggedIn")

            partial = update.to_partial()
            if extra_fields:
                partial.update(extra_fields)

            plugged_in = before is False and update.is_plugged_in is True
            if plugged_in:
                partial["vehicle.plugState"] = PlugState.PLUGGED_EVALUATING.value
            elif update.is_plugged_in is False:
                partial["vehicle.plugState"] = PlugState.UNPLUGGED.value

            if partial:
                await self.store.update_user_fields(user_id, partial)

        if plugged_in:
            logger.info("Vehicle plugged in for user %s", user_id)
            await self._notify_plug_in(user_id)
        return partial, plugged_in

    async def _notify_plug_in(self, user_id: str) -> None:
        for listener in self._listeners:
            try:
                await listener(user_id)
            except Exception:
                logger.exception("Plug-in listener failed for user %s", user_id)
