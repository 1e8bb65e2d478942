"""
Charging Domain Types

Dataclasses for the per-user documents the charging core reads and writes,
plus the mapping between them and the camelCase document layout.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

# Placeholder written by the account-creation flow before OAuth completes
UNSET_REFRESH_CREDENTIAL = "NEEDS_TO_BE_SET_LATER"


class PlugState(Enum):
    """Rising-edge evaluation contract for a vehicle's charge port."""

    UNPLUGGED = "UNPLUGGED"
    PLUGGED_EVALUATING = "PLUGGED_EVALUATING"
    PLUGGED_IDLE = "PLUGGED_IDLE"


class CredentialStatus(Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class ChargingSettings:
    """User-authored charging preferences plus the derived optimal start hour."""

    charging_duration_hours: int
    emergency_threshold_percent: int = 0
    target_battery_percent: int = 100
    optimal_start_hour: Optional[int] = None
    price_zone: Optional[str] = None

    @classmethod
    def from_document(cls, data: Optional[Dict[str, Any]]) -> Optional["ChargingSettings"]:
        """
        Build settings from a user's ``settings`` map.

        Returns None when the user has no usable charging duration, which
        callers treat as "skip this user" rather than as an error.
        """
        if not data:
            return None
        duration = data.get("chargingDuration")
        if isinstance(duration, bool) or not isinstance(duration, int) or duration <= 0:
            return None

        optimal = data.get("optimalStartHour")
        if isinstance(optimal, bool) or not isinstance(optimal, int) or not 0 <= optimal <= 23:
            optimal = None

        return cls(
            charging_duration_hours=duration,
            emergency_threshold_percent=int(data.get("emergencyThreshold", 0)),
            target_battery_percent=int(data.get("targetBattery", 100)),
            optimal_start_hour=optimal,
            price_zone=data.get("priceZone"),
        )

    def in_optimal_window(self, hour: int) -> bool:
        """True if ``hour`` lies in [optimal_start_hour, optimal_start_hour + duration)."""
        if self.optimal_start_hour is None:
            return False
        return (
            self.optimal_start_hour
            <= hour
            < self.optimal_start_hour + self.charging_duration_hours
        )


@dataclass(frozen=True)
class VehicleState:
    """Last known telemetry snapshot for one vehicle."""

    vin: Optional[str] = None
    is_charging: Optional[bool] = None
    is_plugged_in: Optional[bool] = None
    battery_level_percent: Optional[int] = None
    plug_state: PlugState = PlugState.UNPLUGGED

    @classmethod
    def from_document(cls, data: Optional[Dict[str, Any]]) -> "VehicleState":
        data = data or {}
        battery = data.get("batteryLevel")
        try:
            plug_state = PlugState(data.get("plugState", PlugState.UNPLUGGED.value))
        except ValueError:
            plug_state = PlugState.UNPLUGGED
        return cls(
            vin=data.get("vin"),
            is_charging=data.get("isCharging"),
            is_plugged_in=data.get("isPluggedIn"),
            battery_level_percent=int(battery) if battery is not None else None,
            plug_state=plug_state,
        )


@dataclass(frozen=True)
class UserRecord:
    """A user document split into the parts the charging core cares about."""

    user_id: str
    settings: Optional[ChargingSettings]
    vehicle: VehicleState
    refresh_credential: Optional[str]
    charge_override: bool = False

    @classmethod
    def from_document(cls, user_id: str, doc: Dict[str, Any]) -> "UserRecord":
        return cls(
            user_id=user_id,
            settings=ChargingSettings.from_document(doc.get("settings")),
            vehicle=VehicleState.from_document(doc.get("vehicle")),
            refresh_credential=doc.get("refreshCredential"),
            charge_override=doc.get("chargeOverride") is True,
        )

    @property
    def is_connected(self) -> bool:
        """True if the user completed the OAuth bootstrap."""
        token = self.refresh_credential
        return bool(token) and token != UNSET_REFRESH_CREDENTIAL
