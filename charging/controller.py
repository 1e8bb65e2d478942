"""
Decision Policy

Decides whether a vehicle should be charging right now.

Rules are evaluated in priority order and the first match wins:
1. Override - the user asked for an immediate charge
2. Emergency - battery below the emergency threshold
3. Bonus - the current price is negative (the grid pays to consume)
4. Optimal window - inside the cheapest window and below the target level
5. Otherwise stop
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional

from .errors import MissingPriceData
from .models import ChargingSettings, VehicleState

logger = logging.getLogger(__name__)


class ChargeDecision(Enum):
    START = "START"
    STOP = "STOP"


class DecisionReason(Enum):
    OVERRIDE = "override"
    EMERGENCY = "emergency"
    BONUS = "bonus"
    OPTIMAL_WINDOW = "optimal_window"
    DEFAULT = "default"


@dataclass(frozen=True)
class PolicyResult:
    """The policy's decision and the rule that produced it."""

    decision: ChargeDecision
    reason: DecisionReason
    message: str = ""


def decide(
    state: VehicleState,
    settings: Optional[ChargingSettings],
    current_price: Optional[Decimal],
    current_hour: Optional[int],
    override_requested: bool = False,
) -> PolicyResult:
    """
    Evaluate the charging rules for one vehicle.

    A battery level that has never been reported cannot satisfy the
    emergency or window rules, and neither can a user without settings.
    Price data is only needed once the override rule has not matched.

    Args:
        state: Latest vehicle snapshot
        settings: The user's charging settings, None if never configured
        current_price: Price for the current hour in currency/kWh, None if unknown
        current_hour: Hour index of the current rate in the day's series, None if unknown
        override_requested: True when a manual override is being consumed

    Returns:
        PolicyResult with START or STOP

    Raises:
        MissingPriceData: no override and no rate for the current hour
    """
    # Priority 1: Manual override
    if override_requested:
        return PolicyResult(
            decision=ChargeDecision.START,
            reason=DecisionReason.OVERRIDE,
            message="Manual override requested",
        )

    if current_price is None or current_hour is None:
        raise MissingPriceData("No price for the current hour")

    battery = state.battery_level_percent

    # Priority 2: Emergency charge
    if (
        settings is not None
        and battery is not None
        and battery < settings.emergency_threshold_percent
    ):
        return PolicyResult(
            decision=ChargeDecision.START,
            reason=DecisionReason.EMERGENCY,
            message=f"Battery at {battery}% is below emergency threshold "
            f"{settings.emergency_threshold_percent}%",
        )

    # Priority 3: Negative price bonus
    if current_price < 0:
        return PolicyResult(
            decision=ChargeDecision.START,
            reason=DecisionReason.BONUS,
            message=f"Negative price {current_price}/kWh",
        )

    # Priority 4: Optimal window
    if (
        settings is not None
        and settings.in_optimal_window(current_hour)
        and battery is not None
        and battery < settings.target_battery_percent
    ):
        return PolicyResult(
            decision=ChargeDecision.START,
            reason=DecisionReason.OPTIMAL_WINDOW,
            message=f"Hour {current_hour} is inside the optimal window starting at "
            f"{settings.optimal_start_hour} ({settings.charging_duration_hours}h)",
        )

    return PolicyResult(
        decision=ChargeDecision.STOP,
        reason=DecisionReason.DEFAULT,
        message="Outside optimal window and no charge condition met",
    )
