"""
Charging Engine

Orchestrates one user's decision pipeline:
1. Re-reading the user's document (same-or-newer than the triggering snapshot)
2. Resolving the current hour's rate from the zone's price series
3. Evaluating the decision policy
4. Dispatching the decision to the vehicle
5. Recording plug state and credential status

Evaluation happens only on a plug-in rising edge and on an override
assertion, never periodically while the vehicle stays plugged in.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Set

from pricing.normalizer import HourlyRate, PriceSeries

from .actions import CommandDispatcher, RefreshCredential
from .controller import ChargeDecision, PolicyResult, decide
from .errors import (
    CredentialExchangeFailed,
    DispatchError,
    MalformedFeed,
    MissingPriceData,
)
from .models import CredentialStatus, PlugState, UserRecord
from .override import OVERRIDE_FIELD, OverrideGate

if TYPE_CHECKING:
    from backend.core.store import DocumentStore

logger = logging.getLogger(__name__)


@dataclass
class EvaluationOutcome:
    """What one evaluation did for one user."""

    user_id: str
    trigger: str  # "plug_in" or "override"
    decision: Optional[ChargeDecision] = None
    reason: Optional[str] = None
    dispatched: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "trigger": self.trigger,
            "decision": self.decision.value if self.decision else None,
            "reason": self.reason,
            "dispatched": self.dispatched,
            "error": self.error,
        }


class ChargingEngine:
    """
    Event-driven charging decisions.

    Wire ``handle_plug_in`` as a VehicleStateTracker plug-in listener.
    """

    def __init__(
        self,
        store: "DocumentStore",
        dispatcher: CommandDispatcher,
        override_gate: Optional[OverrideGate] = None,
        default_zone: str = "NL",
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.override_gate = override_gate or OverrideGate(store)
        self.default_zone = default_zone
        self._now = now or (lambda: datetime.now(UTC))
        # Users whose override was armed by request_override and not yet consumed
        self._armed_in_process: Set[str] = set()

    async def _current_rate(self, zone: str) -> Optional[HourlyRate]:
        doc = await self.store.get_price_series(zone)
        if not doc:
            return None
        try:
            series = PriceSeries.from_document(zone, doc)
        except MalformedFeed as e:
            logger.error("Stored price series for %s unreadable: %s", zone, e)
            return None
        return series.rate_at(self._now())

    async def handle_plug_in(self, user_id: str) -> EvaluationOutcome:
        """Evaluate and dispatch after a plug-in transition."""
        outcome = EvaluationOutcome(user_id=user_id, trigger="plug_in")

        doc = await self.store.get_user(user_id)
        if doc is None:
            outcome.error = "User not found"
            logger.warning("Plug-in for unknown user %s ignored", user_id)
            return outcome
        record = UserRecord.from_document(user_id, doc)

        if record.vehicle.is_plugged_in is not True:
            outcome.error = "Vehicle no longer plugged in"
            logger.info("User %s unplugged before evaluation, skipping", user_id)
            return outcome

        try:
            if record.settings is None:
                outcome.error = "No charging settings"
                logger.info("User %s has no charging settings, not evaluating", user_id)
                return outcome

            zone = record.settings.price_zone or self.default_zone
            rate = await self._current_rate(zone)
            try:
                result = decide(
                    record.vehicle,
                    record.settings,
                    rate.price if rate else None,
                    rate.hour if rate else None,
                )
            except MissingPriceData as e:
                outcome.error = str(e)
                logger.error(
                    "No price data for zone %s at %s, not dispatching for user %s",
                    zone,
                    self._now().isoformat(),
                    user_id,
                )
                return outcome

            await self._dispatch(record, result, outcome)
            return outcome
        finally:
            await self._set_plug_state(user_id, PlugState.PLUGGED_IDLE)

    async def handle_override(self, user_id: str) -> EvaluationOutcome:
        """
        Consume a pending override and force a START.

        Only the caller that wins the compare-and-set dispatches; the flag is
        already cleared by then, so a failed dispatch is not retried.
        """
        outcome = EvaluationOutcome(user_id=user_id, trigger="override")

        if not await self.override_gate.claim(user_id):
            outcome.error = "No pending override"
            return outcome

        doc = await self.store.get_user(user_id) or {}
        record = UserRecord.from_document(user_id, doc)
        result = decide(record.vehicle, record.settings, None, None, override_requested=True)
        await self._dispatch(record, result, outcome)
        return outcome

    async def request_override(self, user_id: str) -> EvaluationOutcome:
        """
        Arm the override on the user's behalf and consume it immediately.

        The pending-override sweep skips the user meanwhile, so the flag this
        call arms is always consumed by this call.
        """
        self._armed_in_process.add(user_id)
        try:
            await self.override_gate.arm(user_id)
            return await self.handle_override(user_id)
        finally:
            self._armed_in_process.discard(user_id)

    async def process_pending_overrides(self) -> List[EvaluationOutcome]:
        """Consume every override flag that was set outside this process."""
        users = await self.store.list_users()
        pending = [
            user_id
            for user_id, doc in users.items()
            if doc.get(OVERRIDE_FIELD) is True and user_id not in self._armed_in_process
        ]
        if not pending:
            return []

        results = await asyncio.gather(
            *(self.handle_override(user_id) for user_id in pending),
            return_exceptions=True,
        )
        outcomes = []
        for user_id, result in zip(pending, results):
            if isinstance(result, BaseException):
                logger.error("Override processing failed for user %s: %s", user_id, result)
                outcomes.append(
                    EvaluationOutcome(user_id=user_id, trigger="override", error=str(result))
                )
            else:
                outcomes.append(result)
        return outcomes

    async def _dispatch(
        self, record: UserRecord, result: PolicyResult, outcome: EvaluationOutcome
    ) -> None:
        outcome.decision = result.decision
        outcome.reason = result.reason.value
        logger.info(
            "Decision for user %s: %s (%s) %s",
            record.user_id,
            result.decision.value,
            result.reason.value,
            result.message,
        )

        if not record.is_connected:
            outcome.error = "Vehicle account not connected"
            logger.warning("User %s has no refresh credential, not dispatching", record.user_id)
            return
        if not record.vehicle.vin:
            outcome.error = "No vehicle registered"
            logger.warning("User %s has no vehicle VIN, not dispatching", record.user_id)
            return

        async def persist_rotated(refresh: RefreshCredential) -> None:
            await self.store.update_user_fields(record.user_id, {"refreshCredential": refresh.token})

        try:
            await self.dispatcher.dispatch(
                RefreshCredential(record.refresh_credential),
                record.vehicle.vin,
                result.decision,
                on_refresh_rotated=persist_rotated,
            )
            outcome.dispatched = True
        except CredentialExchangeFailed as e:
            outcome.error = f"Account disconnected: {e}"
            logger.error("Credential exchange failed for user %s: %s", record.user_id, e)
            await self.store.update_user_fields(
                record.user_id, {"credentialStatus": CredentialStatus.DISCONNECTED.value}
            )
        except DispatchError as e:
            outcome.error = str(e)
            logger.error("Dispatch failed for user %s: %s", record.user_id, e)

    async def _set_plug_state(self, user_id: str, state: PlugState) -> None:
        # Don't overwrite UNPLUGGED written by telemetry while we were evaluating
        await self.store.compare_and_set(
            user_id,
            "vehicle.plugState",
            PlugState.PLUGGED_EVALUATING.value,
            state.value,
        )
