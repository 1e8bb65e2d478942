"""
Command Dispatcher

Turns a charging decision into a Tesla Fleet API command. Every dispatch
exchanges the stored refresh credential for a fresh access credential;
access credentials are never cached or persisted.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from .config import FleetConfig
from .controller import ChargeDecision
from .errors import (
    CredentialExchangeFailed,
    DispatchError,
    DispatchTimeout,
    VehicleNotFound,
)

logger = logging.getLogger(__name__)

COMMAND_ACTIONS = {
    ChargeDecision.START: "charge_start",
    ChargeDecision.STOP: "charge_stop",
}


def _mask(token: str) -> str:
    return f"****{token[-4:]}" if len(token) > 8 else "****"


@dataclass(frozen=True, repr=False)
class RefreshCredential:
    """Long-lived credential persisted per user."""

    token: str

    def __repr__(self) -> str:
        return f"RefreshCredential({_mask(self.token)})"


@dataclass(frozen=True, repr=False)
class AccessCredential:
    """
    Short-lived credential derived from a refresh credential.

    ``rotated_refresh`` is set when the token endpoint issued a new refresh
    credential alongside the access credential.
    """

    token: str
    expires_at: datetime
    rotated_refresh: Optional[RefreshCredential] = None

    def __repr__(self) -> str:
        return f"AccessCredential({_mask(self.token)}, expires_at={self.expires_at.isoformat()})"


@dataclass(frozen=True)
class TokenGrant:
    """Result of the one-time authorization-code exchange."""

    refresh: RefreshCredential
    access: AccessCredential


@dataclass(frozen=True)
class VehicleSummary:
    vehicle_id: str
    vin: str
    battery_level: Optional[int]
    is_plugged_in: bool


@dataclass
class DispatchResult:
    """Result of dispatching one decision."""

    vin: str
    action: str
    success: bool
    message: str = ""
    attempts: int = 0
    skipped: bool = False  # True in shadow mode
    duration_ms: int = 0


class FleetClient:
    """
    Async Tesla Fleet API client.

    Token calls raise CredentialExchangeFailed; vehicle calls raise
    DispatchTimeout on timeout and DispatchError on any other failure.
    """

    def __init__(
        self,
        config: FleetConfig,
        client_id: str,
        client_secret: str,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config
        self.client_id = client_id
        self.client_secret = client_secret
        self._http = http or httpx.AsyncClient(timeout=config.timeout_seconds)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _token_request(self, data: Dict[str, str]) -> Dict[str, Any]:
        try:
            response = await self._http.post(
                self.config.token_url,
                data=data,
                timeout=self.config.timeout_seconds,
            )
        except httpx.TimeoutException as e:
            raise CredentialExchangeFailed("Token endpoint timed out") from e
        except httpx.HTTPError as e:
            raise CredentialExchangeFailed(f"Token endpoint unreachable: {e}") from e

        if response.status_code != 200:
            # Body may echo credentials, keep it out of the exception
            logger.error("Token exchange rejected: HTTP %s", response.status_code)
            logger.debug("Token endpoint response: %s", response.text)
            raise CredentialExchangeFailed(f"Token exchange rejected (HTTP {response.status_code})")

        try:
            return response.json()
        except ValueError as e:
            raise CredentialExchangeFailed("Token endpoint returned invalid JSON") from e

    @staticmethod
    def _access_from(token_data: Dict[str, Any]) -> AccessCredential:
        access_token = token_data.get("access_token")
        if not access_token:
            raise CredentialExchangeFailed("Access token not found in token response")
        expires_in = int(token_data.get("expires_in", 3600))
        rotated = token_data.get("refresh_token")
        return AccessCredential(
            token=access_token,
            expires_at=datetime.now(UTC) + timedelta(seconds=expires_in),
            rotated_refresh=RefreshCredential(rotated) if rotated else None,
        )

    async def exchange(self, refresh: RefreshCredential) -> AccessCredential:
        """Exchange a refresh credential for a fresh access credential."""
        token_data = await self._token_request(
            {
                "grant_type": "refresh_token",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": refresh.token,
            }
        )
        return self._access_from(token_data)

    async def exchange_auth_code(self, code: str) -> TokenGrant:
        """One-time bootstrap: trade an authorization code for a token pair."""
        token_data = await self._token_request(
            {
                "grant_type": "authorization_code",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "code": code,
                "audience": self.config.api_base,
                "redirect_uri": self.config.redirect_uri,
            }
        )
        refresh_token = token_data.get("refresh_token")
        if not refresh_token:
            raise CredentialExchangeFailed("Refresh token not found in token response")
        access = self._access_from(token_data)
        return TokenGrant(
            refresh=RefreshCredential(refresh_token),
            access=AccessCredential(token=access.token, expires_at=access.expires_at),
        )

    async def _api_request(
        self,
        method: str,
        endpoint: str,
        access: AccessCredential,
    ) -> Dict[str, Any]:
        url = f"{self.config.api_base}{endpoint}"
        try:
            response = await self._http.request(
                method,
                url,
                headers={"Authorization": f"Bearer {access.token}"},
                timeout=self.config.timeout_seconds,
            )
            response.raise_for_status()
            return response.json()
        except httpx.TimeoutException as e:
            raise DispatchTimeout(f"{method} {endpoint} timed out") from e
        except httpx.HTTPStatusError as e:
            logger.debug("Fleet API error body: %s", e.response.text)
            raise DispatchError(f"{method} {endpoint} failed: HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise DispatchError(f"{method} {endpoint} failed: {e}") from e
        except ValueError as e:
            raise DispatchError(f"{method} {endpoint} returned invalid JSON") from e

    async def list_vehicles(self, access: AccessCredential) -> List[Dict[str, Any]]:
        data = await self._api_request("GET", "/api/1/vehicles", access)
        return data.get("response") or []

    async def get_vehicle_data(self, access: AccessCredential, vehicle_id: str) -> Dict[str, Any]:
        data = await self._api_request("GET", f"/api/1/vehicles/{vehicle_id}/vehicle_data", access)
        return data.get("response") or {}

    async def send_command(
        self, access: AccessCredential, vehicle_id: str, action: str
    ) -> Dict[str, Any]:
        data = await self._api_request(
            "POST", f"/api/1/vehicles/{vehicle_id}/command/{action}", access
        )
        return data.get("response") or {}

    async def get_vehicle_summary(self, access: AccessCredential) -> VehicleSummary:
        """Battery and plug status of the account's first vehicle."""
        vehicles = await self.list_vehicles(access)
        if not vehicles:
            raise VehicleNotFound("No vehicles found for this account")

        vehicle = vehicles[0]
        vehicle_id = str(vehicle.get("id_s") or vehicle.get("id"))
        data = await self.get_vehicle_data(access, vehicle_id)
        charge_state = data.get("charge_state") or {}
        battery = charge_state.get("battery_level")
        return VehicleSummary(
            vehicle_id=vehicle_id,
            vin=vehicle.get("vin", ""),
            battery_level=int(battery) if battery is not None else None,
            is_plugged_in=charge_state.get("charging_state") != "Disconnected",
        )


class CommandDispatcher:
    """
    Dispatches START/STOP decisions to a vehicle.

    Features:
    - Fresh access credential per dispatch
    - Bounded retry with exponential backoff on transport failures
      (never on credential failures)
    - Shadow mode: log the command instead of sending it
    """

    def __init__(
        self,
        client: FleetClient,
        retry_attempts: int = 3,
        retry_base_delay_seconds: float = 1.0,
        shadow_mode: bool = False,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.client = client
        self.retry_attempts = max(1, retry_attempts)
        self.retry_base_delay_seconds = retry_base_delay_seconds
        self.shadow_mode = shadow_mode
        self._sleep = sleep

    async def dispatch(
        self,
        refresh: RefreshCredential,
        vin: str,
        decision: ChargeDecision,
        on_refresh_rotated: Optional[Callable[[RefreshCredential], Awaitable[Any]]] = None,
    ) -> DispatchResult:
        """
        Send ``decision`` to the vehicle identified by ``vin``.

        ``on_refresh_rotated`` is awaited right after the exchange when the
        token endpoint issued a replacement refresh credential.

        Raises:
            CredentialExchangeFailed: the refresh credential was rejected
            DispatchError / DispatchTimeout: all attempts failed
        """
        start = time.time()
        action = COMMAND_ACTIONS[decision]

        access = await self.client.exchange(refresh)
        if access.rotated_refresh and on_refresh_rotated is not None:
            await on_refresh_rotated(access.rotated_refresh)

        if self.shadow_mode:
            logger.info("[SHADOW] Would send '%s' to VIN %s", action, vin)
            return DispatchResult(
                vin=vin,
                action=action,
                success=True,
                message="Shadow mode",
                skipped=True,
                duration_ms=int((time.time() - start) * 1000),
            )

        for attempt in range(1, self.retry_attempts + 1):
            try:
                logger.info("Sending command '%s' to VIN %s (attempt %d)", action, vin, attempt)
                response = await self.client.send_command(access, vin, action)
            except DispatchError as e:
                logger.warning(
                    "Command '%s' to VIN %s failed (attempt %d/%d): %s",
                    action,
                    vin,
                    attempt,
                    self.retry_attempts,
                    e,
                )
                if attempt >= self.retry_attempts:
                    logger.error(
                        "Giving up on '%s' to VIN %s after %d attempts",
                        action,
                        vin,
                        self.retry_attempts,
                    )
                    raise
                await self._sleep(self.retry_base_delay_seconds * (2 ** (attempt - 1)))
                continue

            logger.info("Command '%s' to VIN %s accepted: %s", action, vin, response)
            return DispatchResult(
                vin=vin,
                action=action,
                success=True,
                message=str(response.get("reason", "")) if response else "",
                attempts=attempt,
                duration_ms=int((time.time() - start) * 1000),
            )

