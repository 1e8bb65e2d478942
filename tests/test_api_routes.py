"""
Tests for the HTTP surface: telemetry webhook, RPCs, OAuth redirect,
health and price endpoints.

The app is built around an in-memory store, and the Fleet and ENTSO-E
APIs are served by httpx.MockTransport.
"""

import asyncio
from unittest.mock import AsyncMock
from urllib.parse import parse_qs

import httpx
import pytest
from fastapi.testclient import TestClient

from backend.core.store import MemoryDocumentStore
from backend.main import create_app
from backend.services.container import build_services
from charging.config import AppConfig, FleetConfig, SchedulerConfig, Secrets

TOKEN = "test-token-u1"
AUTH = {"Authorization": f"Bearer {TOKEN}"}

ENTSOE_DOCUMENT = (
    "<Publication_MarketDocument><TimeSeries><Period>"
    "<timeInterval><start>2025-01-14T23:00Z</start></timeInterval>"
    "<Point><position>1</position><price.amount>50</price.amount></Point>"
    "<Point><position>2</position><price.amount>-5</price.amount></Point>"
    "</Period></TimeSeries></Publication_MarketDocument>"
)


class FakeTesla:
    def __init__(self):
        self.token_status = 200
        self.vehicles = [{"id_s": "111", "vin": "VIN1"}]
        self.rotated_refresh: str | None = None
        self.commands: list[str] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/oauth2/v3/token":
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "login_required"})
            form = parse_qs(request.content.decode())
            body = {"access_token": "access-1", "expires_in": 3600}
            if form["grant_type"][0] == "authorization_code":
                body["refresh_token"] = "refresh-from-code"
            elif self.rotated_refresh:
                body["refresh_token"] = self.rotated_refresh
            return httpx.Response(200, json=body)
        if request.url.path == "/api/1/vehicles":
            return httpx.Response(200, json={"response": self.vehicles})
        if request.url.path.endswith("/vehicle_data"):
            return httpx.Response(
                200,
                json={"response": {"charge_state": {"battery_level": 42, "charging_state": "Stopped"}}},
            )
        if "/command/" in request.url.path:
            self.commands.append(request.url.path.rsplit("/", 1)[-1])
            return httpx.Response(200, json={"response": {"result": True}})
        return httpx.Response(404)


@pytest.fixture
def tesla():
    return FakeTesla()


@pytest.fixture
def store():
    return MemoryDocumentStore()


@pytest.fixture
def client(tesla, store):
    config = AppConfig(
        fleet=FleetConfig(retry_attempts=1),
        scheduler=SchedulerConfig(enabled=False),
        secrets=Secrets(
            entsoe_api_key="entsoe-key",
            tesla_client_id="cid",
            tesla_client_secret="secret",
            api_tokens={TOKEN: "u1"},
        ),
    )
    services = build_services(
        config,
        store=store,
        fleet_http=httpx.AsyncClient(transport=httpx.MockTransport(tesla.handler)),
        entsoe_http=httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, text=ENTSOE_DOCUMENT))
        ),
    )
    with TestClient(create_app(services=services), follow_redirects=False) as test_client:
        yield test_client


def _connected_user(**vehicle) -> dict:
    return {
        "refreshCredential": "refresh-1",
        "settings": {"chargingDuration": 2, "emergencyThreshold": 20, "targetBattery": 80},
        "vehicle": {"vin": "VIN1", "isPluggedIn": False, "batteryLevel": 50, **vehicle},
        "chargeOverride": False,
    }


class TestTelemetryWebhook:
    def test_missing_vin_rejected(self, client):
        response = client.post("/api/telemetry", json={"data": {"battery_level": 10}})
        assert response.status_code == 400

    def test_missing_data_rejected(self, client):
        response = client.post("/api/telemetry", json={"vin": "VIN1"})
        assert response.status_code == 400

    def test_non_json_body_rejected(self, client):
        response = client.post("/api/telemetry", content=b"not json")
        assert response.status_code == 400

    def test_unknown_vin_acknowledged(self, client):
        response = client.post("/api/telemetry", json={"vin": "NOPE", "data": {"battery_level": 10}})
        assert response.status_code == 200
        assert response.text == "OK"

    def test_partial_update_applied(self, client, store):
        asyncio.run(store.put_user("u1", _connected_user(isPluggedIn=True)))

        response = client.post("/api/telemetry", json={"vin": "VIN1", "data": {"battery_level": 0}})

        assert response.status_code == 200
        doc = asyncio.run(store.get_user("u1"))
        assert doc["vehicle"]["batteryLevel"] == 0
        assert doc["vehicle"]["isPluggedIn"] is True

    def test_plug_in_without_prices_acknowledged(self, client, store, tesla):
        asyncio.run(store.put_user("u1", _connected_user()))

        response = client.post(
            "/api/telemetry", json={"vin": "VIN1", "data": {"charge_port_latch": "Engaged"}}
        )

        assert response.status_code == 200
        assert tesla.commands == []
        doc = asyncio.run(store.get_user("u1"))
        assert doc["vehicle"]["plugState"] == "PLUGGED_IDLE"


class TestRpcAuth:
    def test_missing_token(self, client):
        response = client.post("/api/rpc/refreshVehicleData", json={})
        assert response.status_code == 401
        assert response.json() == {
            "success": False,
            "error": {
                "status": "unauthenticated",
                "message": "The function must be called while authenticated.",
            },
        }

    def test_unknown_token(self, client):
        response = client.post(
            "/api/rpc/refreshVehicleData", json={}, headers={"Authorization": "Bearer other"}
        )
        assert response.status_code == 401

    def test_user_id_mismatch(self, client):
        response = client.post("/api/rpc/refreshVehicleData", json={"userId": "u2"}, headers=AUTH)
        assert response.status_code == 401
        assert response.json()["error"]["status"] == "unauthenticated"

    def test_mistyped_argument_is_invalid_argument(self, client):
        response = client.post("/api/rpc/exchangeAuthCode", json={"code": 123}, headers=AUTH)
        assert response.status_code == 400
        assert response.json() == {
            "success": False,
            "error": {"status": "invalid-argument", "message": "Invalid request arguments."},
        }

    def test_malformed_json_is_invalid_argument(self, client):
        response = client.post(
            "/api/rpc/refreshVehicleData",
            content=b"{not json",
            headers={**AUTH, "Content-Type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json()["error"]["status"] == "invalid-argument"

    def test_unexpected_error_is_internal(self, client, monkeypatch):
        fleet = client.app.state.services.fleet
        monkeypatch.setattr(
            fleet, "exchange_auth_code", AsyncMock(side_effect=RuntimeError("secret detail"))
        )

        response = client.post("/api/rpc/exchangeAuthCode", json={"code": "abc"}, headers=AUTH)

        assert response.status_code == 500
        assert response.json()["error"]["status"] == "internal"
        assert "secret detail" not in response.text


class TestExchangeAuthCode:
    def test_missing_code(self, client):
        response = client.post("/api/rpc/exchangeAuthCode", json={}, headers=AUTH)
        assert response.status_code == 400
        assert response.json()["error"]["status"] == "invalid-argument"

    def test_connects_account(self, client, store):
        asyncio.run(store.put_user("u1", {"refreshCredential": "NEEDS_TO_BE_SET_LATER"}))

        response = client.post("/api/rpc/exchangeAuthCode", json={"code": "abc"}, headers=AUTH)

        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "Tesla account connected!"}
        doc = asyncio.run(store.get_user("u1"))
        assert doc["refreshCredential"] == "refresh-from-code"
        assert doc["credentialStatus"] == "connected"
        assert doc["vehicle"] == {"vin": "VIN1", "batteryLevel": 42, "isPluggedIn": True}

    def test_creates_user_document(self, client, store):
        response = client.post("/api/rpc/exchangeAuthCode", json={"code": "abc"}, headers=AUTH)
        assert response.status_code == 200
        assert asyncio.run(store.get_user("u1"))["vehicle"]["vin"] == "VIN1"

    def test_rejected_code_is_internal(self, client, tesla):
        tesla.token_status = 400
        response = client.post("/api/rpc/exchangeAuthCode", json={"code": "bad"}, headers=AUTH)
        assert response.status_code == 500
        assert response.json()["error"] == {
            "status": "internal",
            "message": "Failed to connect to Tesla.",
        }
        assert "login_required" not in response.text

    def test_no_vehicles(self, client, tesla):
        tesla.vehicles = []
        response = client.post("/api/rpc/exchangeAuthCode", json={"code": "abc"}, headers=AUTH)
        assert response.status_code == 412
        assert response.json()["error"]["status"] == "failed-precondition"


class TestRefreshVehicleData:
    def test_user_not_found(self, client):
        response = client.post("/api/rpc/refreshVehicleData", json={}, headers=AUTH)
        assert response.status_code == 404
        assert response.json()["error"]["status"] == "not-found"

    def test_not_connected(self, client, store):
        asyncio.run(store.put_user("u1", {"refreshCredential": "NEEDS_TO_BE_SET_LATER"}))
        response = client.post("/api/rpc/refreshVehicleData", json={}, headers=AUTH)
        assert response.status_code == 412

    def test_refreshes_vehicle(self, client, store):
        asyncio.run(store.put_user("u1", _connected_user(isPluggedIn=True, batteryLevel=10)))

        response = client.post("/api/rpc/refreshVehicleData", headers=AUTH)

        assert response.status_code == 200
        assert response.json()["message"] == "Vehicle data refreshed!"
        doc = asyncio.run(store.get_user("u1"))
        assert doc["vehicle"]["batteryLevel"] == 42
        assert doc["credentialStatus"] == "connected"

    def test_rotated_credential_stored(self, client, store, tesla):
        asyncio.run(store.put_user("u1", _connected_user()))
        tesla.rotated_refresh = "rotated-2"

        response = client.post("/api/rpc/refreshVehicleData", json={}, headers=AUTH)

        assert response.status_code == 200
        assert asyncio.run(store.get_user("u1"))["refreshCredential"] == "rotated-2"

    def test_rotated_credential_kept_when_no_vehicles(self, client, store, tesla):
        asyncio.run(store.put_user("u1", _connected_user()))
        tesla.rotated_refresh = "rotated-2"
        tesla.vehicles = []

        response = client.post("/api/rpc/refreshVehicleData", json={}, headers=AUTH)

        assert response.status_code == 412
        assert asyncio.run(store.get_user("u1"))["refreshCredential"] == "rotated-2"

    def test_revoked_credential_marks_disconnected(self, client, store, tesla):
        asyncio.run(store.put_user("u1", _connected_user()))
        tesla.token_status = 401

        response = client.post("/api/rpc/refreshVehicleData", json={}, headers=AUTH)

        assert response.status_code == 500
        assert asyncio.run(store.get_user("u1"))["credentialStatus"] == "disconnected"


class TestRequestChargeOverride:
    def test_starts_charging(self, client, store, tesla):
        asyncio.run(store.put_user("u1", _connected_user(isPluggedIn=True, batteryLevel=100)))

        response = client.post("/api/rpc/requestChargeOverride", json={}, headers=AUTH)

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert tesla.commands == ["charge_start"]
        assert asyncio.run(store.get_user("u1"))["chargeOverride"] is False

    def test_not_connected(self, client, store, tesla):
        asyncio.run(store.put_user("u1", {"refreshCredential": "NEEDS_TO_BE_SET_LATER"}))
        response = client.post("/api/rpc/requestChargeOverride", json={}, headers=AUTH)
        assert response.status_code == 412
        assert tesla.commands == []

    def test_dispatch_failure_is_internal(self, client, store, tesla):
        asyncio.run(store.put_user("u1", _connected_user()))
        tesla.token_status = 401

        response = client.post("/api/rpc/requestChargeOverride", json={}, headers=AUTH)

        assert response.status_code == 500
        doc = asyncio.run(store.get_user("u1"))
        assert doc["chargeOverride"] is False
        assert doc["credentialStatus"] == "disconnected"


class TestOAuthCallback:
    def test_missing_code(self, client):
        assert client.get("/callback").status_code == 400

    def test_redirects_to_app(self, client):
        response = client.get("/callback", params={"code": "abc", "state": "xyz"})
        assert response.status_code == 307
        assert response.headers["location"] == "teslasmartchargeapp://auth/callback?code=abc&state=xyz"


class TestSystemAndPrices:
    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["scheduler"]["enabled"] is False
        assert data["zones"]["NL"]["published"] is False

    def test_prices_missing(self, client):
        assert client.get("/api/prices/NL").status_code == 404

    def test_manual_refresh(self, client, store):
        asyncio.run(store.put_user("u1", _connected_user()))

        response = client.post("/api/prices/NL/refresh")

        assert response.status_code == 200
        data = response.json()
        assert data["hours"] == 2
        assert data["windows"]["updated"] == {"u1": 0}
        prices = client.get("/api/prices/NL").json()
        assert prices["hourlyRates"]["1"]["price"] == "-0.005"

    def test_refresh_unknown_zone(self, client):
        assert client.post("/api/prices/XX/refresh").status_code == 404
