"""
Tests for the document stores

Both implementations must behave identically, so every test runs against
the in-memory store and the SQLite store.
"""

import asyncio

import pytest

from backend.core.store import (
    DocumentNotFound,
    MemoryDocumentStore,
    SqliteDocumentStore,
    apply_partial,
    create_store,
)


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return MemoryDocumentStore()
    return SqliteDocumentStore(str(tmp_path / "store.db"))


class TestApplyPartial:
    def test_dotted_paths_merge_nested(self):
        doc = {"vehicle": {"vin": "VIN1", "batteryLevel": 40}, "settings": {"chargingDuration": 3}}
        merged = apply_partial(doc, {"vehicle.batteryLevel": 55, "settings.optimalStartHour": 2})
        assert merged == {
            "vehicle": {"vin": "VIN1", "batteryLevel": 55},
            "settings": {"chargingDuration": 3, "optimalStartHour": 2},
        }
        # Input is not mutated
        assert doc["vehicle"]["batteryLevel"] == 40

    def test_creates_missing_maps(self):
        assert apply_partial({}, {"vehicle.vin": "VIN1"}) == {"vehicle": {"vin": "VIN1"}}


def test_user_roundtrip_and_merge(store):
    async def run():
        await store.put_user("u1", {"vehicle": {"vin": "VIN1", "isPluggedIn": False}})
        updated = await store.update_user_fields("u1", {"vehicle.isPluggedIn": True})
        return updated, await store.get_user("u1")

    updated, doc = asyncio.run(run())
    assert updated == doc == {"vehicle": {"vin": "VIN1", "isPluggedIn": True}}


def test_missing_user(store):
    async def run():
        assert await store.get_user("nobody") is None
        with pytest.raises(DocumentNotFound):
            await store.update_user_fields("nobody", {"a": 1})

    asyncio.run(run())


def test_find_user_by_vin_follows_updates(store):
    async def run():
        await store.put_user("u1", {"vehicle": {"vin": "OLD"}})
        await store.update_user_fields("u1", {"vehicle.vin": "NEW"})
        return await store.find_user_by_vin("NEW"), await store.find_user_by_vin("OLD")

    found, stale = asyncio.run(run())
    assert found[0] == "u1"
    assert stale is None


def test_batch_update_is_all_or_nothing(store):
    async def run():
        await store.put_user("u1", {"settings": {}})
        with pytest.raises(DocumentNotFound):
            await store.batch_update(
                [("u1", {"settings.optimalStartHour": 3}), ("ghost", {"settings.optimalStartHour": 4})]
            )
        return await store.get_user("u1")

    assert asyncio.run(run()) == {"settings": {}}


def test_batch_update_applies_all(store):
    async def run():
        await store.put_user("u1", {})
        await store.put_user("u2", {})
        await store.batch_update([("u1", {"x": 1}), ("u2", {"x": 2})])
        return await store.list_users()

    assert asyncio.run(run()) == {"u1": {"x": 1}, "u2": {"x": 2}}


def test_compare_and_set(store):
    async def run():
        await store.put_user("u1", {"chargeOverride": True})
        first = await store.compare_and_set("u1", "chargeOverride", True, False)
        second = await store.compare_and_set("u1", "chargeOverride", True, False)
        return first, second, await store.get_user("u1")

    first, second, doc = asyncio.run(run())
    assert (first, second) == (True, False)
    assert doc == {"chargeOverride": False}


def test_compare_and_set_is_type_strict(store):
    async def run():
        await store.put_user("u1", {"chargeOverride": 1})
        return await store.compare_and_set("u1", "chargeOverride", True, False)

    assert asyncio.run(run()) is False


def test_compare_and_set_absent_path(store):
    async def run():
        await store.put_user("u1", {})
        return await store.compare_and_set("u1", "vehicle.plugState", "PLUGGED_EVALUATING", "PLUGGED_IDLE")

    assert asyncio.run(run()) is False


def test_price_series_overwritten(store):
    async def run():
        await store.put_price_series("NL", {"hourlyRates": {"0": {"price": "0.1"}}, "extra": 1})
        await store.put_price_series("NL", {"hourlyRates": {}})
        return await store.get_price_series("NL"), await store.get_price_series("BE")

    current, missing = asyncio.run(run())
    assert current == {"hourlyRates": {}}
    assert missing is None


def test_returned_documents_are_copies():
    store = MemoryDocumentStore()

    async def run():
        await store.put_user("u1", {"vehicle": {"vin": "VIN1"}})
        doc = await store.get_user("u1")
        doc["vehicle"]["vin"] = "CHANGED"
        return await store.get_user("u1")

    assert asyncio.run(run())["vehicle"]["vin"] == "VIN1"


def test_create_store(tmp_path):
    assert isinstance(create_store("memory"), MemoryDocumentStore)
    assert isinstance(create_store("sqlite", str(tmp_path / "a" / "b.db")), SqliteDocumentStore)
    with pytest.raises(ValueError):
        create_store("firestore")
