"""Tests for the in-process document store and partial merges."""

import asyncio

import pytest

from bustrack.core.store import SUBSCRIBER_QUEUE_SIZE, merge_partial, tracker_key, vehicle_key


def test_merge_partial_dotted_keys():
    doc = {"status": {"current": "Not Started", "current_stop_index": 0}, "speed": 60}
    merged = merge_partial(doc, {"status.current_stop_index": 2, "speed": 120, "location.type": "Point"})
    assert merged == {
        "status": {"current": "Not Started", "current_stop_index": 2},
        "speed": 120,
        "location": {"type": "Point"},
    }
    # Source document untouched
    assert doc["status"]["current_stop_index"] == 0


def test_merge_partial_replaces_non_dict_parent():
    merged = merge_partial({"location": None}, {"location.type": "Point"})
    assert merged == {"location": {"type": "Point"}}


def test_keys():
    assert vehicle_key("b1") == "vehicle:b1"
    assert tracker_key("b1") == "tracker:b1"


@pytest.mark.asyncio
async def test_put_get_and_scan(store):
    assert await store.get("vehicle:b1") is None
    await store.put("vehicle:b1", {"id": "b1", "occupancy": 0})
    await store.put("vehicle:b1", {"occupancy": 3})
    await store.put("stop:s1", {"id": "s1"})

    assert await store.get("vehicle:b1") == {"id": "b1", "occupancy": 3}
    assert await store.scan("vehicle:") == [("vehicle:b1", {"id": "b1", "occupancy": 3})]


@pytest.mark.asyncio
async def test_get_returns_copies(store):
    await store.put("vehicle:b1", {"stops": [1, 2]})
    doc = await store.get("vehicle:b1")
    doc["stops"].append(3)
    assert (await store.get("vehicle:b1"))["stops"] == [1, 2]


@pytest.mark.asyncio
async def test_concurrent_updates_do_not_lose_writes(store):
    def bump(doc):
        doc["n"] = doc.get("n", 0) + 1
        return doc

    await asyncio.gather(*(store.update("vehicle:b1", bump) for _ in range(25)))
    assert (await store.get("vehicle:b1"))["n"] == 25


@pytest.mark.asyncio
async def test_subscribe_yields_current_then_changes(store):
    await store.put("tracker:b1", {"seq": 0})
    changes = store.subscribe("tracker:b1")
    assert await changes.__anext__() == {"seq": 0}

    await store.put("tracker:b1", {"seq": 1})
    assert await asyncio.wait_for(changes.__anext__(), 1) == {"seq": 1}
    await changes.aclose()

    # Closed subscriptions are dropped
    await store.put("tracker:b1", {"seq": 2})
    assert all(not qs for qs in store._subscribers.values())


@pytest.mark.asyncio
async def test_slow_subscriber_keeps_latest(store):
    await store.put("tracker:b1", {"seq": 0})
    changes = store.subscribe("tracker:b1")
    await changes.__anext__()

    for seq in range(1, 16):
        await store.put("tracker:b1", {"seq": seq})

    first = await changes.__anext__()
    assert first["seq"] == 16 - SUBSCRIBER_QUEUE_SIZE
    await changes.aclose()


@pytest.mark.asyncio
async def test_subscribe_prefix(store):
    await store.put("vehicle:b1", {"id": "b1"})
    changes = store.subscribe_prefix("vehicle:")
    assert await changes.__anext__() == ("vehicle:b1", {"id": "b1"})

    await store.put("stop:s1", {"id": "s1"})
    await store.put("vehicle:b2", {"id": "b2"})
    assert await asyncio.wait_for(changes.__anext__(), 1) == ("vehicle:b2", {"id": "b2"})
    await changes.aclose()
