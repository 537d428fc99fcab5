"""Tests for the clamped occupancy counter."""

import asyncio

import pytest

from bustrack.core.capacity import CapacityCounter, clamp_occupancy


def test_clamp_occupancy():
    assert clamp_occupancy(0, -1, 40) == 0
    assert clamp_occupancy(40, 1, 40) == 40
    assert clamp_occupancy(10, 1, 40) == 11
    assert clamp_occupancy(3, 0, 0) == 0


@pytest.mark.asyncio
async def test_adjust_stays_within_bounds(store):
    counter = CapacityCounter(store, "b1", capacity=2)
    assert await counter.adjust(-1) == 0
    assert await counter.adjust(1) == 1
    assert await counter.adjust(1) == 2
    assert await counter.adjust(1) == 2
    assert await counter.current() == 2
    assert (await store.get("vehicle:b1"))["occupancy"] == 2


@pytest.mark.asyncio
async def test_racing_adjustments_are_clamped(store):
    counter = CapacityCounter(store, "b1", capacity=5)
    await asyncio.gather(*(counter.adjust(1) for _ in range(20)))
    assert await counter.current() == 5

    await asyncio.gather(*(counter.adjust(-1) for _ in range(20)))
    assert await counter.current() == 0


@pytest.mark.asyncio
async def test_adjust_reads_other_writers(store):
    await store.put("vehicle:b1", {"occupancy": 4})
    counter = CapacityCounter(store, "b1", capacity=10)
    assert await counter.adjust(1) == 5
