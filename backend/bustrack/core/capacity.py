"""Occupancy counter clamped to a vehicle's capacity."""

import logging

from bustrack.core.store import Store, vehicle_key

logger = logging.getLogger(__name__)


def clamp_occupancy(current: int, delta: int, capacity: int) -> int:
    return min(max(current + delta, 0), max(capacity, 0))


class CapacityCounter:
    """Adjusts the stored occupancy of one vehicle.

    Every adjustment re-reads the stored value inside the store's atomic
    update, so racing adjustments still land inside [0, capacity].
    """

    def __init__(self, store: Store, vehicle_id: str, capacity: int) -> None:
        self.store = store
        self.vehicle_id = vehicle_id
        self.capacity = capacity

    async def adjust(self, delta: int) -> int:
        def apply(doc: dict) -> dict:
            current = doc.get("occupancy") or 0
            doc["occupancy"] = clamp_occupancy(int(current), delta, self.capacity)
            return doc

        doc = await self.store.update(vehicle_key(self.vehicle_id), apply)
        value = doc["occupancy"]
        logger.debug("Vehicle %s occupancy %+d -> %d/%d", self.vehicle_id, delta, value, self.capacity)
        return value

    async def current(self) -> int:
        doc = await self.store.get(vehicle_key(self.vehicle_id)) or {}
        return int(doc.get("occupancy") or 0)
