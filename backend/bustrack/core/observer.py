"""Read-only reconstruction of a vehicle's live view from store documents.

Observers never write. Every value shown to an observer is derived from the
``vehicle:{id}`` and ``tracker:{id}`` documents plus the referenced stop
places, so any number of observers converge on the same view.
"""

import asyncio
import datetime
import logging
from collections.abc import AsyncIterator, Callable

from pydantic import ValidationError

from bustrack.core.eta_calculator import NO_ESTIMATE, EtaCalculator
from bustrack.core.geo import format_duration, format_time_12h
from bustrack.core.journey_manager import resolve_stops, return_stops_for
from bustrack.core.state_machine import JourneyPhase
from bustrack.core.store import SUBSCRIBER_QUEUE_SIZE, Store, stop_key, tracker_key, vehicle_key
from bustrack.schemas.route import Stop, StopPlace
from bustrack.schemas.vehicle import ObserverStop, ObserverView, Position, VehicleDefinition

logger = logging.getLogger(__name__)

_eta = EtaCalculator()


def _position_of(tracker_doc: dict) -> tuple[float, float] | None:
    location = tracker_doc.get("location")
    if not isinstance(location, dict):
        return None
    coords = location.get("coordinates")
    if not coords or len(coords) != 2:
        return None
    return float(coords[1]), float(coords[0])


def build_view(
    vehicle_doc: dict,
    tracker_doc: dict | None,
    stops: list[Stop],
    now: datetime.datetime,
    eta_calculator: EtaCalculator | None = None,
) -> ObserverView:
    """Compute the observer view. ``stops`` are the active direction's stops."""
    tracker_doc = tracker_doc or {}
    status = tracker_doc.get("status") or {}
    phase = status.get("phase") or JourneyPhase.NOT_STARTED.value
    index = int(status.get("current_stop_index") or 0)
    position = _position_of(tracker_doc)
    speed = tracker_doc.get("speed")

    estimate = NO_ESTIMATE
    if position is not None and phase in (JourneyPhase.ONGOING.value, JourneyPhase.PAUSED.value):
        service_date = None
        if status.get("service_date"):
            try:
                service_date = datetime.date.fromisoformat(status["service_date"])
            except ValueError:
                logger.debug("Bad service date %r", status["service_date"])
        estimate = (eta_calculator or _eta).calculate(position, stops[index:], speed, now, service_date)

    return ObserverView(
        vehicle_id=vehicle_doc["id"],
        route_number=vehicle_doc.get("route_number", ""),
        name=vehicle_doc.get("name", ""),
        status=status.get("current") or "Not Started",
        phase=phase,
        current_stop_index=index,
        stops=[
            ObserverStop(
                id=s.id, name=s.name, time=s.time,
                time_label=format_time_12h(s.time), passed=i < index,
            )
            for i, s in enumerate(stops)
        ],
        position=Position(lat=position[0], lng=position[1]) if position else None,
        speed_kmh=speed,
        eta_next_s=estimate.eta_next_s,
        eta_final_s=estimate.eta_final_s,
        eta_next_label=format_duration(estimate.eta_next_s),
        eta_final_label=format_duration(estimate.eta_final_s),
        delayed=estimate.delayed,
        progress=tracker_doc.get("progress"),
        occupancy=int(vehicle_doc.get("occupancy") or 0),
        capacity=int(vehicle_doc.get("capacity") or 0),
        last_updated=tracker_doc.get("timestamp"),
    )


class ObserverSession:
    """One observer following one vehicle."""

    def __init__(
        self,
        store: Store,
        vehicle_id: str,
        clock: Callable[[], datetime.datetime] = lambda: datetime.datetime.now(datetime.timezone.utc),
    ) -> None:
        self.store = store
        self.vehicle_id = vehicle_id
        self._clock = clock
        self._vehicle_doc: dict | None = None
        self._tracker_doc: dict | None = None
        self._forward: list[Stop] = []
        self._return: list[Stop] = []

    async def _resolve_stops(self, vehicle_doc: dict) -> None:
        try:
            vehicle = VehicleDefinition.model_validate(vehicle_doc)
        except ValidationError:
            logger.warning("Vehicle document %s is malformed", self.vehicle_id)
            self._forward, self._return = [], []
            return
        refs = list(vehicle.stops) + list(vehicle.return_stops or [])
        places: dict[str, StopPlace] = {}
        for ref in refs:
            if ref.stop_ref in places:
                continue
            doc = await self.store.get(stop_key(ref.stop_ref))
            if doc:
                places[ref.stop_ref] = StopPlace.model_validate(doc)
        self._forward = resolve_stops(vehicle.stops, places)
        self._return = return_stops_for(vehicle, places, self._forward)

    def _view(self) -> ObserverView:
        status = (self._tracker_doc or {}).get("status") or {}
        stops = self._return if status.get("is_return") else self._forward
        return build_view(self._vehicle_doc, self._tracker_doc, stops, self._clock())

    async def current(self) -> ObserverView | None:
        """One-shot view, or None if the vehicle does not exist."""
        vehicle_doc = await self.store.get(vehicle_key(self.vehicle_id))
        if vehicle_doc is None:
            return None
        self._vehicle_doc = vehicle_doc
        self._tracker_doc = await self.store.get(tracker_key(self.vehicle_id))
        await self._resolve_stops(vehicle_doc)
        return self._view()

    async def stream(self) -> AsyncIterator[ObserverView]:
        """Yield a fresh view after every change to the vehicle or its tracker."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE)

        async def pump(kind: str, changes: AsyncIterator[dict]) -> None:
            async for doc in changes:
                await queue.put((kind, doc))

        tasks = [
            asyncio.create_task(pump("vehicle", self.store.subscribe(vehicle_key(self.vehicle_id)))),
            asyncio.create_task(pump("tracker", self.store.subscribe(tracker_key(self.vehicle_id)))),
        ]
        try:
            while True:
                kind, doc = await queue.get()
                if kind == "vehicle":
                    if doc.get("stops") != (self._vehicle_doc or {}).get("stops") or \
                            doc.get("return_stops") != (self._vehicle_doc or {}).get("return_stops"):
                        await self._resolve_stops(doc)
                    self._vehicle_doc = doc
                else:
                    self._tracker_doc = doc
                if self._vehicle_doc is None:
                    continue
                yield self._view()
        finally:
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
