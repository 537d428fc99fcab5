"""Fleet-level orchestrator: loads vehicle definitions and owns one controller per vehicle."""

import asyncio
import logging

from pydantic import ValidationError

from bustrack.core.eta_calculator import EtaCalculator
from bustrack.core.geo import format_distance_km, minutes_of_day, stops_within
from bustrack.core.geometry_cache import Direction, RouteGeometryCache
from bustrack.core.journey import JourneyController
from bustrack.core.route_matcher import RouteMatcher
from bustrack.core.session import SessionContext, require_admin
from bustrack.core.store import Store, stop_key, tracker_key, vehicle_key
from bustrack.core.ticker import LoopTicker, Ticker
from bustrack.schemas.route import RouteStopRef, Stop, StopPlace
from bustrack.schemas.vehicle import NearbyStop, NearbyVehicle, VehicleDefinition

logger = logging.getLogger(__name__)

UNKNOWN_STOP_NAME = "Unknown Stop"


class VehicleNotFound(LookupError):
    pass


def resolve_stops(refs: list[RouteStopRef], places: dict[str, StopPlace]) -> list[Stop]:
    """Join route stop references with stop places, in route order.

    A stop without a day offset whose time is earlier than the previous
    stop's is taken to run past midnight and moves to the next day.
    """
    resolved = []
    day = 0
    previous = None
    for seq, ref in enumerate(refs):
        minute = minutes_of_day(ref.stop_time)
        if ref.day_offset:
            day = ref.day_offset
        elif minute is not None and previous is not None and minute < previous:
            day += 1
        if minute is not None:
            previous = minute
        place = places.get(ref.stop_ref)
        if place is None:
            logger.warning("Stop %s not found, using placeholder", ref.stop_ref)
            place = StopPlace(id=ref.stop_ref, name=UNKNOWN_STOP_NAME, lat=0.0, lng=0.0)
        resolved.append(Stop(
            id=place.id,
            name=place.name,
            lat=place.lat,
            lng=place.lng,
            time=ref.stop_time,
            sequence=seq,
            day_offset=day,
        ))
    return resolved


def return_stops_for(vehicle: VehicleDefinition, places: dict[str, StopPlace], forward: list[Stop]) -> list[Stop]:
    """Explicit return stops, or the forward stops visited in reverse order."""
    if vehicle.return_stops:
        return resolve_stops(vehicle.return_stops, places)
    reversed_stops = list(reversed(forward))
    return [s.model_copy(update={"sequence": i}) for i, s in enumerate(reversed_stops)]


class JourneyManager:
    """Owns every vehicle's controller and the shared routing caches."""

    def __init__(
        self,
        store: Store,
        geometry_cache: RouteGeometryCache,
        ticker: Ticker | None = None,
    ) -> None:
        self.store = store
        self.geometry_cache = geometry_cache
        self.ticker = ticker or LoopTicker()
        self.route_matcher = RouteMatcher()
        self.eta_calculator = EtaCalculator()
        self.controllers: dict[str, JourneyController] = {}
        self.stop_places: dict[str, StopPlace] = {}

    # ------------------------------------------------------------------
    # Loading

    async def load_vehicles(self) -> None:
        """Read stop places and vehicle definitions from the store and sync controllers."""
        places: dict[str, StopPlace] = {}
        for key, doc in await self.store.scan("stop:"):
            try:
                place = StopPlace.model_validate(doc)
            except ValidationError:
                logger.warning("Skipping malformed stop document %s", key)
                continue
            places[place.id] = place
        self.stop_places = places

        seen = set()
        for key, doc in await self.store.scan("vehicle:"):
            try:
                vehicle = VehicleDefinition.model_validate(doc)
            except ValidationError:
                logger.warning("Skipping malformed vehicle document %s", key)
                continue
            seen.add(vehicle.id)
            await self._sync_vehicle(vehicle)

        for vid in list(self.controllers):
            if vid not in seen:
                logger.info("Vehicle %s removed from store", vid)
                self.controllers.pop(vid).close()
                self.geometry_cache.invalidate(vid)

        logger.info("Loaded %d vehicles and %d stops", len(self.controllers), len(places))

    async def _sync_vehicle(self, vehicle: VehicleDefinition) -> JourneyController:
        forward = resolve_stops(vehicle.stops, self.stop_places)
        backward = return_stops_for(vehicle, self.stop_places, forward)

        ctrl = self.controllers.get(vehicle.id)
        if ctrl is None:
            ctrl = JourneyController(
                vehicle,
                forward,
                backward,
                self.store,
                self.geometry_cache,
                self.route_matcher,
                self.ticker,
                eta_calculator=self.eta_calculator,
            )
            self.controllers[vehicle.id] = ctrl
            tracker_doc = await self.store.get(tracker_key(vehicle.id))
            if tracker_doc:
                await ctrl.hydrate(tracker_doc)
            return ctrl

        old_forward = ctrl.forward_stops
        old_return = ctrl.return_stops
        ctrl.update_definition(vehicle, forward, backward)
        if old_forward != forward:
            self.geometry_cache.invalidate(vehicle.id, Direction.FORWARD)
        if old_return != backward:
            self.geometry_cache.invalidate(vehicle.id, Direction.RETURN)
        return ctrl

    def get(self, vehicle_id: str) -> JourneyController:
        ctrl = self.controllers.get(vehicle_id)
        if ctrl is None:
            raise VehicleNotFound(vehicle_id)
        return ctrl

    # ------------------------------------------------------------------
    # Administration

    async def register_stop(self, ctx: SessionContext, place: StopPlace) -> StopPlace:
        require_admin(ctx)
        await self.store.put(stop_key(place.id), place.model_dump())
        self.stop_places[place.id] = place
        # Vehicles referencing the stop pick up the new coordinates
        for ctrl in list(self.controllers.values()):
            refs = list(ctrl.vehicle.stops) + list(ctrl.vehicle.return_stops or [])
            if any(r.stop_ref == place.id for r in refs):
                await self._sync_vehicle(ctrl.vehicle)
        return place

    async def register_vehicle(self, ctx: SessionContext, vehicle: VehicleDefinition) -> JourneyController:
        require_admin(ctx)
        if vehicle.owner is None and ctx.user:
            vehicle = vehicle.model_copy(update={"owner": ctx.user})
        await self.store.put(vehicle_key(vehicle.id), vehicle.model_dump(mode="json"))
        return await self._sync_vehicle(vehicle)

    # ------------------------------------------------------------------
    # Periodic work

    async def flush_telemetry(self) -> None:
        """Write every controller's pending telemetry; one failure never blocks the rest."""
        controllers = list(self.controllers.values())
        if not controllers:
            return
        results = await asyncio.gather(
            *(c.publisher.flush() for c in controllers), return_exceptions=True,
        )
        for ctrl, result in zip(controllers, results):
            if isinstance(result, Exception):
                logger.error("Telemetry flush failed for %s: %s", ctrl.vehicle_id, result)

    async def refresh_vehicles(self) -> None:
        try:
            await self.load_vehicles()
        except Exception:
            logger.exception("Error refreshing vehicle definitions")

    # ------------------------------------------------------------------
    # Queries

    def find_nearby(self, lat: float, lng: float, radius_km: float) -> list[NearbyVehicle]:
        """Vehicles with at least one forward stop within radius_km, nearest first."""
        result = []
        for ctrl in self.controllers.values():
            hits = stops_within(lat, lng, ctrl.forward_stops, radius_km)
            if not hits:
                continue
            result.append(NearbyVehicle(
                vehicle_id=ctrl.vehicle_id,
                route_number=ctrl.vehicle.route_number,
                name=ctrl.vehicle.name,
                min_distance_km=round(hits[0][1], 3),
                stops=[
                    NearbyStop(
                        id=stop.id,
                        name=stop.name,
                        time=stop.time,
                        distance_km=round(dist, 3),
                        distance_label=format_distance_km(dist),
                    )
                    for stop, dist in hits
                ],
            ))
        result.sort(key=lambda v: v.min_distance_km)
        return result

    def get_diagnostics(self) -> dict:
        vehicles = []
        for vid, ctrl in sorted(self.controllers.items()):
            geometry = self.geometry_cache.peek(vid, ctrl.direction)
            sim = ctrl.simulator
            vehicles.append({
                "vehicle_id": vid,
                "phase": ctrl.phase.value,
                "status": ctrl.status_label(),
                "direction": ctrl.direction.value,
                "stop_count": len(ctrl.stops),
                "unknown_stops": sum(1 for s in ctrl.stops if s.name == UNKNOWN_STOP_NAME),
                "geometry_source": geometry.source.value if geometry else None,
                "geometry_points": len(geometry.points) if geometry else 0,
                "route_length_m": round(self.route_matcher.total_length_m((vid, ctrl.direction.value)), 1),
                "simulator_running": bool(sim and sim.running),
                "cursor": sim.coord_index if sim else None,
                "speed_kmh": ctrl.speed_kmh,
                "controller_user": ctrl.controller_user,
                "telemetry_writes": ctrl.publisher.writes,
                "telemetry_failures": ctrl.publisher.failures,
                "telemetry_pending": ctrl.publisher.pending is not None,
            })

        running = sum(1 for v in vehicles if v["simulator_running"])
        return {
            "total_vehicles": len(vehicles),
            "total_stops": len(self.stop_places),
            "simulators_running": running,
            "vehicles": vehicles,
        }

    # ------------------------------------------------------------------

    async def shutdown(self) -> None:
        # Last pending samples go out before the loops stop
        await asyncio.gather(
            *(c.publisher.flush(force=True) for c in self.controllers.values()),
            return_exceptions=True,
        )
        for ctrl in self.controllers.values():
            ctrl.close()
        logger.info("Stopped %d journey controllers", len(self.controllers))
