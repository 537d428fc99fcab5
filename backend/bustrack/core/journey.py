"""Per-vehicle journey controller.

Binds the state machine, route geometry, position simulator, ETA estimator,
telemetry publisher and occupancy counter of one vehicle. The controller is
the only writer of that vehicle's live position.
"""

import dataclasses
import datetime
import logging
import time
from collections.abc import Callable
from zoneinfo import ZoneInfo

from bustrack.config import settings
from bustrack.core.capacity import CapacityCounter
from bustrack.core.eta_calculator import NO_ESTIMATE, EtaCalculator, EtaEstimate
from bustrack.core.geo import elapsed_minutes
from bustrack.core.geometry_cache import Direction, RouteGeometryCache, stop_signature
from bustrack.core.route_matcher import RouteMatcher
from bustrack.core.session import SessionContext, require_admin
from bustrack.core.simulator import PositionSample, PositionSimulator, starting_cursor
from bustrack.core.state_machine import JourneyPhase, JourneyState, JourneyStateMachine
from bustrack.core.store import Store
from bustrack.core.telemetry import TelemetryPublisher, TelemetrySample
from bustrack.core.ticker import Ticker
from bustrack.schemas.route import Stop
from bustrack.schemas.vehicle import JourneySnapshot, Position, VehicleDefinition

logger = logging.getLogger(__name__)


def _service_now() -> datetime.datetime:
    return datetime.datetime.now(ZoneInfo(settings.service_timezone))


class JourneyController:
    def __init__(
        self,
        vehicle: VehicleDefinition,
        forward_stops: list[Stop],
        return_stops: list[Stop],
        store: Store,
        geometry_cache: RouteGeometryCache,
        route_matcher: RouteMatcher,
        ticker: Ticker,
        eta_calculator: EtaCalculator | None = None,
        clock: Callable[[], datetime.datetime] = _service_now,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.vehicle = vehicle
        self.vehicle_id = vehicle.id
        self.store = store
        self.geometry_cache = geometry_cache
        self.route_matcher = route_matcher
        self.ticker = ticker
        self.eta_calculator = eta_calculator or EtaCalculator()
        self._clock = clock

        self._stops: dict[Direction, list[Stop]] = {
            Direction.FORWARD: list(forward_stops),
            Direction.RETURN: list(return_stops),
        }
        self.machine = JourneyStateMachine(len(forward_stops))
        self.speed_kmh = float(settings.default_speed_kmh)
        self.publisher = TelemetryPublisher(
            store, vehicle.id, settings.telemetry_interval_seconds, monotonic,
        )
        self.capacity = CapacityCounter(store, vehicle.id, vehicle.capacity)

        self._simulator: PositionSimulator | None = None
        self._position: PositionSample | None = None
        self._service_date: datetime.date | None = None
        # Bumped whenever in-flight work must not be applied any more
        self._generation = 0
        self._eta_inputs: tuple | None = None
        self._eta: EtaEstimate = NO_ESTIMATE
        self.controller_user: str | None = None

    # ------------------------------------------------------------------
    # Read side

    @property
    def direction(self) -> Direction:
        return Direction.RETURN if self.machine.state.is_return else Direction.FORWARD

    @property
    def stops(self) -> list[Stop]:
        return self._stops[self.direction]

    @property
    def forward_stops(self) -> list[Stop]:
        return self._stops[Direction.FORWARD]

    @property
    def return_stops(self) -> list[Stop]:
        return self._stops[Direction.RETURN]

    @property
    def phase(self) -> JourneyPhase:
        return self.machine.phase

    @property
    def simulator(self) -> PositionSimulator | None:
        return self._simulator

    @property
    def position(self) -> PositionSample | None:
        return self._position

    @property
    def _route_key(self) -> tuple[str, str]:
        return (self.vehicle_id, self.direction.value)

    def status_label(self) -> str:
        return self.machine.status_label([s.name for s in self.stops])

    def eta(self) -> EtaEstimate:
        """Current estimate.

        Distances are recomputed only when position, speed or stop index
        changed; the delay flag follows the clock on every call.
        """
        pos = (self._position.lat, self._position.lng) if self._position else None
        idx = self.machine.state.current_stop_index
        inputs = (pos, self.speed_kmh, idx, self.direction)
        if inputs != self._eta_inputs:
            self._eta_inputs = inputs
            if self.phase in (JourneyPhase.ONGOING, JourneyPhase.PAUSED):
                self._eta = self.eta_calculator.calculate(
                    pos, self.stops[idx:], self.speed_kmh, self._clock(), self._service_date,
                )
            else:
                self._eta = NO_ESTIMATE
        if self._eta.eta_next_s is not None:
            delayed = self.eta_calculator.is_delayed(
                self.stops[idx], self._eta.eta_next_s, self._clock(), self._service_date,
            )
            if delayed != self._eta.delayed:
                self._eta = dataclasses.replace(self._eta, delayed=delayed)
        return self._eta

    def progress(self) -> float | None:
        if self._position is None:
            return None
        match = self.route_matcher.match(self._route_key, self._position.lat, self._position.lng)
        return round(match.progress, 6) if match else None

    def snapshot(self) -> JourneySnapshot:
        state = self.machine.state
        stops = self.stops
        eta = self.eta()
        scheduled = None
        if stops:
            scheduled = elapsed_minutes(
                stops[0].time, stops[-1].time, stops[-1].day_offset - stops[0].day_offset,
            )
        return JourneySnapshot(
            vehicle_id=self.vehicle_id,
            status=self.status_label(),
            phase=self.phase.value,
            started=state.started,
            paused=state.paused,
            is_return=state.is_return,
            current_stop_index=state.current_stop_index,
            stop_count=len(stops),
            position=Position(lat=self._position.lat, lng=self._position.lng) if self._position else None,
            speed_kmh=self.speed_kmh,
            eta_next_s=eta.eta_next_s,
            eta_final_s=eta.eta_final_s,
            delayed=eta.delayed,
            progress=self.progress(),
            capacity=self.vehicle.capacity,
            start_time=stops[0].time if stops else None,
            end_time=stops[-1].time if stops else None,
            scheduled_minutes=scheduled,
        )

    async def describe(self) -> JourneySnapshot:
        """Snapshot including the stored occupancy."""
        snap = self.snapshot()
        snap.occupancy = await self.capacity.current()
        return snap

    # ------------------------------------------------------------------
    # Administrator actions

    async def start(self, ctx: SessionContext) -> JourneySnapshot:
        self._authorize(ctx)
        if not self.machine.start():
            return self.snapshot()
        self._generation += 1
        self._service_date = self._clock().date()
        self.publisher.acquire()
        logger.info("Vehicle %s: journey started (%s)", self.vehicle_id, self.direction.value)
        self._offer_sample()
        last = (self._position.lat, self._position.lng) if self._position else None
        await self._arm(self._generation, last)
        return self.snapshot()

    def pause(self, ctx: SessionContext) -> JourneySnapshot:
        self._authorize(ctx)
        if self.machine.pause():
            if self._simulator is not None:
                self._simulator.halt()
            self._offer_sample()
        return self.snapshot()

    async def resume(self, ctx: SessionContext) -> JourneySnapshot:
        self._authorize(ctx)
        if not self.machine.resume():
            return self.snapshot()
        self._offer_sample()
        if self._simulator is not None and not self._simulator.finished:
            self._simulator.resume()
        else:
            last = (self._position.lat, self._position.lng) if self._position else None
            await self._arm(self._generation, last)
        return self.snapshot()

    async def toggle(self, ctx: SessionContext) -> JourneySnapshot:
        """Single start / pause / resume control."""
        phase = self.phase
        if phase is JourneyPhase.NOT_STARTED:
            return await self.start(ctx)
        if phase is JourneyPhase.PAUSED:
            return await self.resume(ctx)
        if phase is JourneyPhase.ONGOING:
            return self.pause(ctx)
        self._authorize(ctx)
        return self.snapshot()

    def restart(self, ctx: SessionContext) -> JourneySnapshot:
        self._authorize(ctx)
        self._reset()
        logger.info("Vehicle %s: journey restarted", self.vehicle_id)
        return self.snapshot()

    async def start_return(self, ctx: SessionContext) -> JourneySnapshot:
        self._authorize(ctx)
        if not self.machine.start_return(len(self.return_stops)):
            return self.snapshot()
        self._generation += 1
        self._cancel_simulator()
        self._position = None
        self._service_date = self._clock().date()
        self.publisher.acquire()
        logger.info("Vehicle %s: return journey started", self.vehicle_id)
        self._offer_sample(clear_position=True)
        await self._arm(self._generation, None)
        return self.snapshot()

    def set_speed(self, ctx: SessionContext, speed_kmh: int) -> JourneySnapshot:
        self._authorize(ctx)
        if speed_kmh not in settings.speed_options:
            raise ValueError(f"speed must be one of {settings.speed_options}")
        self.speed_kmh = float(speed_kmh)
        if self._simulator is not None:
            self._simulator.set_speed(self.speed_kmh)
        self._offer_sample()
        return self.snapshot()

    async def adjust_capacity(self, ctx: SessionContext, delta: int) -> int:
        self._authorize(ctx)
        return await self.capacity.adjust(delta)

    # ------------------------------------------------------------------
    # Lifecycle

    def update_definition(
        self, vehicle: VehicleDefinition, forward_stops: list[Stop], return_stops: list[Stop],
    ) -> bool:
        """Swap in a new definition. Returns True if the active stop set changed."""
        before = stop_signature(self.stops)
        self.vehicle = vehicle
        self.capacity.capacity = vehicle.capacity
        self._stops = {
            Direction.FORWARD: list(forward_stops),
            Direction.RETURN: list(return_stops),
        }
        if stop_signature(self.stops) == before:
            return False
        if self.phase is not JourneyPhase.NOT_STARTED:
            logger.warning("Vehicle %s: stops changed during a journey, restarting", self.vehicle_id)
            self._reset()
        self.machine.stop_count = len(self.stops)
        self.route_matcher.unload(self._route_key)
        return True

    async def hydrate(self, tracker_doc: dict) -> None:
        """Restore state persisted by a previous engine instance."""
        status = tracker_doc.get("status") or {}
        state = JourneyState(
            started=bool(status.get("started")),
            paused=bool(status.get("paused")),
            is_return=bool(status.get("is_return")),
            current_stop_index=int(status.get("current_stop_index") or 0),
        )
        self.machine.stop_count = len(self._stops[
            Direction.RETURN if state.is_return else Direction.FORWARD
        ])
        self.machine.restore(state, at_stop=bool(status.get("at_stop")))

        speed = tracker_doc.get("speed")
        if speed in settings.speed_options:
            self.speed_kmh = float(speed)
        service_date = status.get("service_date")
        if service_date:
            try:
                self._service_date = datetime.date.fromisoformat(service_date)
            except ValueError:
                self._service_date = None

        location = tracker_doc.get("location") or {}
        coords = location.get("coordinates") if isinstance(location, dict) else None
        if self.phase is not JourneyPhase.NOT_STARTED and coords and len(coords) == 2:
            self._position = PositionSample(
                lat=float(coords[1]), lng=float(coords[0]),
                speed_kmh=self.speed_kmh, captured_at=self._clock(),
            )

        if self.phase in (JourneyPhase.ONGOING, JourneyPhase.PAUSED):
            self.publisher.acquire()
        if self.phase is JourneyPhase.ONGOING:
            logger.info("Vehicle %s: resuming journey from persisted position", self.vehicle_id)
            self._generation += 1
            last = (self._position.lat, self._position.lng) if self._position else None
            await self._arm(self._generation, last)

    def close(self) -> None:
        self._generation += 1
        self._cancel_simulator()
        self.publisher.close()

    # ------------------------------------------------------------------
    # Internals

    def _authorize(self, ctx: SessionContext) -> None:
        require_admin(ctx)
        if self.controller_user and ctx.user and ctx.user != self.controller_user:
            # No lease between administrators: last writer wins
            logger.warning(
                "Vehicle %s: control taken by %s (was %s)",
                self.vehicle_id, ctx.user, self.controller_user,
            )
        if ctx.user:
            self.controller_user = ctx.user

    def _reset(self) -> None:
        self.machine.restart()
        self._generation += 1
        self._cancel_simulator()
        self._position = None
        self._service_date = None
        self.publisher.release()
        self._offer_sample(clear_position=True)

    def _cancel_simulator(self) -> None:
        if self._simulator is not None:
            self._simulator.cancel()
            self._simulator = None

    async def _arm(self, generation: int, last_position: tuple[float, float] | None) -> None:
        """Fetch the geometry and start a fresh simulation loop from the best cursor."""
        stops = self.stops
        direction = self.direction
        geometry = await self.geometry_cache.get_geometry(self.vehicle_id, direction, stops)
        if generation != self._generation or self.phase is not JourneyPhase.ONGOING:
            logger.info("Vehicle %s: discarding stale simulation start", self.vehicle_id)
            return

        self.route_matcher.load_route(self._route_key, geometry.points)
        idx = self.machine.state.current_stop_index
        target = stops[idx] if idx < len(stops) else None
        cursor = starting_cursor(geometry.points, last_position, target)

        self._cancel_simulator()
        self._simulator = PositionSimulator(
            geometry.points,
            stops,
            self.speed_kmh,
            self.ticker,
            on_position=lambda sample: self._handle_position(generation, sample),
            on_arrival=lambda index, sample: self._handle_arrival(generation, index, sample),
            coord_index=cursor,
            stop_index=idx,
            tolerance_deg=settings.arrival_tolerance_deg,
            min_tick_s=settings.min_tick_seconds,
            time_scale=settings.simulation_time_scale,
            clock=self._clock,
        )
        logger.debug(
            "Vehicle %s: simulator armed at cursor %d/%d, stop %d",
            self.vehicle_id, cursor, len(geometry.points), idx,
        )
        self._simulator.start()

    def _handle_position(self, generation: int, sample: PositionSample) -> None:
        if generation != self._generation:
            return
        self._position = sample
        self._offer_sample()

    def _handle_arrival(self, generation: int, stop_index: int, sample: PositionSample) -> None:
        if generation != self._generation:
            return
        self._position = sample
        if self.machine.on_arrival(stop_index):
            stop = self.stops[stop_index]
            logger.info(
                "Vehicle %s: reached %s (%d/%d)",
                self.vehicle_id, stop.name, stop_index + 1, len(self.stops),
            )
        if self.phase is JourneyPhase.COMPLETED:
            self._cancel_simulator()
        self._offer_sample()

    def _status_fields(self) -> dict:
        state = self.machine.state
        return {
            "current": self.status_label(),
            "phase": self.phase.value,
            "started": state.started,
            "paused": state.paused,
            "at_stop": self.machine.at_stop,
            "is_return": state.is_return,
            "current_stop_index": state.current_stop_index,
            "service_date": self._service_date.isoformat() if self._service_date else None,
        }

    def _offer_sample(self, clear_position: bool = False) -> None:
        status = self._status_fields()
        if self._position is not None and self.publisher.has_authority:
            sample = TelemetrySample(
                status=status,
                lat=self._position.lat,
                lng=self._position.lng,
                speed_kmh=self.speed_kmh,
                progress=self.progress(),
                captured_at=self._position.captured_at,
            )
        else:
            sample = TelemetrySample(status=status, clear_position=clear_position)
        self.publisher.offer(sample)
