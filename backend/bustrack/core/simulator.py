"""Advance a simulated vehicle position along a route polyline.

The simulator walks a coordinate cursor over the geometry and a stop cursor
over the journey's stops. Each tick publishes the coordinate under the
cursor; when that coordinate lies within the arrival tolerance of the stop
under the stop cursor it reports an arrival and halts until resumed.
Otherwise it advances the cursor and schedules the next tick after the time
the next segment takes at the configured speed.
"""

import datetime
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum

from bustrack.core.geo import closest_index, haversine_km
from bustrack.core.ticker import TickHandle, Ticker
from bustrack.schemas.route import Stop

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_DEG = 0.0002  # ~20 m
# Delay used to retry after a failing tick
RETRY_DELAY_S = 1.0


@dataclass
class PositionSample:
    lat: float
    lng: float
    speed_kmh: float
    captured_at: datetime.datetime


class TickKind(str, Enum):
    POSITION = "position"
    ARRIVAL = "arrival"
    FINAL = "final"


@dataclass
class TickResult:
    kind: TickKind
    sample: PositionSample
    coord_index: int
    stop_index: int | None = None
    delay_s: float | None = None


def starting_cursor(
    points: Sequence[tuple[float, float]],
    last_position: tuple[float, float] | None,
    target_stop: Stop | None,
) -> int:
    """Cursor to start from: nearest point to the last live position, else to the target stop."""
    if not points:
        return 0
    if last_position is not None:
        return closest_index(points, last_position)
    if target_stop is not None:
        return closest_index(points, (target_stop.lat, target_stop.lng))
    return 0


class PositionSimulator:
    def __init__(
        self,
        points: Sequence[tuple[float, float]],
        stops: Sequence[Stop],
        speed_kmh: float,
        ticker: Ticker,
        on_position: Callable[[PositionSample], None],
        on_arrival: Callable[[int, PositionSample], None],
        coord_index: int = 0,
        stop_index: int = 0,
        tolerance_deg: float = DEFAULT_TOLERANCE_DEG,
        min_tick_s: float = 0.05,
        time_scale: float = 1.0,
        clock: Callable[[], datetime.datetime] | None = None,
    ) -> None:
        self.points = list(points)
        self.stops = list(stops)
        self.speed_kmh = speed_kmh
        self.coord_index = coord_index
        self.stop_index = stop_index
        self.tolerance_deg = tolerance_deg
        self.min_tick_s = min_tick_s
        self.time_scale = time_scale if time_scale > 0 else 1.0
        self._ticker = ticker
        self._on_position = on_position
        self._on_arrival = on_arrival
        self._clock = clock or (lambda: datetime.datetime.now(datetime.timezone.utc))
        self._handle: TickHandle | None = None
        self._running = False
        self._finished = False
        # Bumped whenever the loop is armed or stopped from outside a tick
        self._epoch = 0
        # Cursor of the last coordinate handed to on_position
        self._published_index: int | None = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def finished(self) -> bool:
        return self._finished

    # ------------------------------------------------------------------
    # Control

    def start(self) -> None:
        """Arm the loop from the current cursor; the first tick runs immediately."""
        if self._finished:
            return
        self._cancel_handle()
        self._epoch += 1
        self._running = True
        self._schedule(0.0)

    def resume(self) -> None:
        # halt() leaves the cursor on the held coordinate, so the first tick republishes it
        self.start()

    def halt(self) -> None:
        if self._running and self._published_index is not None:
            # Mid-leg: the cursor already points past the published coordinate
            self.coord_index = self._published_index
        self._stop()

    def cancel(self) -> None:
        """Stop scheduling ticks. Safe to call any number of times."""
        self._stop()

    def _stop(self) -> None:
        self._epoch += 1
        self._running = False
        self._cancel_handle()

    def set_speed(self, speed_kmh: float) -> None:
        if speed_kmh > 0:
            self.speed_kmh = speed_kmh

    # ------------------------------------------------------------------
    # Loop

    def _schedule(self, delay: float) -> None:
        self._handle = self._ticker.call_later(delay, self._tick)

    def _cancel_handle(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _tick(self) -> None:
        self._handle = None
        if not self._running:
            return
        epoch = self._epoch
        coord_index, stop_index = self.coord_index, self.stop_index
        try:
            result = self.step()
            if result.kind is not TickKind.POSITION:
                # Arrival (or final snap): halt before reporting
                self._running = False
                if result.kind is TickKind.FINAL:
                    self._finished = True
                self._on_position(result.sample)
                self._published_index = result.coord_index
                self._on_arrival(result.stop_index, result.sample)
                return
            self._on_position(result.sample)
            self._published_index = result.coord_index
        except Exception:
            logger.exception("Simulation tick failed at cursor %d", coord_index)
            if epoch == self._epoch:
                # Replay the same tick; halted or cancelled loops stay stopped
                self.coord_index, self.stop_index = coord_index, stop_index
                self._finished = False
                self._running = True
                self._schedule(RETRY_DELAY_S)
            return

        if self._running:
            self._schedule(result.delay_s or self.min_tick_s)

    def step(self) -> TickResult:
        """Compute one tick without scheduling anything."""
        now = self._clock()
        if not self.stops:
            raise ValueError("simulator has no stops")

        if self.coord_index >= len(self.points):
            # Geometry exhausted before the expected arrival: snap to the final stop
            final = self.stops[-1]
            self.stop_index = len(self.stops)
            return TickResult(
                kind=TickKind.FINAL,
                sample=PositionSample(final.lat, final.lng, self.speed_kmh, now),
                coord_index=self.coord_index,
                stop_index=len(self.stops) - 1,
            )

        lat, lng = self.points[self.coord_index]
        sample = PositionSample(lat, lng, self.speed_kmh, now)

        if self.stop_index < len(self.stops) and self._near(lat, lng, self.stops[self.stop_index]):
            reached = self.stop_index
            self.stop_index += 1
            kind = TickKind.FINAL if reached == len(self.stops) - 1 else TickKind.ARRIVAL
            return TickResult(kind=kind, sample=sample, coord_index=self.coord_index, stop_index=reached)

        delay = self.min_tick_s
        if self.coord_index + 1 < len(self.points):
            nlat, nlng = self.points[self.coord_index + 1]
            distance_km = haversine_km(lat, lng, nlat, nlng)
            delay = max(self.min_tick_s, distance_km / self.speed_kmh * 3600 / self.time_scale)
        self.coord_index += 1
        return TickResult(kind=TickKind.POSITION, sample=sample, coord_index=self.coord_index - 1, delay_s=delay)

    def _near(self, lat: float, lng: float, stop: Stop) -> bool:
        return abs(lat - stop.lat) < self.tolerance_deg and abs(lng - stop.lng) < self.tolerance_deg
