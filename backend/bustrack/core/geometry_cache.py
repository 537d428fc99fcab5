"""Memoized route polylines per (vehicle, direction)."""

import datetime
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum

from bustrack.core.routing_client import RoutingClient
from bustrack.schemas.route import Stop

logger = logging.getLogger(__name__)


class Direction(str, Enum):
    FORWARD = "forward"
    RETURN = "return"


class GeometrySource(str, Enum):
    ROUTED = "routed"
    STRAIGHT_LINE = "straight_line"


StopSignature = tuple[tuple[str, float, float], ...]


def stop_signature(stops: Sequence[Stop]) -> StopSignature:
    """Identity of a stop set: ordered ids and coordinates."""
    return tuple((s.id, s.lat, s.lng) for s in stops)


@dataclass
class RouteGeometry:
    points: list[tuple[float, float]]  # [(lat, lng), ...]
    source: GeometrySource
    signature: StopSignature
    duration_s: float | None = None
    leg_durations_s: list[float] = field(default_factory=list)
    fetched_at: datetime.datetime = field(
        default_factory=lambda: datetime.datetime.now(datetime.timezone.utc)
    )


class RouteGeometryCache:
    def __init__(self, routing: RoutingClient) -> None:
        self.routing = routing
        self._entries: dict[tuple[str, Direction], RouteGeometry] = {}

    async def get_geometry(
        self, vehicle_id: str, direction: Direction, stops: Sequence[Stop],
    ) -> RouteGeometry:
        key = (vehicle_id, Direction(direction))
        signature = stop_signature(stops)
        cached = self._entries.get(key)
        if cached is not None and cached.signature == signature:
            return cached

        geometry = await self._compute(stops, signature)
        self._entries[key] = geometry
        logger.info(
            "Vehicle %s (%s): %s geometry with %d points",
            vehicle_id, key[1].value, geometry.source.value, len(geometry.points),
        )
        return geometry

    def peek(self, vehicle_id: str, direction: Direction) -> RouteGeometry | None:
        return self._entries.get((vehicle_id, Direction(direction)))

    def invalidate(self, vehicle_id: str, direction: Direction | None = None) -> None:
        directions = [Direction(direction)] if direction is not None else list(Direction)
        for d in directions:
            self._entries.pop((vehicle_id, d), None)

    async def _compute(self, stops: Sequence[Stop], signature: StopSignature) -> RouteGeometry:
        usable = [(s.lat, s.lng) for s in stops if s.lat != 0 and s.lng != 0]
        if len(usable) >= 2:
            try:
                routed = await self.routing.fetch_route(usable)
            except Exception:
                logger.exception("Routing service call failed")
                routed = None
            if routed is not None and len(routed.points) >= 2:
                return RouteGeometry(
                    points=routed.points,
                    source=GeometrySource.ROUTED,
                    signature=signature,
                    duration_s=routed.duration_s,
                    leg_durations_s=routed.leg_durations_s,
                )

        logger.warning("Using straight-line geometry through %d stops", len(stops))
        return RouteGeometry(
            points=[(s.lat, s.lng) for s in stops],
            source=GeometrySource.STRAIGHT_LINE,
            signature=signature,
        )
