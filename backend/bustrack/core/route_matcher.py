"""Linear referencing of positions on route geometries with Shapely."""

import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass

from shapely.geometry import LineString, Point

from bustrack.core.geo import path_length_km

logger = logging.getLogger(__name__)

LAT_M_PER_DEG = 111_320.0

RouteKey = tuple[str, str]  # (vehicle_id, direction)


@dataclass
class MatchResult:
    progress: float  # 0.0–1.0 along the route
    distance_m: float  # perpendicular distance from route in meters


@dataclass
class _LoadedRoute:
    line: LineString
    total_m: float
    lon_m_per_deg: float


class RouteMatcher:
    """Projects positions onto loaded (vehicle, direction) polylines."""

    def __init__(self) -> None:
        self._routes: dict[RouteKey, _LoadedRoute] = {}

    def load_route(self, key: RouteKey, points: Sequence[tuple[float, float]]) -> None:
        """Load route geometry. points = [(lat, lng), ...]"""
        if len(points) < 2:
            self._routes.pop(key, None)
            return
        # Shapely uses (x, y) = (lng, lat)
        line = LineString([(p[1], p[0]) for p in points])
        if line.length == 0:
            self._routes.pop(key, None)
            return
        mean_lat = sum(p[0] for p in points) / len(points)
        self._routes[key] = _LoadedRoute(
            line=line,
            total_m=path_length_km(points) * 1000,
            lon_m_per_deg=LAT_M_PER_DEG * math.cos(math.radians(mean_lat)),
        )

    def unload(self, key: RouteKey) -> None:
        self._routes.pop(key, None)

    def match(self, key: RouteKey, lat: float, lng: float) -> MatchResult | None:
        route = self._routes.get(key)
        if route is None:
            return None
        point = Point(lng, lat)
        progress = route.line.project(point, normalized=True)
        nearest = route.line.interpolate(progress, normalized=True)
        dlat = (nearest.y - lat) * LAT_M_PER_DEG
        dlng = (nearest.x - lng) * route.lon_m_per_deg
        return MatchResult(progress=progress, distance_m=math.sqrt(dlat * dlat + dlng * dlng))

    def total_length_m(self, key: RouteKey) -> float:
        route = self._routes.get(key)
        return route.total_m if route else 0.0
