"""Async client for the routing (OSRM) and geocoding (Nominatim) services."""

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

import httpx

from bustrack.config import settings
from bustrack.schemas.route import PlaceCandidate

logger = logging.getLogger(__name__)

# Retry configuration
MAX_RETRIES = 2
RETRY_BACKOFF = [1, 2]  # seconds between retries

MIN_GEOCODE_QUERY = 3


@dataclass
class RoutedPath:
    points: list[tuple[float, float]]  # [(lat, lng), ...]
    duration_s: float = 0.0
    leg_durations_s: list[float] = field(default_factory=list)


class RoutingClient:
    """Driving routes, place search and reverse lookup. Failures are never fatal."""

    def __init__(
        self,
        routing_transport: httpx.AsyncBaseTransport | None = None,
        geocoder_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._routing = httpx.AsyncClient(
            base_url=settings.osrm_base_url,
            timeout=settings.routing_timeout_seconds,
            headers={"Accept": "application/json"},
            transport=routing_transport,
        )
        self._geocoder = httpx.AsyncClient(
            base_url=settings.geocoder_base_url,
            timeout=settings.routing_timeout_seconds,
            headers={"Accept": "application/json", "User-Agent": "bustrack/0.1"},
            transport=geocoder_transport,
        )

    async def close(self) -> None:
        await self._routing.aclose()
        await self._geocoder.aclose()

    async def _get_with_retry(
        self, client: httpx.AsyncClient, path: str, label: str, params: dict | None = None,
    ) -> httpx.Response | None:
        """GET request with bounded retry and backoff."""
        for attempt in range(MAX_RETRIES + 1):
            try:
                resp = await client.get(path, params=params)
                resp.raise_for_status()
                return resp
            except (httpx.ReadTimeout, httpx.ConnectTimeout, httpx.ConnectError) as e:
                if attempt < MAX_RETRIES:
                    wait = RETRY_BACKOFF[attempt]
                    logger.warning(
                        "%s attempt %d/%d failed (%s), retrying in %ds",
                        label, attempt + 1, MAX_RETRIES + 1, type(e).__name__, wait,
                    )
                    await asyncio.sleep(wait)
                else:
                    logger.error("%s failed after %d attempts: %s", label, MAX_RETRIES + 1, e)
                    return None
            except httpx.HTTPStatusError as e:
                if e.response.status_code >= 500 and attempt < MAX_RETRIES:
                    wait = RETRY_BACKOFF[attempt]
                    logger.warning(
                        "%s attempt %d/%d got HTTP %d, retrying in %ds",
                        label, attempt + 1, MAX_RETRIES + 1, e.response.status_code, wait,
                    )
                    await asyncio.sleep(wait)
                else:
                    logger.error("%s request failed: %s", label, e)
                    return None
            except Exception:
                logger.exception("%s request failed", label)
                return None
        return None

    async def fetch_route(self, points: Sequence[tuple[float, float]]) -> RoutedPath | None:
        """Driving route through (lat, lng) points in order, or None when unavailable."""
        if len(points) < 2:
            return None

        coords = ";".join(f"{lng:.6f},{lat:.6f}" for lat, lng in points)
        path = f"/route/v1/{settings.routing_profile}/{coords}"
        resp = await self._get_with_retry(
            self._routing, path, "route",
            params={"overview": "full", "geometries": "geojson"},
        )
        if resp is None:
            return None

        try:
            data = resp.json()
            if data.get("code") != "Ok" or not data.get("routes"):
                logger.warning("Routing service returned no route (code=%s)", data.get("code"))
                return None
            route = data["routes"][0]
            geojson = route["geometry"]["coordinates"]
            # [lng, lat] -> (lat, lng)
            routed = [(float(c[1]), float(c[0])) for c in geojson]
            legs = [float(leg.get("duration", 0.0)) for leg in route.get("legs", [])]
            if len(routed) < 2:
                return None
            return RoutedPath(
                points=routed,
                duration_s=float(route.get("duration", 0.0)),
                leg_durations_s=legs,
            )
        except (KeyError, IndexError, TypeError, ValueError):
            logger.exception("Failed to parse routing response")
            return None

    async def geocode(self, text: str, limit: int = 5) -> list[PlaceCandidate]:
        """Free-text place search."""
        query = text.strip()
        if len(query) < MIN_GEOCODE_QUERY:
            return []
        resp = await self._get_with_retry(
            self._geocoder, "/search", "geocode",
            params={"q": query, "format": "json", "limit": limit},
        )
        if resp is None:
            return []

        candidates = []
        try:
            for item in resp.json():
                try:
                    candidates.append(PlaceCandidate(
                        name=str(item.get("display_name", "")),
                        lat=float(item["lat"]),
                        lng=float(item["lon"]),
                    ))
                except (KeyError, ValueError, TypeError):
                    continue
        except Exception:
            logger.exception("Failed to parse geocoding response")
        return candidates

    async def reverse_geocode(self, lat: float, lng: float) -> str | None:
        """Human-readable place name for a coordinate."""
        resp = await self._get_with_retry(
            self._geocoder, "/reverse", "reverse geocode",
            params={"lat": lat, "lon": lng, "format": "json"},
        )
        if resp is None:
            return None
        try:
            name = resp.json().get("display_name")
        except Exception:
            logger.exception("Failed to parse reverse geocoding response")
            return None
        return str(name) if name else None
