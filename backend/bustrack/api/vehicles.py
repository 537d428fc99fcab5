"""Observer (read-only) vehicle endpoints."""

from fastapi import APIRouter, HTTPException, Query

from bustrack.core.geometry_cache import Direction
from bustrack.core.observer import ObserverSession
from bustrack.schemas.route import RouteGeometryInfo
from bustrack.schemas.vehicle import NearbyVehicle, ObserverView

router = APIRouter(prefix="/api/vehicles", tags=["vehicles"])

# Will be set by main.py
manager = None
store = None


@router.get("", response_model=list[ObserverView])
async def list_vehicles(route: str | None = None):
    """Live view of every vehicle."""
    if manager is None or store is None:
        return []
    views = []
    for vid in sorted(manager.controllers):
        view = await ObserverSession(store, vid).current()
        if view is None:
            continue
        if route and view.route_number != route:
            continue
        views.append(view)
    return views


@router.get("/nearby", response_model=list[NearbyVehicle])
async def nearby_vehicles(
    lat: float,
    lng: float,
    radius_km: float = Query(default=2.0, gt=0, le=50),
):
    """Vehicles with stops within radius_km of a point, nearest first."""
    if manager is None:
        return []
    return manager.find_nearby(lat, lng, radius_km)


@router.get("/{vehicle_id}", response_model=ObserverView)
async def get_vehicle(vehicle_id: str):
    if store is None:
        raise HTTPException(status_code=503, detail="Engine not initialized")
    view = await ObserverSession(store, vehicle_id).current()
    if view is None:
        raise HTTPException(status_code=404, detail="Vehicle not found")
    return view


@router.get("/{vehicle_id}/geometry", response_model=RouteGeometryInfo)
async def get_geometry(vehicle_id: str, direction: Direction = Direction.FORWARD):
    """Route polyline used for the given direction (routed or straight-line)."""
    if manager is None:
        raise HTTPException(status_code=503, detail="Engine not initialized")
    ctrl = manager.get(vehicle_id)
    stops = ctrl.forward_stops if direction is Direction.FORWARD else ctrl.return_stops
    geometry = await manager.geometry_cache.get_geometry(vehicle_id, direction, stops)
    return RouteGeometryInfo(
        vehicle_id=vehicle_id,
        direction=direction.value,
        source=geometry.source.value,
        points=[[lat, lng] for lat, lng in geometry.points],
        total_duration_s=geometry.duration_s,
        leg_durations_s=geometry.leg_durations_s,
    )
