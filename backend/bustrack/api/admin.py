"""Administrator control endpoints for a vehicle's journey."""

from fastapi import APIRouter, Depends, HTTPException

from bustrack.api.deps import session_context
from bustrack.core.journey import JourneyController
from bustrack.core.session import SessionContext, require_admin
from bustrack.schemas.route import StopPlace
from bustrack.schemas.vehicle import (
    CapacityChange,
    CapacityResult,
    JourneySnapshot,
    SpeedChange,
    VehicleDefinition,
)

router = APIRouter(prefix="/api/admin", tags=["admin"])

# Will be set by main.py
manager = None


def _controller(vehicle_id: str) -> JourneyController:
    if manager is None:
        raise HTTPException(status_code=503, detail="Engine not initialized")
    return manager.get(vehicle_id)


@router.get("/vehicles/{vehicle_id}", response_model=JourneySnapshot)
async def get_journey(vehicle_id: str, ctx: SessionContext = Depends(session_context)):
    """Full journey state as seen by the operator."""
    require_admin(ctx)
    return await _controller(vehicle_id).describe()


@router.put("/vehicles/{vehicle_id}", response_model=JourneySnapshot)
async def put_vehicle(
    vehicle_id: str, vehicle: VehicleDefinition, ctx: SessionContext = Depends(session_context),
):
    """Create or replace a vehicle definition."""
    if vehicle.id != vehicle_id:
        raise HTTPException(status_code=400, detail="Vehicle id does not match path")
    if manager is None:
        raise HTTPException(status_code=503, detail="Engine not initialized")
    ctrl = await manager.register_vehicle(ctx, vehicle)
    return await ctrl.describe()


@router.put("/stops/{stop_id}", response_model=StopPlace)
async def put_stop(stop_id: str, place: StopPlace, ctx: SessionContext = Depends(session_context)):
    if place.id != stop_id:
        raise HTTPException(status_code=400, detail="Stop id does not match path")
    if manager is None:
        raise HTTPException(status_code=503, detail="Engine not initialized")
    return await manager.register_stop(ctx, place)


@router.post("/vehicles/{vehicle_id}/start", response_model=JourneySnapshot)
async def start_journey(vehicle_id: str, ctx: SessionContext = Depends(session_context)):
    return await _controller(vehicle_id).start(ctx)


@router.post("/vehicles/{vehicle_id}/pause", response_model=JourneySnapshot)
async def pause_journey(vehicle_id: str, ctx: SessionContext = Depends(session_context)):
    return _controller(vehicle_id).pause(ctx)


@router.post("/vehicles/{vehicle_id}/resume", response_model=JourneySnapshot)
async def resume_journey(vehicle_id: str, ctx: SessionContext = Depends(session_context)):
    return await _controller(vehicle_id).resume(ctx)


@router.post("/vehicles/{vehicle_id}/toggle", response_model=JourneySnapshot)
async def toggle_journey(vehicle_id: str, ctx: SessionContext = Depends(session_context)):
    """Start, pause or resume depending on the current phase."""
    return await _controller(vehicle_id).toggle(ctx)


@router.post("/vehicles/{vehicle_id}/restart", response_model=JourneySnapshot)
async def restart_journey(vehicle_id: str, ctx: SessionContext = Depends(session_context)):
    return _controller(vehicle_id).restart(ctx)


@router.post("/vehicles/{vehicle_id}/return", response_model=JourneySnapshot)
async def start_return_journey(vehicle_id: str, ctx: SessionContext = Depends(session_context)):
    """Begin the return journey; ignored unless the forward journey is completed."""
    return await _controller(vehicle_id).start_return(ctx)


@router.put("/vehicles/{vehicle_id}/speed", response_model=JourneySnapshot)
async def set_speed(
    vehicle_id: str, change: SpeedChange, ctx: SessionContext = Depends(session_context),
):
    ctrl = _controller(vehicle_id)
    try:
        return ctrl.set_speed(ctx, change.speed_kmh)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/vehicles/{vehicle_id}/capacity", response_model=CapacityResult)
async def adjust_capacity(
    vehicle_id: str, change: CapacityChange, ctx: SessionContext = Depends(session_context),
):
    """Board (+1) or alight (-1) one passenger."""
    ctrl = _controller(vehicle_id)
    occupancy = await ctrl.adjust_capacity(ctx, change.delta)
    return CapacityResult(vehicle_id=vehicle_id, occupancy=occupancy, capacity=ctrl.vehicle.capacity)
