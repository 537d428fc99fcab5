"""Diagnostics API for inspecting the simulation engine."""

from fastapi import APIRouter

router = APIRouter(prefix="/api/diagnostics", tags=["diagnostics"])

# Will be set by main.py
manager = None


@router.get("")
async def get_diagnostics():
    """Geometry source, simulator activity and telemetry counters per vehicle."""
    if manager is None:
        return {"error": "Engine not initialized"}
    return manager.get_diagnostics()


@router.get("/vehicles/{vehicle_id}")
async def get_vehicle_diagnostics(vehicle_id: str):
    if manager is None:
        return {"error": "Engine not initialized"}
    diag = manager.get_diagnostics()
    for v in diag["vehicles"]:
        if v["vehicle_id"] == vehicle_id:
            return v
    return {"error": "Vehicle not found"}
