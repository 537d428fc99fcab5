"""Place search passthrough to the geocoding service."""

from fastapi import APIRouter, Query

from bustrack.schemas.route import PlaceCandidate

router = APIRouter(prefix="/api/geocode", tags=["geocode"])

# Will be set by main.py
routing = None


@router.get("", response_model=list[PlaceCandidate])
async def search_places(q: str, limit: int = Query(default=5, ge=1, le=20)):
    """Candidate places for free text; short queries return nothing."""
    if routing is None:
        return []
    return await routing.geocode(q, limit=limit)


@router.get("/reverse")
async def reverse(lat: float, lng: float):
    name = None
    if routing is not None:
        name = await routing.reverse_geocode(lat, lng)
    return {"lat": lat, "lng": lng, "name": name}
