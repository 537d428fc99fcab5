from pydantic import BaseModel, ConfigDict, Field


class StopPlace(BaseModel):
    """A physical stop, stored once under stop:{id} and referenced by vehicles."""

    id: str
    name: str
    lat: float
    lng: float


class RouteStopRef(BaseModel):
    """Reference from a vehicle's route to a stop place with its scheduled time."""

    stop_ref: str
    stop_time: str  # "HH:MM"
    day_offset: int = Field(default=0, ge=0)


class Stop(BaseModel):
    """A stop resolved for one journey direction, in visiting order."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    lat: float
    lng: float
    time: str
    sequence: int
    day_offset: int = 0


class RouteGeometryInfo(BaseModel):
    vehicle_id: str
    direction: str
    source: str
    points: list[list[float]]  # [[lat, lng], ...]
    total_duration_s: float | None = None
    leg_durations_s: list[float] = []


class PlaceCandidate(BaseModel):
    name: str
    lat: float
    lng: float
