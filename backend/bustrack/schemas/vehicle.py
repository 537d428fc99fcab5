from pydantic import BaseModel, Field

from bustrack.schemas.route import RouteStopRef


class VehicleDefinition(BaseModel):
    """Static attributes and route of a bus, stored under vehicle:{id}."""

    id: str
    route_number: str
    name: str
    driver_name: str = ""
    driver_contact: str = ""
    capacity: int = Field(gt=0)
    stops: list[RouteStopRef] = []
    return_stops: list[RouteStopRef] | None = None
    owner: str | None = None


class Position(BaseModel):
    lat: float
    lng: float


class JourneySnapshot(BaseModel):
    """Administrator view of a vehicle's journey."""

    vehicle_id: str
    status: str
    phase: str
    started: bool
    paused: bool
    is_return: bool
    current_stop_index: int
    stop_count: int
    position: Position | None = None
    speed_kmh: float
    eta_next_s: int | None = None
    eta_final_s: int | None = None
    delayed: bool = False
    progress: float | None = None
    occupancy: int = 0
    capacity: int = 0
    start_time: str | None = None
    end_time: str | None = None
    scheduled_minutes: int | None = None


class ObserverStop(BaseModel):
    id: str
    name: str
    time: str
    time_label: str = ""
    passed: bool = False


class ObserverView(BaseModel):
    """Read-only view reconstructed by any observer from store documents."""

    vehicle_id: str
    route_number: str
    name: str
    status: str
    phase: str
    current_stop_index: int
    stops: list[ObserverStop] = []
    position: Position | None = None
    speed_kmh: float | None = None
    eta_next_s: int | None = None
    eta_final_s: int | None = None
    eta_next_label: str = "N/A"
    eta_final_label: str = "N/A"
    delayed: bool = False
    progress: float | None = None
    occupancy: int = 0
    capacity: int = 0
    last_updated: str | None = None


class NearbyStop(BaseModel):
    id: str
    name: str
    time: str
    distance_km: float
    distance_label: str


class NearbyVehicle(BaseModel):
    vehicle_id: str
    route_number: str
    name: str
    min_distance_km: float
    stops: list[NearbyStop]


class SpeedChange(BaseModel):
    speed_kmh: int


class CapacityChange(BaseModel):
    delta: int = Field(ge=-1, le=1)


class CapacityResult(BaseModel):
    vehicle_id: str
    occupancy: int
    capacity: int
