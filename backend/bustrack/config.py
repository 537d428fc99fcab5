from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    redis_url: str = "redis://localhost:6379/0"
    store_backend: str = "redis"  # "redis" or "memory"
    osrm_base_url: str = "https://router.project-osrm.org"
    routing_profile: str = "driving"
    geocoder_base_url: str = "https://nominatim.openstreetmap.org"
    routing_timeout_seconds: float = 10.0
    telemetry_interval_seconds: float = 1.8
    vehicle_refresh_seconds: int = 60
    default_speed_kmh: float = 60.0
    speed_options: list[int] = [60, 120, 180, 240, 300]
    arrival_tolerance_deg: float = 0.0002
    min_tick_seconds: float = 0.05
    simulation_time_scale: float = 1.0
    service_timezone: str = "Asia/Kolkata"

    model_config = {"env_prefix": "", "case_sensitive": False}


settings = Settings()
