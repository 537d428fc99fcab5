"""Distance, time-of-day and display formatting helpers shared by the engine."""

import datetime
import math
from collections.abc import Iterable, Sequence

EARTH_RADIUS_KM = 6371.0
MINUTES_PER_DAY = 24 * 60


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in kilometres between two lat/lng points."""
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)
    a = (math.sin(dlat / 2) ** 2 +
         math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) *
         math.sin(dlng / 2) ** 2)
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def path_length_km(points: Sequence[tuple[float, float]]) -> float:
    """Summed great-circle length of an ordered (lat, lng) polyline."""
    total = 0.0
    for i in range(1, len(points)):
        total += haversine_km(points[i - 1][0], points[i - 1][1], points[i][0], points[i][1])
    return total


def closest_index(points: Sequence[tuple[float, float]], target: tuple[float, float]) -> int:
    """Index of the point nearest to target, measured in plain degree space."""
    best_idx = 0
    best_dist = float("inf")
    for i, (lat, lng) in enumerate(points):
        d = (lat - target[0]) ** 2 + (lng - target[1]) ** 2
        if d < best_dist:
            best_dist = d
            best_idx = i
    return best_idx


def format_duration(seconds: float | None) -> str:
    if seconds is None or (isinstance(seconds, float) and math.isnan(seconds)):
        return "N/A"
    mins = round(seconds / 60)
    if mins < 60:
        return f"{mins} min" if mins == 1 else f"{mins} mins"
    hrs, rem = divmod(mins, 60)
    return f"{hrs}h {rem}m" if rem else f"{hrs}h"


def format_distance_km(distance_km: float | None) -> str:
    if distance_km is None or math.isnan(distance_km):
        return "-"
    if distance_km < 0.5:
        return f"{round(distance_km * 1000)} m"
    return f"{distance_km:.2f} km"


def parse_time_of_day(value: str | None) -> datetime.time | None:
    """Parse 'HH:MM' (or 'HH:MM:SS') into a time; None when absent or malformed."""
    if not value:
        return None
    parts = value.strip().split(":")
    if len(parts) not in (2, 3):
        return None
    try:
        nums = [int(p) for p in parts]
        return datetime.time(*nums)
    except (ValueError, TypeError):
        return None


def format_time_12h(value: str | None) -> str:
    """'14:05' -> '2:05 PM'."""
    t = parse_time_of_day(value)
    if t is None:
        return "N/A"
    ampm = "PM" if t.hour >= 12 else "AM"
    hour = t.hour % 12 or 12
    return f"{hour}:{t.minute:02d} {ampm}"


def minutes_of_day(value: str | None, day_offset: int = 0) -> int | None:
    """Minutes since midnight of the service day, shifted by whole days."""
    t = parse_time_of_day(value)
    if t is None:
        return None
    return day_offset * MINUTES_PER_DAY + t.hour * 60 + t.minute


def elapsed_minutes(start: str | None, end: str | None, end_day_offset: int = 0) -> int | None:
    """Minutes from one time-of-day to another.

    An explicit day offset on the end places it that many days later. Without
    one, an end earlier than the start is assumed to fall after midnight.
    """
    start_m = minutes_of_day(start)
    end_m = minutes_of_day(end, end_day_offset)
    if start_m is None or end_m is None:
        return None
    elapsed = end_m - start_m
    if elapsed < 0 and end_day_offset == 0:
        elapsed += MINUTES_PER_DAY
    return elapsed


def scheduled_at(
    service_date: datetime.date,
    time_of_day: str | None,
    day_offset: int,
    tz: datetime.tzinfo,
) -> datetime.datetime | None:
    """Aware datetime of a scheduled stop time on a given service day."""
    t = parse_time_of_day(time_of_day)
    if t is None:
        return None
    day = service_date + datetime.timedelta(days=day_offset)
    return datetime.datetime.combine(day, t, tzinfo=tz)


def stops_within(lat: float, lng: float, stops: Iterable, radius_km: float) -> list[tuple[object, float]]:
    """Stops (anything with .lat/.lng) within radius, nearest first, paired with distance."""
    found = []
    for stop in stops:
        if not stop.lat or not stop.lng:
            continue
        d = haversine_km(lat, lng, stop.lat, stop.lng)
        if d <= radius_km:
            found.append((stop, d))
    found.sort(key=lambda pair: pair[1])
    return found
