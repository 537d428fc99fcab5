"""Tests for distance, time-of-day and formatting helpers."""

import datetime

from bustrack.core.geo import (
    closest_index,
    elapsed_minutes,
    format_distance_km,
    format_duration,
    format_time_12h,
    haversine_km,
    parse_time_of_day,
    path_length_km,
    scheduled_at,
    stops_within,
)
from conftest import IST, make_stops


def test_haversine_one_degree_latitude():
    d = haversine_km(12.0, 77.0, 13.0, 77.0)
    assert 111.0 < d < 111.4


def test_haversine_same_point_is_zero():
    assert haversine_km(12.97, 77.59, 12.97, 77.59) == 0


def test_path_length_sums_segments():
    points = [(12.97, 77.59), (12.97, 77.60), (12.97, 77.61)]
    whole = haversine_km(12.97, 77.59, 12.97, 77.61)
    assert abs(path_length_km(points) - whole) < 0.001


def test_closest_index():
    points = [(0.0, 0.0), (0.0, 1.0), (0.0, 2.0)]
    assert closest_index(points, (0.1, 1.2)) == 1
    assert closest_index(points, (5.0, 5.0)) == 2


def test_format_duration():
    assert format_duration(None) == "N/A"
    assert format_duration(60) == "1 min"
    assert format_duration(300) == "5 mins"
    assert format_duration(3900) == "1h 5m"
    assert format_duration(7200) == "2h"


def test_format_distance():
    assert format_distance_km(None) == "-"
    assert format_distance_km(0.25) == "250 m"
    assert format_distance_km(1.234) == "1.23 km"


def test_parse_time_of_day():
    assert parse_time_of_day("08:05") == datetime.time(8, 5)
    assert parse_time_of_day("8:05:30") == datetime.time(8, 5, 30)
    assert parse_time_of_day("25:00") is None
    assert parse_time_of_day("soon") is None
    assert parse_time_of_day(None) is None


def test_format_time_12h():
    assert format_time_12h("14:05") == "2:05 PM"
    assert format_time_12h("00:30") == "12:30 AM"
    assert format_time_12h("") == "N/A"


def test_elapsed_minutes_wraps_midnight():
    assert elapsed_minutes("08:00", "09:30") == 90
    # No day offset: an earlier end time is read as after midnight
    assert elapsed_minutes("23:30", "00:30") == 60


def test_elapsed_minutes_with_day_offset():
    assert elapsed_minutes("22:00", "06:00", end_day_offset=1) == 480
    assert elapsed_minutes("08:00", "08:00", end_day_offset=1) == 1440


def test_scheduled_at_applies_day_offset():
    due = scheduled_at(datetime.date(2026, 3, 2), "00:15", 1, IST)
    assert due == datetime.datetime(2026, 3, 3, 0, 15, tzinfo=IST)
    assert scheduled_at(datetime.date(2026, 3, 2), None, 0, IST) is None


def test_stops_within_sorted_and_skips_unknown():
    stops = make_stops(
        ("far", "Far", 12.99, 77.59, "08:00"),
        ("near", "Near", 12.971, 77.59, "08:10"),
        ("unknown", "Unknown Stop", 0.0, 0.0, "08:20"),
    )
    hits = stops_within(12.97, 77.59, stops, radius_km=5)
    assert [s.id for s, _ in hits] == ["near", "far"]
    assert hits[0][1] < hits[1][1]
    assert stops_within(12.97, 77.59, stops, radius_km=0.05) == []
