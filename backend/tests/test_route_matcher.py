"""Tests for RouteMatcher."""

from bustrack.core.route_matcher import RouteMatcher

KEY = ("bus-1", "forward")


def test_basic_matching():
    """Test that a point on a route line returns valid progress."""
    matcher = RouteMatcher()

    # Simple straight route along a latitude line in Bengaluru
    coords = [
        (12.9700, 77.5900),
        (12.9700, 77.6000),
        (12.9700, 77.6100),
    ]
    matcher.load_route(KEY, coords)

    # Point exactly in the middle
    result = matcher.match(KEY, 12.9700, 77.6000)
    assert result is not None
    assert 0.4 < result.progress < 0.6
    assert result.distance_m < 10  # Should be very close to route


def test_offset_point_reports_distance():
    matcher = RouteMatcher()
    matcher.load_route(KEY, [(12.9700, 77.5900), (12.9700, 77.6100)])

    # ~111 m north of the line
    result = matcher.match(KEY, 12.9710, 77.6000)
    assert result is not None
    assert 100 < result.distance_m < 120


def test_unknown_route():
    """Test matching against an unknown route returns None."""
    matcher = RouteMatcher()
    result = matcher.match(("nope", "forward"), 12.9700, 77.6000)
    assert result is None


def test_degenerate_routes_are_not_loaded():
    matcher = RouteMatcher()
    matcher.load_route(KEY, [(12.97, 77.59)])
    assert matcher.match(KEY, 12.97, 77.59) is None

    matcher.load_route(KEY, [(12.97, 77.59), (12.97, 77.59)])
    assert matcher.match(KEY, 12.97, 77.59) is None


def test_line_length():
    """Test approximate line length calculation."""
    matcher = RouteMatcher()
    matcher.load_route(KEY, [(12.9700, 77.5900), (12.9700, 77.6000)])
    # ~0.01 degrees of longitude at ~13 lat ≈ 1085m
    assert 1000 < matcher.total_length_m(KEY) < 1150


def test_unload():
    matcher = RouteMatcher()
    matcher.load_route(KEY, [(12.9700, 77.5900), (12.9700, 77.6100)])
    assert matcher.match(KEY, 12.97, 77.60) is not None

    matcher.unload(KEY)
    assert matcher.match(KEY, 12.97, 77.60) is None
    assert matcher.total_length_m(KEY) == 0.0
