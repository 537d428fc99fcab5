"""Shared fixtures: a hand-driven ticker, a fake routing service and sample stops."""

import datetime
from zoneinfo import ZoneInfo

import pytest

from bustrack.core.routing_client import RoutedPath
from bustrack.core.session import Role, SessionContext
from bustrack.core.store import MemoryStore
from bustrack.schemas.route import Stop

IST = ZoneInfo("Asia/Kolkata")


class ManualHandle:
    def __init__(self, delay: float, callback) -> None:
        self.delay = delay
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualTicker:
    """Runs scheduled callbacks only when the test asks for it."""

    def __init__(self) -> None:
        self.scheduled: list[ManualHandle] = []
        self.delays: list[float] = []

    def call_later(self, delay: float, callback) -> ManualHandle:
        handle = ManualHandle(delay, callback)
        self.scheduled.append(handle)
        return handle

    @property
    def pending(self) -> int:
        return sum(1 for h in self.scheduled if not h.cancelled)

    def advance(self) -> bool:
        """Run the next live callback. Returns False when nothing is scheduled."""
        while self.scheduled:
            handle = self.scheduled.pop(0)
            if handle.cancelled:
                continue
            self.delays.append(handle.delay)
            handle.callback()
            return True
        return False

    def run(self, limit: int = 1000) -> int:
        ticks = 0
        while ticks < limit and self.advance():
            ticks += 1
        return ticks


def densify(points, steps: int = 10) -> list[tuple[float, float]]:
    """Straight segments between consecutive points, `steps` per leg, endpoints included."""
    out = [tuple(points[0])]
    for (lat1, lng1), (lat2, lng2) in zip(points, points[1:]):
        for i in range(1, steps + 1):
            f = i / steps
            out.append((round(lat1 + (lat2 - lat1) * f, 7), round(lng1 + (lng2 - lng1) * f, 7)))
    return out


class FakeRouting:
    """Stands in for RoutingClient: routes along straight legs unless told to fail."""

    def __init__(self, fail: bool = False, steps: int = 10) -> None:
        self.fail = fail
        self.steps = steps
        self.calls: list[list[tuple[float, float]]] = []

    async def fetch_route(self, points):
        self.calls.append(list(points))
        if self.fail:
            return None
        return RoutedPath(points=densify(points, self.steps), duration_s=600.0, leg_durations_s=[300.0, 300.0])

    async def geocode(self, text, limit=5):
        return []

    async def reverse_geocode(self, lat, lng):
        return None

    async def close(self):
        return None


def make_stops(*specs) -> list[Stop]:
    """specs: (id, name, lat, lng, time)."""
    return [
        Stop(id=sid, name=name, lat=lat, lng=lng, time=t, sequence=i)
        for i, (sid, name, lat, lng, t) in enumerate(specs)
    ]


@pytest.fixture
def ticker():
    return ManualTicker()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def routing():
    return FakeRouting()


@pytest.fixture
def admin():
    return SessionContext(role=Role.ADMIN, user="ops@example.com")


@pytest.fixture
def observer():
    return SessionContext(role=Role.OBSERVER, user="rider@example.com")


@pytest.fixture
def abc_stops():
    # Three stops on one parallel in Bengaluru, ~1.08 km apart
    return make_stops(
        ("A", "Majestic", 12.9700, 77.5900, "08:00"),
        ("B", "Corporation", 12.9700, 77.6000, "08:10"),
        ("C", "Richmond Circle", 12.9700, 77.6100, "08:20"),
    )


@pytest.fixture
def morning():
    """Fixed service clock at 07:55 local time."""
    return lambda: datetime.datetime(2026, 3, 2, 7, 55, tzinfo=IST)
