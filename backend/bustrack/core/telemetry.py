"""Throttled persistence of a vehicle's live position and journey status."""

import datetime
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from bustrack.core.store import Store, tracker_key

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_S = 1.8


@dataclass
class TelemetrySample:
    status: dict
    lat: float | None = None
    lng: float | None = None
    speed_kmh: float | None = None
    progress: float | None = None
    clear_position: bool = False
    captured_at: datetime.datetime = field(
        default_factory=lambda: datetime.datetime.now(datetime.timezone.utc)
    )

    @property
    def has_position(self) -> bool:
        return self.lat is not None and self.lng is not None

    def to_document(self, vehicle_id: str) -> dict:
        doc = {
            "vehicle_id": vehicle_id,
            "timestamp": self.captured_at.isoformat(),
            **{f"status.{k}": v for k, v in self.status.items()},
        }
        if self.has_position:
            doc["location"] = {"type": "Point", "coordinates": [self.lng, self.lat]}
            doc["speed"] = self.speed_kmh
            doc["progress"] = self.progress
        elif self.clear_position:
            doc["location"] = None
            doc["speed"] = None
            doc["progress"] = None
        return doc


class TelemetryPublisher:
    """Writes the most recent sample for one vehicle at most once per interval.

    Position fields are only written while this publisher holds position
    authority. A failed write keeps the sample pending for the next interval.
    """

    def __init__(
        self,
        store: Store,
        vehicle_id: str,
        interval_s: float = DEFAULT_INTERVAL_S,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.vehicle_id = vehicle_id
        self.interval_s = interval_s
        self._monotonic = monotonic
        self._pending: TelemetrySample | None = None
        self._last_write: float | None = None
        self._has_authority = False
        self._active = True
        self.writes = 0
        self.failures = 0

    @property
    def has_authority(self) -> bool:
        return self._has_authority

    @property
    def pending(self) -> TelemetrySample | None:
        return self._pending

    def acquire(self) -> None:
        self._has_authority = True

    def release(self) -> None:
        self._has_authority = False
        if self._pending is not None and self._pending.has_position:
            self._pending = TelemetrySample(status=self._pending.status, captured_at=self._pending.captured_at)

    def offer(self, sample: TelemetrySample) -> None:
        """Replace the pending sample; the latest one always wins."""
        if not self._active:
            return
        if sample.has_position and not self._has_authority:
            logger.debug("Dropping position for %s without authority", self.vehicle_id)
            return
        self._pending = sample

    async def flush(self, force: bool = False) -> bool:
        """Write the pending sample if the interval has elapsed. Returns True on write."""
        if not self._active or self._pending is None:
            return False
        now = self._monotonic()
        if not force and self._last_write is not None and now - self._last_write < self.interval_s:
            return False

        sample = self._pending
        try:
            await self.store.put(tracker_key(self.vehicle_id), sample.to_document(self.vehicle_id))
        except Exception:
            self.failures += 1
            logger.exception("Telemetry write failed for %s, will retry", self.vehicle_id)
            return False

        if not self._active:
            return False
        self._last_write = now
        self.writes += 1
        # A newer sample offered during the write stays pending
        if self._pending is sample:
            self._pending = None
        return True

    def close(self) -> None:
        self._active = False
        self._has_authority = False
        self._pending = None
