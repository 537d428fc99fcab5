"""Time-to-next-stop, time-to-final-stop and schedule delay from a live position."""

import datetime
import logging
from collections.abc import Sequence
from dataclasses import dataclass

from bustrack.core.geo import haversine_km, scheduled_at
from bustrack.schemas.route import Stop

logger = logging.getLogger(__name__)

# Used when the reported speed is not positive
DEFAULT_SPEED_KMH = 60.0
# A stop time this far behind the clock is read as the next day's
ROLLOVER_GRACE = datetime.timedelta(hours=12)


@dataclass(frozen=True)
class EtaEstimate:
    eta_next_s: int | None = None
    eta_final_s: int | None = None
    delayed: bool = False


NO_ESTIMATE = EtaEstimate()


class EtaCalculator:
    """Speed-based ETA using great-circle distances along the stop sequence.

    Pure: observers holding the same inputs compute the same estimate.
    """

    def calculate(
        self,
        position: tuple[float, float] | None,
        upcoming: Sequence[Stop],
        speed_kmh: float | None,
        now: datetime.datetime,
        service_date: datetime.date | None = None,
    ) -> EtaEstimate:
        """ETA in seconds to upcoming[0] (next) and upcoming[-1] (final).

        The final ETA follows the stops in order: vehicle -> next stop, then
        stop-to-stop to the final one, so it is never below the next ETA.
        """
        if position is None or not upcoming:
            return NO_ESTIMATE

        effective_speed = speed_kmh if speed_kmh and speed_kmh > 0 else DEFAULT_SPEED_KMH

        lat, lng = position
        nxt = upcoming[0]
        dist_next_km = haversine_km(lat, lng, nxt.lat, nxt.lng)
        dist_final_km = dist_next_km
        for prev, stop in zip(upcoming, upcoming[1:]):
            dist_final_km += haversine_km(prev.lat, prev.lng, stop.lat, stop.lng)

        eta_next = round(dist_next_km / effective_speed * 3600)
        eta_final = round(dist_final_km / effective_speed * 3600)

        delayed = self.is_delayed(nxt, eta_next, now, service_date)
        return EtaEstimate(eta_next_s=eta_next, eta_final_s=eta_final, delayed=delayed)

    def is_delayed(
        self,
        stop: Stop,
        eta_s: int,
        now: datetime.datetime,
        service_date: datetime.date | None = None,
    ) -> bool:
        """Whether arriving eta_s seconds from now misses the stop's scheduled time."""
        if now.tzinfo is None:
            now = now.replace(tzinfo=datetime.timezone.utc)
        day = service_date or now.date()
        due = scheduled_at(day, stop.time, stop.day_offset, now.tzinfo)
        if due is None:
            return False
        if stop.day_offset == 0 and now - due > ROLLOVER_GRACE:
            # An early-morning time on a late-evening service day belongs to the next day
            due += datetime.timedelta(days=1)
        return now + datetime.timedelta(seconds=eta_s) > due
