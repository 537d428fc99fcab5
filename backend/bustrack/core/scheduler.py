"""APScheduler setup for periodic tasks."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

logger = logging.getLogger(__name__)


def create_scheduler(manager) -> AsyncIOScheduler:
    """Create and configure the scheduler with all jobs."""
    from bustrack.config import settings

    scheduler = AsyncIOScheduler()

    # Throttled telemetry writes for every vehicle
    scheduler.add_job(
        manager.flush_telemetry,
        "interval",
        seconds=settings.telemetry_interval_seconds,
        id="flush_telemetry",
        name="Flush pending telemetry to the store",
        max_instances=1,
        coalesce=True,
    )

    # Pick up vehicle and stop edits made by other processes
    scheduler.add_job(
        manager.refresh_vehicles,
        "interval",
        seconds=settings.vehicle_refresh_seconds,
        id="refresh_vehicles",
        name="Reload vehicle definitions from the store",
        max_instances=1,
    )

    return scheduler
