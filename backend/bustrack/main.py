"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from bustrack.api import admin, diagnostics, geocode, vehicles, ws
from bustrack.config import settings
from bustrack.core.geometry_cache import RouteGeometryCache
from bustrack.core.journey_manager import JourneyManager, VehicleNotFound
from bustrack.core.routing_client import RoutingClient
from bustrack.core.scheduler import create_scheduler
from bustrack.core.session import NotAuthorized
from bustrack.core.store import MemoryStore, RedisStore, Store

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


async def create_store() -> Store:
    if settings.store_backend == "memory":
        logger.info("Using in-process store")
        return MemoryStore()
    store = RedisStore(settings.redis_url)
    await store.connect()
    return store


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    store = await create_store()
    routing = RoutingClient()
    manager = JourneyManager(store, RouteGeometryCache(routing))

    # Wire up API modules
    admin.manager = manager
    vehicles.manager = manager
    vehicles.store = store
    diagnostics.manager = manager
    geocode.routing = routing
    ws.store = store

    # Load vehicles and resume any journeys left running
    try:
        await manager.load_vehicles()
    except Exception:
        logger.exception("Failed to load initial vehicles - will retry")

    scheduler = create_scheduler(manager)
    scheduler.start()
    logger.info(
        "Bus tracker started - telemetry every %.1fs, %d vehicles",
        settings.telemetry_interval_seconds, len(manager.controllers),
    )

    yield

    # Shutdown
    scheduler.shutdown(wait=False)
    await manager.shutdown()
    await routing.close()
    await store.close()
    logger.info("Bus tracker shut down")


app = FastAPI(
    title="Bus Journey Tracker",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(NotAuthorized)
async def not_authorized_handler(request: Request, exc: NotAuthorized):
    return JSONResponse(status_code=403, content={"detail": str(exc)})


@app.exception_handler(VehicleNotFound)
async def vehicle_not_found_handler(request: Request, exc: VehicleNotFound):
    return JSONResponse(status_code=404, content={"detail": f"Vehicle {exc} not found"})


app.include_router(vehicles.router)
app.include_router(admin.router)
app.include_router(geocode.router)
app.include_router(diagnostics.router)
app.include_router(ws.router)


@app.get("/api/health")
async def health():
    return {"status": "ok"}
