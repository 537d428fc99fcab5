"""WebSocket endpoint for real-time vehicle updates."""

import asyncio
import logging

import orjson
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from bustrack.core.observer import ObserverSession

logger = logging.getLogger(__name__)

router = APIRouter()

# Will be set by main.py on startup
store = None


@router.websocket("/ws/vehicles/{vehicle_id}")
async def vehicle_ws(websocket: WebSocket, vehicle_id: str) -> None:
    """Stream the observer view of one vehicle after every change."""
    await websocket.accept()

    if store is None:
        await websocket.close(code=1011, reason="Service not ready")
        return

    session = ObserverSession(store, vehicle_id)
    if await session.current() is None:
        await websocket.close(code=1008, reason="Unknown vehicle")
        return

    message_type = "snapshot"
    try:
        async for view in session.stream():
            payload = view.model_dump(mode="json")
            payload["type"] = message_type
            await websocket.send_bytes(orjson.dumps(payload))
            message_type = "update"
    except WebSocketDisconnect:
        pass
    except asyncio.CancelledError:
        pass
    except Exception:
        logger.exception("WebSocket error")
