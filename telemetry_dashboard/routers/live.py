"""WebSocket channel streaming point snapshots to dashboards."""
from __future__ import annotations

import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from telemetry_dashboard.http_utils import scheduler

router = APIRouter()
logger = logging.getLogger(__name__)

UPDATE_FRAME = "update"
RESET_NOTIFICATIONS_FRAME = "resetNotifications"


@router.websocket("/ws")
async def live_updates(websocket: WebSocket) -> None:
    running = scheduler(websocket.app)
    await websocket.accept()
    if running is None:
        await websocket.close(code=1013)
        return
    running.distributor.add(websocket)
    try:
        await running.refresh_all(websocket, send_existing_first=True)
        while True:
            frame = (await websocket.receive_text()).strip()
            if frame == UPDATE_FRAME:
                await running.refresh_all(websocket, send_existing_first=True)
            elif frame == RESET_NOTIFICATIONS_FRAME:
                running.reset_notifications()
            else:
                logger.debug("Ignoring unknown live frame %r", frame[:64])
    except WebSocketDisconnect:
        pass
    finally:
        running.distributor.discard(websocket)
