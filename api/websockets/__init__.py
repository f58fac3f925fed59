"""WebSocket endpoint pushing notifications in real time."""

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status
from datetime import datetime, timezone
from typing import Optional
import logging

from .manager import ConnectionManager

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/ws",
    tags=["WebSocket"]
)


@router.websocket("/notifications")
async def notifications_endpoint(websocket: WebSocket, user_id: Optional[str] = None):
    """Stream the caller's notifications as they are emitted.

    Browsers cannot set headers on a WebSocket handshake, so the user id
    may also come from the user_id query parameter.
    """
    user = websocket.headers.get("x-user-id") or user_id
    if not user:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    manager: ConnectionManager = websocket.app.state.connections
    await manager.connect(websocket, user)
    try:
        while True:
            data = await websocket.receive_json()
            if isinstance(data, dict) and data.get("type") == "ping":
                await websocket.send_json({
                    "type": "pong",
                    "timestamp": datetime.now(timezone.utc).isoformat()
                })
    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(websocket, user)


__all__ = ['router', 'ConnectionManager']
