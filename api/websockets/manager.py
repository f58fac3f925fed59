"""Per-user WebSocket connection registry."""
import logging
from typing import Dict, Set

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ConnectionManager:
    def __init__(self):
        # Map of user_id -> open WebSocket connections
        self.active_connections: Dict[str, Set[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, user_id: str):
        """Accept a WebSocket client and confirm the subscription."""
        await websocket.accept()
        self.active_connections.setdefault(user_id, set()).add(websocket)
        await websocket.send_json({
            "type": "connection_status",
            "data": {
                "status": "connected",
                "user_id": user_id
            }
        })

    def disconnect(self, websocket: WebSocket, user_id: str):
        """Forget a WebSocket client."""
        connections = self.active_connections.get(user_id)
        if connections is None:
            return
        connections.discard(websocket)
        if not connections:
            del self.active_connections[user_id]

    async def broadcast_to_user(self, user_id: str, message: dict):
        """Send a message to every connection of one user."""
        disconnected = set()
        for websocket in list(self.active_connections.get(user_id, ())):
            try:
                await websocket.send_json(message)
            except Exception as e:
                logger.warning(f"Dropping WebSocket for {user_id}: {e}")
                disconnected.add(websocket)

        for websocket in disconnected:
            self.disconnect(websocket, user_id)

    def connection_count(self, user_id: str) -> int:
        return len(self.active_connections.get(user_id, ()))
