from typing import Any, List

from fastapi import WebSocket
import logging

logger = logging.getLogger("socket_manager")


class ConnectionManager:
    """Registry of dashboard sockets; broadcasts ``{type, data}`` envelopes."""

    def __init__(self):
        self.active_connections: List[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        if websocket not in self.active_connections:
            await websocket.accept()
            self.active_connections.append(websocket)
            logger.info(f"WebSocket connected. Total connections: {len(self.active_connections)}")

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
            logger.info(f"WebSocket disconnected. Total connections: {len(self.active_connections)}")

    async def broadcast(self, event_type: str, data: Any = None) -> int:
        """Send to every open socket; returns how many received it."""
        message = {"type": event_type, "data": data}
        delivered = 0
        logger.debug(f"Broadcasting {event_type} to {len(self.active_connections)} clients")
        for connection in list(self.active_connections):
            try:
                await connection.send_json(message)
                delivered += 1
            except Exception as e:
                logger.warning(f"Failed to send {event_type}: {e}")
                self.disconnect(connection)
        return delivered

    async def send_personal(self, websocket: WebSocket, event_type: str, data: Any = None):
        await websocket.send_json({"type": event_type, "data": data})


manager = ConnectionManager()


def get_manager() -> ConnectionManager:
    return manager
