from fastapi import WebSocket
from typing import Dict, List, Optional
import logging

logger = logging.getLogger(__name__)


class BroadcastGateway:
    """Fan-out to every live connection and point-to-point delivery."""

    def __init__(self):
        self.connections: Dict[str, WebSocket] = {}  # connection_id -> ws

    def add(self, connection_id: str, websocket: WebSocket):
        self.connections[connection_id] = websocket

    def remove(self, connection_id: str, websocket: Optional[WebSocket] = None) -> bool:
        """Forget ``connection_id``. With ``websocket``, leaves a newer socket on that id alone."""
        current = self.connections.get(connection_id)
        if websocket is not None and current is not None and current is not websocket:
            return False
        self.connections.pop(connection_id, None)
        return True

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self.connections

    async def broadcast_all(self, message: dict):
        disconnected: List[str] = []
        for connection_id, ws in list(self.connections.items()):
            try:
                await ws.send_json(message)
            except Exception:
                disconnected.append(connection_id)
        # The receive loop of a dead socket does the full cleanup
        for connection_id in disconnected:
            logger.info("Dropping unreachable connection %s", connection_id)
            self.remove(connection_id)

    async def send(self, connection_id: str, message: dict) -> bool:
        ws = self.connections.get(connection_id)
        if not ws:
            return False
        try:
            await ws.send_json(message)
            return True
        except Exception:
            logger.info("Dropping unreachable connection %s", connection_id)
            self.remove(connection_id)
            return False
