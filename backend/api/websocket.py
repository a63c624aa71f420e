"""WebSocket handler for real-time discovery events."""

import asyncio
import logging
from typing import Any

from fastapi import WebSocket
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class Event(BaseModel):
    """Frame pushed to every WebSocket client."""
    event: str
    data: dict[str, Any]


class ConnectionManager:
    """Tracks WebSocket clients and fans discovery events out to them."""

    def __init__(self) -> None:
        self._connections: list[WebSocket] = []
        self._lock = asyncio.Lock()

    @property
    def client_count(self) -> int:
        return len(self._connections)

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._connections.append(websocket)
        logger.info(f"Event listener attached ({len(self._connections)} open)")

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            if websocket in self._connections:
                self._connections.remove(websocket)
        logger.info(f"Event listener detached ({len(self._connections)} open)")

    async def broadcast(self, event: str, data: dict[str, Any]) -> None:
        """Send an event to all clients, dropping the ones that fail."""
        frame = Event(event=event, data=data).model_dump_json()
        async with self._lock:
            alive: list[WebSocket] = []
            for ws in self._connections:
                try:
                    await ws.send_text(frame)
                except Exception as e:
                    logger.debug(f"Dropping WebSocket client: {e}")
                else:
                    alive.append(ws)
            self._connections = alive
