"""WebSocket fan-out of session snapshots to dashboards."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import WebSocket

from donecall.models import Session

logger = logging.getLogger(__name__)


def sessions_payload(sessions: list[Session], active_count: int) -> dict[str, Any]:
    """The snapshot shape shared by the REST API and the WebSocket push."""
    return {
        "type": "sessions",
        "sessions": [s.model_dump(mode="json") for s in sessions],
        "active_count": active_count,
    }


class ConnectionManager:
    """Tracks dashboard sockets and pushes every registry change to them."""

    def __init__(self):
        self.connections: list[WebSocket] = []
        self._lock = asyncio.Lock()
        # Strong references to in-flight pushes until they finish
        self._pushes: set[asyncio.Task] = set()

    @property
    def client_count(self) -> int:
        return len(self.connections)

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self.connections.append(websocket)
        logger.debug("Dashboard connected (%d total)", self.client_count)

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            if websocket in self.connections:
                self.connections.remove(websocket)

    async def broadcast(self, payload: dict[str, Any]) -> None:
        """Send ``payload`` to every dashboard, dropping the ones that fail."""
        if not self.connections:
            return
        message = json.dumps(
            {**payload, "server_time": datetime.now(timezone.utc).isoformat()},
            default=str,
        )
        async with self._lock:
            alive = []
            for ws in self.connections:
                try:
                    await ws.send_text(message)
                except Exception as e:
                    logger.debug("Dropping dashboard connection: %r", e)
                else:
                    alive.append(ws)
            self.connections = alive

    def observer(self, sessions: list[Session], active_count: int) -> None:
        """Registry observer: schedule a push of the new snapshot on the running loop."""
        if not self.connections:
            return
        task = asyncio.get_running_loop().create_task(
            self.broadcast(sessions_payload(sessions, active_count))
        )
        self._pushes.add(task)
        task.add_done_callback(self._pushes.discard)

    @property
    def pending_pushes(self) -> int:
        return len(self._pushes)
