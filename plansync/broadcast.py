"""
Change notifications pushed to connected WebSocket clients.

Delivery is best effort: no acknowledgement, no retry and no backlog. A client
that missed events re-fetches the project snapshot.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel
from starlette.websockets import WebSocket, WebSocketState

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    PLAN_UPDATE = "plan_update"
    SETTINGS_UPDATE = "settings_update"
    POINT_UPDATE = "point_update"
    POINT_DELETE = "point_delete"
    PROJECT_IMPORT = "project_import"


class ChangeEvent(BaseModel):
    type: EventType
    payload: Optional[Any] = None

    def serialize(self) -> str:
        exclude = {"payload"} if self.payload is None else None
        return self.model_dump_json(exclude=exclude)


class ChangeBroadcaster:
    """Tracks open WebSocket connections and pushes events to all of them."""

    def __init__(self):
        self.active_connections: List[WebSocket] = []

    @property
    def client_count(self) -> int:
        return len(self.active_connections)

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self.active_connections.append(websocket)
        logger.info("Client connected (%d open)", self.client_count)

    def disconnect(self, websocket: WebSocket) -> None:
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
            logger.info("Client disconnected (%d open)", self.client_count)

    async def broadcast(self, event: ChangeEvent) -> int:
        """
        Send one serialized message to every open connection.

        Returns the number of clients the message was handed to.
        """
        message = event.serialize()
        delivered = 0
        for websocket in list(self.active_connections):
            if (
                websocket.client_state != WebSocketState.CONNECTED
                or websocket.application_state != WebSocketState.CONNECTED
            ):
                continue
            try:
                await websocket.send_text(message)
            except Exception:
                logger.warning(
                    "Dropping client after failed %s send", event.type.value,
                    exc_info=True,
                )
                self.disconnect(websocket)
                continue
            delivered += 1
        return delivered
