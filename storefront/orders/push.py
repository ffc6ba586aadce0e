"""
Order Service: WebSocket push

Connected clients of one owner share a channel keyed by owner id. Sends
are best effort: a dead socket is dropped, never raised to the caller.
"""

import logging
from collections import defaultdict

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class OrderPushHub:
    def __init__(self) -> None:
        self._connections: dict[int, set[WebSocket]] = defaultdict(set)

    def connect(self, owner_id: int, websocket: WebSocket) -> None:
        self._connections[owner_id].add(websocket)

    def disconnect(self, owner_id: int, websocket: WebSocket) -> None:
        sockets = self._connections.get(owner_id)
        if sockets is None:
            return
        sockets.discard(websocket)
        if not sockets:
            del self._connections[owner_id]

    def connected(self, owner_id: int) -> int:
        return len(self._connections.get(owner_id, ()))

    async def notify(self, owner_id: int, message: dict) -> int:
        """Send to every socket of the owner. Returns how many received it."""
        delivered = 0
        for websocket in list(self._connections.get(owner_id, ())):
            try:
                await websocket.send_json(message)
                delivered += 1
            except Exception as e:
                logger.warning("Dropping push connection of owner %s: %s", owner_id, e)
                self.disconnect(owner_id, websocket)
        return delivered
