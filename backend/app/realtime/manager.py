import logging
from collections import defaultdict
from typing import Any

from fastapi import WebSocket


logger = logging.getLogger("giftify.ws")


class NotificationConnectionManager:
    """Open notification sockets grouped by the user they belong to."""

    def __init__(self) -> None:
        self._connections: dict[str, list[WebSocket]] = defaultdict(list)

    async def connect(self, user_id: str, websocket: WebSocket) -> None:
        self._connections[user_id].append(websocket)
        logger.info("WS connect user_id=%s total=%s", user_id, len(self._connections[user_id]))

    def disconnect(self, user_id: str, websocket: WebSocket) -> None:
        if user_id not in self._connections:
            return
        self._connections[user_id] = [ws for ws in self._connections[user_id] if ws is not websocket]
        if not self._connections[user_id]:
            self._connections.pop(user_id, None)
        logger.info("WS disconnect user_id=%s", user_id)

    def is_connected(self, user_id: str) -> bool:
        return bool(self._connections.get(user_id))

    async def send_to_user(self, user_id: str, message: dict[str, Any]) -> int:
        sockets = list(self._connections.get(user_id, ()))
        if not sockets:
            return 0

        delivered = 0
        dead: list[WebSocket] = []
        for websocket in sockets:
            try:
                await websocket.send_json(message)
                delivered += 1
            except Exception:
                logger.exception("WS send failed user_id=%s", user_id)
                dead.append(websocket)

        for websocket in dead:
            self.disconnect(user_id, websocket)
        return delivered


manager = NotificationConnectionManager()
