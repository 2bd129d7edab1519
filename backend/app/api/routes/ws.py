import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from app.api.deps import DbSessionDep, load_user_from_token
from app.models.models import User
from app.realtime.manager import manager

router = APIRouter(tags=["ws"])
logger = logging.getLogger("giftify.ws")

WS_PING_INTERVAL = 30   # seconds between server-initiated pings
WS_PING_TIMEOUT = 60    # seconds to wait for a ping to go out before dropping the socket


def _socket_token(websocket: WebSocket) -> str | None:
    auth_header = websocket.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header.removeprefix("Bearer ").strip() or None
    if websocket.query_params.get("token"):
        return websocket.query_params["token"]
    return websocket.cookies.get("access_token")


@router.websocket("/ws/notifications")
async def notifications_ws(websocket: WebSocket, db: DbSessionDep) -> None:
    await websocket.accept()

    token = _socket_token(websocket)
    viewer: User | None = await load_user_from_token(db, token) if token else None
    if viewer is None:
        logger.warning("WS auth required path=/ws/notifications")
        await websocket.close(code=1008)
        return

    user_id = viewer.id
    # The socket outlives any request; do not hold a pooled connection open
    await db.close()
    await manager.connect(user_id, websocket)

    try:
        while True:
            try:
                await asyncio.wait_for(websocket.receive_text(), timeout=WS_PING_INTERVAL)
            except asyncio.TimeoutError:
                try:
                    await asyncio.wait_for(
                        websocket.send_text('{"type":"ping"}'),
                        timeout=WS_PING_TIMEOUT - WS_PING_INTERVAL,
                    )
                except Exception:
                    logger.info("WS idle timeout, closing user_id=%s", user_id)
                    break
    except WebSocketDisconnect:
        logger.info("WS disconnected user_id=%s", user_id)
    finally:
        manager.disconnect(user_id, websocket)
