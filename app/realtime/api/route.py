from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status

from app.chat.errors import AuthenticationError
from app.core.logger import get_logger
from app.realtime.connection import ClientConnection
from app.realtime.gateway import RealtimeGateway

realtime_router = APIRouter(tags=["Realtime"])
logger = get_logger("RealtimeRouter")

# Application-defined close code (4000-4999) for a refused handshake
WS_CLOSE_AUTH_FAILED = 4401


def _handshake_token(websocket: WebSocket, token: Optional[str]) -> Optional[str]:
    if token:
        return token
    authorization = websocket.headers.get("authorization", "")
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer" and credentials:
        return credentials.strip()
    return None


@realtime_router.websocket("/ws")
async def chat_socket(websocket: WebSocket, token: Optional[str] = Query(default=None)):
    """One long-lived connection per client carrying all chat events."""
    gateway: Optional[RealtimeGateway] = getattr(websocket.app.state, "gateway", None)
    if gateway is None:
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        return

    try:
        identity = await gateway.authenticate(_handshake_token(websocket, token))
    except AuthenticationError as e:
        logger.warning(f"Socket auth error: {e.message}")
        await websocket.close(code=WS_CLOSE_AUTH_FAILED, reason=e.message)
        return

    await websocket.accept()
    connection = ClientConnection(identity, websocket.send_json)
    await gateway.connect(connection)

    reason = ""
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                reason = f"(code={message.get('code')})"
                break
            # Binary frames carry the same JSON envelope as text frames
            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes") or b""
            await gateway.dispatch(connection, raw)
    except WebSocketDisconnect as e:
        reason = f"(code={e.code})"
    finally:
        await gateway.disconnect(connection, reason)
