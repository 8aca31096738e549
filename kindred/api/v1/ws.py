"""
Push channel endpoint

One WebSocket per client. Frames are JSON {"event", "data"} both ways.
"""

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from kindred.core.config import settings
from kindred.core.errors import ErrorCode
from kindred.core.logging import get_logger
from kindred.core.security import verify_token
from kindred.realtime.connection import Connection

logger = get_logger(__name__)

router = APIRouter()

POLICY_VIOLATION = 1008
TRY_AGAIN_LATER = 1013


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, token: str = Query(default="")):
    user_id = verify_token(token)
    if not user_id:
        logger.warning("Invalid token in WebSocket connection")
        await websocket.close(code=POLICY_VIOLATION, reason="Invalid token")
        return

    hub = getattr(websocket.app.state, "hub", None)
    if hub is None or not settings.enable_websocket:
        await websocket.close(code=TRY_AGAIN_LATER, reason="Realtime is unavailable")
        return

    await websocket.accept()
    conn = Connection(websocket, user_id, queue_size=settings.ws_send_queue_size)
    conn.start()
    await hub.connect(conn)
    conn.send("connected", {"userId": user_id, "connectionId": conn.id})

    try:
        while True:
            try:
                frame = await websocket.receive_json()
            except ValueError:
                conn.send("error", {"code": ErrorCode.INVALID.value, "message": "Invalid JSON"})
                continue
            if not isinstance(frame, dict):
                conn.send("error", {"code": ErrorCode.INVALID.value, "message": "Frames must be objects"})
                continue
            await hub.dispatch(conn, frame.get("event"), frame.get("data"))
    except WebSocketDisconnect:
        logger.info(f"WebSocket closed for user {user_id}")
    except Exception as e:
        logger.error(f"WebSocket error for user {user_id}: {e}")
    finally:
        await hub.disconnect(conn)
        await conn.close()
