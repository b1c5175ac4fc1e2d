from fastapi import APIRouter, WebSocket, WebSocketDisconnect
import signaling_events as events
from relay import SignalingRelay
from logging_config import get_logger

logger = get_logger(__name__)

signaling_router = APIRouter(tags=["signaling"])


@signaling_router.websocket("/ws")
async def signaling_websocket(websocket: WebSocket):
    """One signaling connection. Every exit path runs the relay's leave/disconnect cleanup."""
    relay: SignalingRelay = websocket.app.state.relay
    await websocket.accept()
    connection = relay.connect(websocket)
    logger.info(f"WebSocket connection accepted: {connection.connection_id}")

    try:
        await connection.send(events.CONNECTED, {"memberId": connection.connection_id})
        message_count = 0
        while True:
            data = await websocket.receive_text()
            message_count += 1
            logger.debug(f"Received message #{message_count} from connection {connection.connection_id}")
            await connection.handle_text(data)
    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected normally for connection {connection.connection_id}")
    except Exception as e:
        logger.error(f"WebSocket error for connection {connection.connection_id}: {e}", exc_info=True)
    finally:
        await relay.disconnect(connection)
