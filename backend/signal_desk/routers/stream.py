import json

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState
import logging

from signal_desk.core.config import get_config
from signal_desk.core.websocket_manager import ConnectionManager, get_manager

logger = logging.getLogger(__name__)
router = APIRouter(tags=["WebSocket Streams"])


@router.websocket("/ws")
async def signal_stream(websocket: WebSocket, manager: ConnectionManager = Depends(get_manager)):
    if not get_config().ENABLE_WS:
        logger.info("WebSocket disabled, refusing connection")
        await websocket.close(code=1008)
        return

    await manager.connect(websocket)
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning(f"Invalid WS message: {raw[:200]}")
                continue
            if not isinstance(message, dict):
                logger.warning(f"Ignoring non-object WS message: {raw[:200]}")
                continue

            if message.get("type") == "ping":
                await manager.send_personal(websocket, "pong", message.get("data"))
            else:
                logger.debug(f"Ignoring client message of type {message.get('type')}")

    except WebSocketDisconnect:
        logger.info("WebSocket client disconnected")
    finally:
        manager.disconnect(websocket)
        if (
            websocket.client_state == WebSocketState.CONNECTED
            and websocket.application_state == WebSocketState.CONNECTED
        ):
            await websocket.close()
