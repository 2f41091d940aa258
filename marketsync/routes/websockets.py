# marketsync/routes/websockets.py
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from marketsync.services.websockets.relay import relay
import logging

logger = logging.getLogger(__name__)

router = APIRouter()

@router.websocket("/ws/shared-store")
async def shared_store_endpoint(websocket: WebSocket):
    await relay.connect(websocket)
    try:
        while True:
            data = await websocket.receive_text()
            await relay.handle_frame(data, websocket)
    except WebSocketDisconnect:
        relay.disconnect(websocket)
        logger.info("Shared store client disconnected")
