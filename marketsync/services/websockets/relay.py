# marketsync/services/websockets/relay.py
from typing import Dict, List, Optional
from fastapi import WebSocket
import json
import logging

logger = logging.getLogger(__name__)

class SharedStoreRelay:
    """
    Server side of the websocket shared store.

    Holds the key-value dict every connected tab shares and fans each change
    out to every connection except the one that made it.
    """

    def __init__(self):
        self.active_connections: List[WebSocket] = []
        self.values: Dict[str, str] = {}

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)
        logger.info(f"Relay client connected. Total connections: {len(self.active_connections)}")

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
        logger.info(f"Relay client disconnected. Total connections: {len(self.active_connections)}")

    async def send_personal_message(self, message: dict, websocket: WebSocket):
        await websocket.send_text(json.dumps(message))

    async def broadcast(self, message: dict, exclude: Optional[WebSocket] = None):
        """Broadcast message to all connected clients except `exclude`"""
        json_message = json.dumps(message)
        disconnected = []

        for connection in self.active_connections:
            if connection is exclude:
                continue
            try:
                await connection.send_text(json_message)
            except Exception as e:
                logger.error(f"Error sending to WebSocket: {e}")
                disconnected.append(connection)

        # Clean up disconnected clients
        for connection in disconnected:
            self.disconnect(connection)

    async def write(self, key: str, value: Optional[str], origin: Optional[WebSocket] = None):
        old_value = self.values.get(key)
        if old_value == value:
            return
        if value is None:
            self.values.pop(key, None)
        else:
            self.values[key] = value
        await self.broadcast(
            {"op": "change", "key": key, "oldValue": old_value, "newValue": value},
            exclude=origin,
        )

    async def handle_frame(self, raw: str, websocket: WebSocket):
        try:
            frame = json.loads(raw)
        except ValueError as e:
            logger.warning(f"Ignoring malformed relay frame: {e}")
            return
        if not isinstance(frame, dict) or not isinstance(frame.get("key"), str):
            logger.warning(f"Ignoring relay frame without key: {raw[:200]}")
            return

        op = frame.get("op")
        key = frame["key"]
        if op == "get":
            await self.send_personal_message(
                {"op": "value", "requestId": frame.get("requestId"), "key": key, "value": self.values.get(key)},
                websocket,
            )
        elif op == "set":
            value = frame.get("value")
            await self.write(key, value if isinstance(value, str) else json.dumps(value), origin=websocket)
        elif op == "delete":
            await self.write(key, None, origin=websocket)
        else:
            logger.warning(f"Unknown relay op: {op}")

    def stats(self) -> dict:
        return {"connections": len(self.active_connections), "keys": len(self.values)}

# Global relay instance
relay = SharedStoreRelay()
