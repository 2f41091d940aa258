"""
Websocket handle onto the relay server (`/ws/shared-store`).

The relay owns the authoritative dict. This handle forwards get/set/delete as
JSON frames and turns the server's `change` frames into StoreChange
notifications. The server never echoes a client's own writes back to it.
"""

import asyncio
import json
import logging
import uuid
from typing import Callable, Dict, List, Optional

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from marketsync.core.exceptions import SharedStoreError
from marketsync.integrations.base import SharedStorePort, StoreChange, StoreListener

logger = logging.getLogger(__name__)


class RelaySharedStore(SharedStorePort):
    def __init__(self, url: str, request_timeout: float = 5.0):
        self.url = url
        self.request_timeout = request_timeout
        self._connection = None
        self._reader_task: Optional[asyncio.Task] = None
        self._pending: Dict[str, asyncio.Future] = {}
        self._listeners: List[StoreListener] = []

    @property
    def connected(self) -> bool:
        return self._connection is not None

    async def connect(self):
        try:
            self._connection = await websockets.connect(self.url)
        except (OSError, InvalidURI, InvalidHandshake) as e:
            raise SharedStoreError(f"Could not connect to relay at {self.url}: {e}")
        self._reader_task = asyncio.create_task(self._read_loop())
        logger.info(f"Connected to shared store relay at {self.url}")

    async def close(self):
        if self._reader_task:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
        self._fail_pending("Relay store closed")

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def _send(self, frame: dict):
        if self._connection is None:
            raise SharedStoreError("Relay store is not connected")
        try:
            await self._connection.send(json.dumps(frame))
        except ConnectionClosed as e:
            raise SharedStoreError(f"Relay connection closed: {e}")

    async def get(self, key: str) -> Optional[str]:
        request_id = uuid.uuid4().hex
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._send({"op": "get", "key": key, "requestId": request_id})
            return await asyncio.wait_for(future, timeout=self.request_timeout)
        except asyncio.TimeoutError:
            raise SharedStoreError(f"Timed out reading '{key}' from relay")
        finally:
            self._pending.pop(request_id, None)

    async def set(self, key: str, value: str) -> None:
        await self._send({"op": "set", "key": key, "value": value})

    async def delete(self, key: str) -> None:
        await self._send({"op": "delete", "key": key})

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def _read_loop(self):
        try:
            async for raw in self._connection:
                await self._dispatch(raw)
        except ConnectionClosed as e:
            logger.warning(f"Relay connection closed: {e}")
        finally:
            self._fail_pending("Relay connection lost")

    async def _dispatch(self, raw):
        try:
            frame = json.loads(raw)
        except ValueError as e:
            logger.error(f"Discarding malformed relay frame: {e}")
            return

        op = frame.get("op")
        if op == "value":
            future = self._pending.get(frame.get("requestId"))
            if future is not None and not future.done():
                future.set_result(frame.get("value"))
        elif op == "change":
            change = StoreChange(
                key=frame.get("key"),
                old_value=frame.get("oldValue"),
                new_value=frame.get("newValue"),
            )
            for listener in list(self._listeners):
                try:
                    await listener(change)
                except Exception as e:
                    logger.error(f"Store listener failed for key '{change.key}': {e}")
        else:
            logger.warning(f"Unknown relay frame op: {op}")

    def _fail_pending(self, reason: str):
        for future in self._pending.values():
            if not future.done():
                future.set_exception(SharedStoreError(reason))
        self._pending.clear()
