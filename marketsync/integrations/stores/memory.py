"""
In-process shared store.

MemoryStoreHub holds the single dict every tab shares; each tab talks to it
through its own MemorySharedStore handle obtained from hub.connect().
Change listeners run in registration order and are awaited before the write returns.
"""

import logging
from typing import Callable, Dict, List, Optional

from marketsync.integrations.base import SharedStorePort, StoreChange, StoreListener

logger = logging.getLogger(__name__)


class MemoryStoreHub:
    def __init__(self):
        self._values: Dict[str, str] = {}
        self._handles: List["MemorySharedStore"] = []

    def connect(self) -> "MemorySharedStore":
        handle = MemorySharedStore(self)
        self._handles.append(handle)
        return handle

    def detach(self, handle: "MemorySharedStore"):
        if handle in self._handles:
            self._handles.remove(handle)

    def snapshot(self) -> Dict[str, str]:
        return dict(self._values)

    async def write(self, origin: "MemorySharedStore", key: str, value: Optional[str]):
        old_value = self._values.get(key)
        if old_value == value:
            return

        if value is None:
            del self._values[key]
        else:
            self._values[key] = value

        change = StoreChange(key=key, old_value=old_value, new_value=value)
        for handle in list(self._handles):
            if handle is origin:
                continue
            await handle.notify(change)


class MemorySharedStore(SharedStorePort):
    def __init__(self, hub: MemoryStoreHub):
        self.hub = hub
        self._listeners: List[StoreListener] = []

    async def get(self, key: str) -> Optional[str]:
        return self.hub._values.get(key)

    async def set(self, key: str, value: str) -> None:
        await self.hub.write(self, key, value)

    async def delete(self, key: str) -> None:
        await self.hub.write(self, key, None)

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def notify(self, change: StoreChange):
        for listener in list(self._listeners):
            try:
                await listener(change)
            except Exception as e:
                logger.error(f"Store listener failed for key '{change.key}': {e}")

    def close(self):
        self._listeners.clear()
        self.hub.detach(self)
