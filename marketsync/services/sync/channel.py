"""
Broadcast channel over the shared store.

publish() writes the serialized message under a well-known key and clears it
straight away: the write is what the other handles observe as a change, and
clearing leaves the slot empty so the next message is again a distinct
transition. Delivery is fire-and-forget; every error is logged and dropped.
send() is the same write but raises ChannelError instead.
"""

import logging
from typing import Awaitable, Callable, Optional

from marketsync.core.exceptions import ChannelError, MessageParseError
from marketsync.integrations.base import SharedStorePort, StoreChange
from marketsync.integrations.events import BroadcastMessage, parse_message

logger = logging.getLogger(__name__)

MessageHandler = Callable[[BroadcastMessage], Awaitable[None]]


class BroadcastChannel:
    def __init__(self, store: SharedStorePort, key: str = "cross-tab-message"):
        self.store = store
        self.key = key
        self._unsubscribe: Optional[Callable[[], None]] = None

    async def send(self, message: BroadcastMessage):
        """
        Write one message to the channel

        Raises:
            ChannelError: If the message cannot be serialized or the store rejects the write
        """
        try:
            raw = message.to_wire()
            await self.store.set(self.key, raw)
            await self.store.delete(self.key)
        except Exception as e:
            raise ChannelError(f"Broadcast failed: {e}") from e

    async def publish(self, message: BroadcastMessage) -> bool:
        """Returns False when the message could not be written (never raises)"""
        try:
            await self.send(message)
        except ChannelError as e:
            logger.error(f"[CrossTab] {e}")
            return False
        return True

    def subscribe(self, handler: MessageHandler):
        """Deliver every message written by other tabs to `handler`"""

        async def on_change(change: StoreChange):
            if change.key != self.key or not change.new_value:
                return
            try:
                message = parse_message(change.new_value)
            except MessageParseError as e:
                logger.error(f"[CrossTab] Failed to parse message: {e}")
                return
            await handler(message)

        self.close()
        self._unsubscribe = self.store.subscribe(on_change)

    def close(self):
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
