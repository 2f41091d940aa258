"""
Dispatches messages received from other tabs onto this tab's query cache.

    PRODUCT_UPDATE    -> invalidate the product list and product type caches
    CACHE_INVALIDATE  -> invalidate exactly the key paths in the payload
    PURCHASE_UPDATE   -> patch quantity/updated_at of the product wherever it is cached
    SYNC_REQUEST      -> leader answers with a CACHE_INVALIDATE, followers ignore it
"""

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from marketsync.core.enums import MessageType
from marketsync.core.query_keys import PRODUCT_TYPES, PRODUCTS, as_query_key
from marketsync.integrations.events import (
    BroadcastMessage,
    CacheInvalidateMessage,
    ProductUpdateMessage,
    PurchaseUpdateMessage,
    SyncRequestMessage,
)
from marketsync.services.product_cache import patch_product, with_quantity
from marketsync.services.query_cache import QueryCache

logger = logging.getLogger(__name__)


class MessageRouter:
    def __init__(
        self,
        cache: QueryCache,
        tab_id: str,
        is_leader: Callable[[], bool],
        answer_sync_request: Callable[[SyncRequestMessage], Awaitable[None]],
    ):
        self.cache = cache
        self.tab_id = tab_id
        self.is_leader = is_leader
        self.answer_sync_request = answer_sync_request
        self.last_sync: Optional[datetime] = None
        self._handlers: Dict[MessageType, Callable[[Any], Awaitable[None]]] = {
            MessageType.PRODUCT_UPDATE: self._on_product_update,
            MessageType.CACHE_INVALIDATE: self._on_cache_invalidate,
            MessageType.PURCHASE_UPDATE: self._on_purchase_update,
            MessageType.SYNC_REQUEST: self._on_sync_request,
        }

    async def route(self, message: BroadcastMessage) -> bool:
        """Apply a message to the cache; returns False for our own messages"""
        if message.origin_id == self.tab_id:
            return False

        self.last_sync = datetime.now(timezone.utc)
        logger.debug(f"[CrossTab] {message.type} from {message.origin_id}")

        handler = self._handlers.get(message.message_type)
        if handler is None:
            logger.warning(f"[CrossTab] Unhandled message type: {message.type}")
            return True
        try:
            await handler(message)
        except Exception as e:
            logger.error(f"[CrossTab] Failed to handle {message.type}: {e}")
        return True

    async def _on_product_update(self, message: ProductUpdateMessage):
        self.cache.invalidate_queries(PRODUCTS)
        self.cache.invalidate_queries(PRODUCT_TYPES)

    async def _on_cache_invalidate(self, message: CacheInvalidateMessage):
        for path in message.payload.key_paths:
            self.cache.invalidate_queries(as_query_key(path))

    async def _on_purchase_update(self, message: PurchaseUpdateMessage):
        new_quantity = message.payload.new_quantity
        patch_product(
            self.cache,
            message.payload.product_id,
            lambda product: with_quantity(product, new_quantity),
        )

    async def _on_sync_request(self, message: SyncRequestMessage):
        if self.is_leader():
            await self.answer_sync_request(message)
