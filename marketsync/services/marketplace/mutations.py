"""
Optimistic buyer mutations.

purchase():
    1. cancel in-flight fetches of the product and product lists
    2. snapshot the cached product (single entry and list pages)
    3. patch quantity = max(0, quantity - requested), sold_out at 0
    4. broadcast the patched quantity to other tabs
    5. POST the purchase
    6. failure: restore the snapshot, re-broadcast the original quantity, raise PurchaseFailedError
    7. success: invalidate product, product lists and order lists
    8. always: invalidate the product lists once more

reserve() has the same shape but patches reserved/available quantities and stays
local to this tab. add_to_cart() is not optimistic.

Mutations on the same product id run one at a time so a second click cannot
snapshot the first click's optimistic state.
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from marketsync.core.enums import MutationStatus
from marketsync.core.exceptions import (
    AddToCartFailedError,
    MarketplaceAPIError,
    PurchaseFailedError,
    ReserveFailedError,
)
from marketsync.core.query_keys import (
    CART,
    ORDERS,
    PRODUCTS,
    USER_CART,
    USER_ORDERS,
    product_key,
)
from marketsync.services.marketplace.client import MarketplaceClient
from marketsync.services.product_cache import (
    CachedProduct,
    find_product,
    patch_product,
    restore_product,
    snapshot_listed,
    with_purchase,
    with_reservation,
)
from marketsync.services.query_cache import QueryCache
from marketsync.services.sync.coordinator import CrossTabCoordinator

logger = logging.getLogger(__name__)


@dataclass
class MutationState:
    """Status of the most recent call of one mutation kind"""
    status: MutationStatus = MutationStatus.IDLE
    data: Any = None
    error: Optional[str] = None
    product_id: Optional[str] = None
    updated_at: Optional[datetime] = None

    def transition(self, status: MutationStatus, data: Any = None, error: Optional[str] = None):
        self.status = status
        self.data = data
        self.error = error
        self.updated_at = datetime.now(timezone.utc)


@dataclass
class ProductSnapshot:
    product_id: str
    single: Any = None
    listed: Dict[tuple, list] = field(default_factory=dict)
    quantity: Optional[int] = None


class PurchaseMutations:
    def __init__(
        self,
        cache: QueryCache,
        coordinator: CrossTabCoordinator,
        client: MarketplaceClient,
    ):
        self.cache = cache
        self.coordinator = coordinator
        self.client = client
        self.purchase_state = MutationState()
        self.reserve_state = MutationState()
        self.cart_state = MutationState()
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @asynccontextmanager
    async def _product_lock(self, product_id: str):
        """Hold the per-product lock; the lock is dropped once nobody holds or waits on it"""
        lock = self._locks.get(product_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[product_id] = lock
        self._lock_users[product_id] = self._lock_users.get(product_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[product_id] -= 1
            if self._lock_users[product_id] == 0:
                del self._lock_users[product_id]
                del self._locks[product_id]

    def _snapshot(self, product_id: str) -> ProductSnapshot:
        current = find_product(self.cache, product_id)
        return ProductSnapshot(
            product_id=product_id,
            single=self.cache.get_query_data(product_key(product_id)),
            listed=snapshot_listed(self.cache, product_id),
            quantity=current.quantity if current is not None else None,
        )

    # --- purchase ---

    async def apply_optimistic_purchase(self, product_id: str, quantity: int) -> Optional[int]:
        """Patch both caches and broadcast; returns the patched quantity if the product is cached"""
        patch_product(self.cache, product_id, lambda product: with_purchase(product, quantity))
        updated = find_product(self.cache, product_id)
        if updated is None:
            return None
        await self.coordinator.broadcast_purchase_update(product_id, updated.quantity)
        return updated.quantity

    async def revert_optimistic_purchase(self, snapshot: ProductSnapshot):
        restore_product(self.cache, snapshot.product_id, snapshot.single, snapshot.listed)
        if snapshot.quantity is not None:
            await self.coordinator.broadcast_purchase_update(snapshot.product_id, snapshot.quantity)

    async def purchase(self, product_id: str, quantity: int, buyer_id: str) -> Dict:
        """Buy now. Returns the created order; raises PurchaseFailedError after rolling back"""
        product_id = str(product_id)
        async with self._product_lock(product_id):
            self.purchase_state.product_id = product_id
            self.purchase_state.transition(MutationStatus.PENDING)

            await self.cache.cancel_queries(product_key(product_id))
            await self.cache.cancel_queries(PRODUCTS)

            snapshot = self._snapshot(product_id)
            await self.apply_optimistic_purchase(product_id, quantity)

            try:
                order = await self.client.purchase(
                    product_id, quantity, buyer_id, idempotency_key=uuid.uuid4().hex
                )
            except MarketplaceAPIError as e:
                logger.error(f"[Purchase] Failed: {e.message}")
                await self.revert_optimistic_purchase(snapshot)
                self.purchase_state.transition(MutationStatus.ERROR, error=e.message)
                raise PurchaseFailedError(e.message, product_id=product_id, status_code=e.status_code) from e
            except asyncio.CancelledError:
                logger.warning(f"[Purchase] Cancelled while in flight, reverting product {product_id}")
                await self.revert_optimistic_purchase(snapshot)
                self.purchase_state.transition(MutationStatus.ERROR, error="Purchase cancelled")
                raise
            except Exception as e:
                logger.error(f"[Purchase] Unexpected failure: {e}")
                await self.revert_optimistic_purchase(snapshot)
                self.purchase_state.transition(MutationStatus.ERROR, error=str(e))
                raise
            else:
                self.cache.invalidate_queries(product_key(product_id))
                self.cache.invalidate_queries(PRODUCTS)
                self.cache.invalidate_queries(ORDERS)
                self.cache.invalidate_queries(USER_ORDERS)
                self.purchase_state.transition(MutationStatus.SUCCESS, data=order)
                logger.info(f"[Purchase] Product {product_id} x{quantity} purchased by {buyer_id}")
                return order
            finally:
                self.cache.invalidate_queries(PRODUCTS)

    # --- reserve ---

    def _restore_reservation(self, product_id: str, previous: Any):
        if previous is not None and self.cache.get_entry(product_key(product_id)) is not None:
            self.cache.set_query_data(product_key(product_id), previous)

    async def reserve(self, product_id: str, quantity: int, buyer_id: str, duration: Optional[int] = None) -> Dict:
        """Temporary hold. Same optimistic shape as purchase, but never broadcast"""
        product_id = str(product_id)
        async with self._product_lock(product_id):
            self.reserve_state.product_id = product_id
            self.reserve_state.transition(MutationStatus.PENDING)

            await self.cache.cancel_queries(product_key(product_id))
            previous = self.cache.get_query_data(product_key(product_id))
            if isinstance(previous, CachedProduct):
                self.cache.set_query_data(product_key(product_id), with_reservation(previous, quantity))

            try:
                reservation = await self.client.reserve(product_id, quantity, buyer_id, duration=duration)
            except MarketplaceAPIError as e:
                logger.error(f"[Reserve] Failed: {e.message}")
                self._restore_reservation(product_id, previous)
                self.reserve_state.transition(MutationStatus.ERROR, error=e.message)
                raise ReserveFailedError(e.message, product_id=product_id, status_code=e.status_code) from e
            except asyncio.CancelledError:
                logger.warning(f"[Reserve] Cancelled while in flight, reverting product {product_id}")
                self._restore_reservation(product_id, previous)
                self.reserve_state.transition(MutationStatus.ERROR, error="Reserve cancelled")
                raise
            except Exception as e:
                logger.error(f"[Reserve] Unexpected failure: {e}")
                self._restore_reservation(product_id, previous)
                self.reserve_state.transition(MutationStatus.ERROR, error=str(e))
                raise

            self.cache.invalidate_queries(product_key(product_id))
            self.reserve_state.transition(MutationStatus.SUCCESS, data=reservation)
            return reservation

    # --- cart ---

    async def add_to_cart(self, product_id: str, quantity: int, buyer_id: str) -> Dict:
        product_id = str(product_id)
        self.cart_state.product_id = product_id
        self.cart_state.transition(MutationStatus.PENDING)
        try:
            cart = await self.client.add_to_cart(product_id, quantity, buyer_id)
        except MarketplaceAPIError as e:
            logger.error(f"[Cart] Add failed: {e.message}")
            self.cart_state.transition(MutationStatus.ERROR, error=e.message)
            raise AddToCartFailedError(e.message, product_id=product_id, status_code=e.status_code) from e

        self.cache.invalidate_queries(CART)
        self.cache.invalidate_queries(USER_CART)
        self.cart_state.transition(MutationStatus.SUCCESS, data=cart)
        return cart
