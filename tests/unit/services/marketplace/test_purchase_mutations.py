# Optimistic mutation tests: two tabs share one in-memory store
import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock

from marketsync.core.enums import MutationStatus
from marketsync.core.exceptions import (
    AddToCartFailedError,
    MarketplaceAPIError,
    PurchaseFailedError,
    ReserveFailedError,
)
from marketsync.core.query_keys import CART, ORDERS, PRODUCTS, USER_CART, USER_ORDERS, product_key
from marketsync.services.marketplace.client import MarketplaceClient
from marketsync.services.marketplace.mutations import PurchaseMutations
from marketsync.services.product_cache import CachedProduct
from tests.mocks import MockData
from tests.mocks.mock_store import listed_product, seed_product

BUYER = MockData.get_buyer()


@pytest.fixture
async def tabs(make_tab, sample_product_data):
    tab_a = await make_tab()
    tab_b = await make_tab()
    for tab in (tab_a, tab_b):
        seed_product(tab.cache, sample_product_data)
        tab.cache.set_query_data(ORDERS, [])
        tab.cache.set_query_data(USER_ORDERS, [])
        tab.cache.set_query_data(CART, {"items": []})
        tab.cache.set_query_data(USER_CART, {"items": []})
    return tab_a, tab_b


@pytest.fixture
def client():
    client = MagicMock(spec=MarketplaceClient)
    client.purchase = AsyncMock(return_value={"id": "order-1", "status": "paid"})
    client.reserve = AsyncMock(return_value={"id": "res-1"})
    client.add_to_cart = AsyncMock(return_value={"items": [{"productId": "prod-1", "quantity": 1}]})
    return client


@pytest.fixture
def mutations(tabs, client):
    tab_a, _ = tabs
    return PurchaseMutations(tab_a.cache, tab_a, client)


def quantity_in(tab, product_id="prod-1"):
    return tab.cache.get_query_data(product_key(product_id)).quantity


"""
1. Purchase
"""

@pytest.mark.asyncio
async def test_optimistic_state_visible_while_request_in_flight(tabs, client, mutations):
    tab_a, tab_b = tabs
    seen = {}

    async def purchase(product_id, quantity, buyer_id, idempotency_key=None):
        seen["a_single"] = tab_a.cache.get_query_data(product_key("prod-1"))
        seen["a_listed"] = listed_product(tab_a.cache, "prod-1")
        seen["b_single"] = tab_b.cache.get_query_data(product_key("prod-1"))
        seen["b_listed"] = listed_product(tab_b.cache, "prod-1")
        seen["state"] = mutations.purchase_state.status
        return {"id": "order-1"}

    client.purchase.side_effect = purchase

    order = await mutations.purchase("prod-1", 2, BUYER["id"])

    assert order == {"id": "order-1"}
    assert seen["a_single"].quantity == 3
    assert seen["a_listed"].quantity == 3
    assert seen["b_single"].quantity == 3
    assert seen["b_listed"].quantity == 3
    assert seen["state"] == MutationStatus.PENDING
    assert mutations.purchase_state.status == MutationStatus.SUCCESS
    assert mutations.purchase_state.data == {"id": "order-1"}


@pytest.mark.asyncio
async def test_purchase_sends_request_with_idempotency_key(client, mutations):
    await mutations.purchase("prod-1", 1, BUYER["id"])

    args, kwargs = client.purchase.call_args
    assert args == ("prod-1", 1, "buyer-1")
    assert kwargs["idempotency_key"]


@pytest.mark.asyncio
async def test_buying_everything_marks_sold_out(tabs, mutations):
    tab_a, tab_b = tabs

    await mutations.purchase("prod-1", 5, BUYER["id"])

    single = tab_a.cache.get_query_data(product_key("prod-1"))
    assert single.quantity == 0
    assert single.status == "sold_out"
    assert listed_product(tab_a.cache, "prod-1").status == "sold_out"
    # Other tabs only receive the quantity
    assert quantity_in(tab_b) == 0
    assert tab_b.cache.get_query_data(product_key("prod-1")).status == "approved"


@pytest.mark.asyncio
async def test_quantity_never_goes_below_zero(tabs, mutations):
    tab_a, _ = tabs

    await mutations.purchase("prod-1", 9, BUYER["id"])

    assert quantity_in(tab_a) == 0
    assert listed_product(tab_a.cache, "prod-1").quantity == 0


@pytest.mark.asyncio
async def test_success_invalidates_product_lists_and_orders(tabs, mutations):
    tab_a, _ = tabs

    await mutations.purchase("prod-1", 1, BUYER["id"])

    for key in (product_key("prod-1"), PRODUCTS, ORDERS, USER_ORDERS):
        assert tab_a.cache.get_entry(key).is_stale, key
    assert not tab_a.cache.get_entry(CART).is_stale


@pytest.mark.asyncio
async def test_failure_restores_snapshot_in_every_tab(tabs, client, mutations, sample_product_data):
    tab_a, tab_b = tabs
    client.purchase.side_effect = MarketplaceAPIError("Insufficient stock", status_code=409)
    before = tab_a.cache.get_query_data(product_key("prod-1"))

    with pytest.raises(PurchaseFailedError) as exc_info:
        await mutations.purchase("prod-1", 5, BUYER["id"])

    assert exc_info.value.message == "Insufficient stock"
    assert exc_info.value.product_id == "prod-1"
    assert exc_info.value.status_code == 409

    restored = tab_a.cache.get_query_data(product_key("prod-1"))
    assert restored == before
    assert restored.status == "approved"
    assert listed_product(tab_a.cache, "prod-1").quantity == 5
    assert listed_product(tab_a.cache, "prod-1").status == "approved"
    assert listed_product(tab_a.cache, "prod-2").quantity == 3

    assert quantity_in(tab_b) == 5
    assert listed_product(tab_b.cache, "prod-1").quantity == 5

    assert mutations.purchase_state.status == MutationStatus.ERROR
    assert mutations.purchase_state.error == "Insufficient stock"
    # Lists are refreshed even after a failure
    assert tab_a.cache.get_entry(PRODUCTS).is_stale
    assert not tab_a.cache.get_entry(ORDERS).is_stale


@pytest.mark.asyncio
async def test_unexpected_error_still_rolls_back(tabs, client, mutations):
    tab_a, tab_b = tabs
    client.purchase.side_effect = RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await mutations.purchase("prod-1", 2, BUYER["id"])

    assert quantity_in(tab_a) == 5
    assert quantity_in(tab_b) == 5
    assert mutations.purchase_state.status == MutationStatus.ERROR


@pytest.mark.asyncio
async def test_cancelled_purchase_rolls_back_in_every_tab(tabs, client, mutations):
    tab_a, tab_b = tabs

    async def hanging_purchase(*args, **kwargs):
        await asyncio.Event().wait()

    client.purchase.side_effect = hanging_purchase

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(mutations.purchase("prod-1", 2, BUYER["id"]), 0.05)

    assert quantity_in(tab_a) == 5
    assert quantity_in(tab_b) == 5
    assert listed_product(tab_a.cache, "prod-1").quantity == 5
    assert mutations.purchase_state.status == MutationStatus.ERROR
    assert mutations.purchase_state.error == "Purchase cancelled"
    assert mutations._locks == {}


@pytest.mark.asyncio
async def test_rollback_does_not_recreate_removed_lists(tabs, client, mutations):
    tab_a, _ = tabs

    async def purchase_after_list_removed(*args, **kwargs):
        tab_a.cache.remove_queries(PRODUCTS)
        raise MarketplaceAPIError("Insufficient stock", status_code=409)

    client.purchase.side_effect = purchase_after_list_removed

    with pytest.raises(PurchaseFailedError):
        await mutations.purchase("prod-1", 2, BUYER["id"])

    assert tab_a.cache.get_entry(PRODUCTS) is None
    assert quantity_in(tab_a) == 5


@pytest.mark.asyncio
async def test_purchase_of_uncached_product_only_calls_api(tabs, client, mutations):
    tab_a, tab_b = tabs

    await mutations.purchase("prod-404", 1, BUYER["id"])

    client.purchase.assert_awaited_once()
    assert tab_a.cache.get_entry(product_key("prod-404")) is None
    assert quantity_in(tab_b) == 5


@pytest.mark.asyncio
async def test_in_flight_fetch_is_cancelled_before_patching(tabs, client, mutations, sample_product_data):
    tab_a, _ = tabs
    release = asyncio.Event()
    calls = []

    async def fetcher():
        calls.append(len(calls) + 1)
        if len(calls) == 1:
            await release.wait()
            return CachedProduct(**sample_product_data)
        return CachedProduct(**{**sample_product_data, "quantity": 3})

    fetch = asyncio.create_task(tab_a.cache.fetch_query(product_key("prod-1"), fetcher))
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    seen = {}

    async def purchase(*args, **kwargs):
        release.set()
        await asyncio.sleep(0)
        seen["quantity"] = quantity_in(tab_a)
        return {"id": "order-1"}

    client.purchase.side_effect = purchase

    await mutations.purchase("prod-1", 2, BUYER["id"])
    await fetch
    await tab_a.cache.wait_for_fetches()

    # The stale response never overwrote the optimistic value
    assert seen["quantity"] == 3
    # One refetch after the invalidation
    assert calls == [1, 2]
    assert quantity_in(tab_a) == 3
    assert not tab_a.cache.get_entry(product_key("prod-1")).is_stale


@pytest.mark.asyncio
async def test_purchases_of_one_product_run_one_at_a_time(tabs, client, mutations):
    tab_a, _ = tabs
    seen = []

    async def purchase(product_id, quantity, buyer_id, idempotency_key=None):
        seen.append(quantity_in(tab_a))
        await asyncio.sleep(0)
        return {"id": f"order-{len(seen)}"}

    client.purchase.side_effect = purchase

    await asyncio.gather(
        mutations.purchase("prod-1", 2, BUYER["id"]),
        mutations.purchase("prod-1", 2, BUYER["id"]),
    )

    assert seen == [3, 1]
    assert quantity_in(tab_a) == 1
    # Per-product locks are released once nobody waits on them
    assert mutations._locks == {}
    assert mutations._lock_users == {}


@pytest.mark.asyncio
async def test_second_purchase_rollback_keeps_first_purchase(tabs, client, mutations):
    tab_a, tab_b = tabs
    client.purchase.side_effect = [
        {"id": "order-1"},
        MarketplaceAPIError("Payment declined", status_code=402),
    ]

    await mutations.purchase("prod-1", 2, BUYER["id"])
    with pytest.raises(PurchaseFailedError):
        await mutations.purchase("prod-1", 1, BUYER["id"])

    assert quantity_in(tab_a) == 3
    assert quantity_in(tab_b) == 3


"""
2. Reserve
"""

@pytest.mark.asyncio
async def test_reserve_patches_only_this_tab(tabs, client, mutations):
    tab_a, tab_b = tabs
    seen = {}

    async def reserve(product_id, quantity, buyer_id, duration=None):
        seen["a"] = tab_a.cache.get_query_data(product_key("prod-1"))
        seen["b"] = tab_b.cache.get_query_data(product_key("prod-1"))
        return {"id": "res-1", "duration": duration}

    client.reserve.side_effect = reserve

    result = await mutations.reserve("prod-1", 2, BUYER["id"], duration=15)

    assert result == {"id": "res-1", "duration": 15}
    assert seen["a"].reserved_quantity == 2
    assert seen["a"].available_quantity == 3
    assert seen["b"].reserved_quantity == 0
    assert seen["b"].available_quantity is None
    assert tab_b.cache.get_query_data(product_key("prod-1")).reserved_quantity == 0
    assert tab_a.cache.get_entry(product_key("prod-1")).is_stale
    assert not tab_a.cache.get_entry(PRODUCTS).is_stale
    assert mutations.reserve_state.status == MutationStatus.SUCCESS


@pytest.mark.asyncio
async def test_reserve_failure_restores_previous_value(tabs, client, mutations):
    tab_a, _ = tabs
    before = tab_a.cache.get_query_data(product_key("prod-1"))
    client.reserve.side_effect = MarketplaceAPIError("Product unavailable", status_code=409)

    with pytest.raises(ReserveFailedError) as exc_info:
        await mutations.reserve("prod-1", 2, BUYER["id"])

    assert exc_info.value.message == "Product unavailable"
    assert tab_a.cache.get_query_data(product_key("prod-1")) == before
    assert mutations.reserve_state.status == MutationStatus.ERROR
    assert mutations.reserve_state.error == "Product unavailable"


@pytest.mark.asyncio
async def test_reserve_unexpected_error_still_rolls_back(tabs, client, mutations):
    tab_a, _ = tabs
    client.reserve.side_effect = RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await mutations.reserve("prod-1", 2, BUYER["id"])

    restored = tab_a.cache.get_query_data(product_key("prod-1"))
    assert restored.reserved_quantity == 0
    assert restored.available_quantity is None
    assert mutations.reserve_state.status == MutationStatus.ERROR
    assert mutations.reserve_state.error == "boom"


@pytest.mark.asyncio
async def test_cancelled_reserve_rolls_back(tabs, client, mutations):
    tab_a, _ = tabs

    async def hanging_reserve(*args, **kwargs):
        await asyncio.Event().wait()

    client.reserve.side_effect = hanging_reserve

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(mutations.reserve("prod-1", 2, BUYER["id"]), 0.05)

    assert tab_a.cache.get_query_data(product_key("prod-1")).reserved_quantity == 0
    assert mutations.reserve_state.status == MutationStatus.ERROR
    assert mutations._locks == {}


"""
3. Cart
"""

@pytest.mark.asyncio
async def test_add_to_cart_invalidates_cart_only(tabs, client, mutations):
    tab_a, _ = tabs

    cart = await mutations.add_to_cart("prod-1", 1, BUYER["id"])

    assert cart == {"items": [{"productId": "prod-1", "quantity": 1}]}
    assert tab_a.cache.get_entry(CART).is_stale
    assert tab_a.cache.get_entry(USER_CART).is_stale
    assert quantity_in(tab_a) == 5
    assert not tab_a.cache.get_entry(PRODUCTS).is_stale
    assert mutations.cart_state.status == MutationStatus.SUCCESS


@pytest.mark.asyncio
async def test_add_to_cart_failure(tabs, client, mutations):
    tab_a, _ = tabs
    client.add_to_cart.side_effect = MarketplaceAPIError("Cart is full", status_code=400)

    with pytest.raises(AddToCartFailedError) as exc_info:
        await mutations.add_to_cart("prod-1", 1, BUYER["id"])

    assert exc_info.value.message == "Cart is full"
    assert not tab_a.cache.get_entry(CART).is_stale
    assert mutations.cart_state.status == MutationStatus.ERROR
