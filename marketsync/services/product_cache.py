"""
Product shapes held in the query cache and the helpers that patch them.

A product can live in two places at once: its own ("product", id) entry and
inside any page of a paginated list under ("products", ...). Patches are
applied to both by matching product id.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict

from marketsync.core.enums import ProductStatus
from marketsync.core.query_keys import PRODUCTS, product_key
from marketsync.services.query_cache import QueryCache

ProductPatch = Callable[["CachedProduct"], "CachedProduct"]


class CachedProduct(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    name: Optional[str] = None
    price: Optional[float] = None
    quantity: int = 0
    status: str = ProductStatus.APPROVED.value
    seller_id: Optional[str] = None
    reserved_quantity: int = 0
    available_quantity: Optional[int] = None
    updated_at: Optional[datetime] = None


class ProductPage(BaseModel):
    products: List[CachedProduct] = []
    page: int = 1
    total: Optional[int] = None


class ProductListData(BaseModel):
    pages: List[ProductPage] = []


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def with_purchase(product: CachedProduct, requested_quantity: int) -> CachedProduct:
    """Optimistic purchase: quantity floors at 0 and a product at 0 is sold out"""
    new_quantity = max(0, product.quantity - requested_quantity)
    status = ProductStatus.SOLD_OUT.value if new_quantity == 0 else product.status
    return product.model_copy(update={
        "quantity": new_quantity,
        "status": status,
        "updated_at": utcnow(),
    })


def with_quantity(product: CachedProduct, new_quantity: int) -> CachedProduct:
    return product.model_copy(update={"quantity": new_quantity, "updated_at": utcnow()})


def with_reservation(product: CachedProduct, requested_quantity: int) -> CachedProduct:
    return product.model_copy(update={
        "reserved_quantity": product.reserved_quantity + requested_quantity,
        "available_quantity": max(0, product.quantity - requested_quantity),
        "updated_at": utcnow(),
    })


def _patch_pages(data: Any, product_id: str, patch: ProductPatch) -> Optional[ProductListData]:
    if not isinstance(data, ProductListData):
        return None
    pages = []
    for page in data.pages:
        products = [patch(p) if p.id == product_id else p for p in page.products]
        pages.append(page.model_copy(update={"products": products}))
    return data.model_copy(update={"pages": pages})


def patch_product(cache: QueryCache, product_id: str, patch: ProductPatch) -> Optional[CachedProduct]:
    """
    Apply a patch to the single-product entry and to every matching product in
    the paginated list entries. Returns the patched single-product value, if cached.
    """
    product_id = str(product_id)
    patched = None
    if cache.get_entry(product_key(product_id)) is not None:
        patched = cache.set_query_data(
            product_key(product_id),
            lambda old: patch(old) if isinstance(old, CachedProduct) else None,
        )

    for entry in cache.find_entries(PRODUCTS):
        cache.set_query_data(entry.key, lambda old: _patch_pages(old, product_id, patch))

    return patched if isinstance(patched, CachedProduct) else None


def find_product(cache: QueryCache, product_id: str) -> Optional[CachedProduct]:
    """Look a product up in its own entry first, then in the list pages"""
    product_id = str(product_id)
    cached = cache.get_query_data(product_key(product_id))
    if isinstance(cached, CachedProduct):
        return cached
    for entry in cache.find_entries(PRODUCTS):
        if isinstance(entry.data, ProductListData):
            for page in entry.data.pages:
                for product in page.products:
                    if product.id == product_id:
                        return product
    return None


def snapshot_listed(cache: QueryCache, product_id: str) -> Dict[tuple, List[CachedProduct]]:
    """Copies of the list-page versions of a product, per list key, for rollback"""
    product_id = str(product_id)
    snapshot = {}
    for entry in cache.find_entries(PRODUCTS):
        if isinstance(entry.data, ProductListData):
            snapshot[entry.key] = [
                product
                for page in entry.data.pages
                for product in page.products
                if product.id == product_id
            ]
    return snapshot


def _restore_pages(data: Any, product_id: str, originals: List[CachedProduct]) -> Optional[ProductListData]:
    if not isinstance(data, ProductListData):
        return None
    remaining = iter(originals)
    pages = []
    for page in data.pages:
        products = [next(remaining, p) if p.id == product_id else p for p in page.products]
        pages.append(page.model_copy(update={"products": products}))
    return data.model_copy(update={"pages": pages})


def restore_product(
    cache: QueryCache,
    product_id: str,
    single: Optional[CachedProduct],
    listed: Dict[tuple, List[CachedProduct]],
):
    """
    Put back the exact values captured before an optimistic patch. Entries
    removed from the cache in the meantime stay removed.
    """
    product_id = str(product_id)
    if single is not None and cache.get_entry(product_key(product_id)) is not None:
        cache.set_query_data(product_key(product_id), single)
    for key, originals in listed.items():
        if originals and cache.get_entry(key) is not None:
            cache.set_query_data(key, lambda old, originals=originals: _restore_pages(old, product_id, originals))
