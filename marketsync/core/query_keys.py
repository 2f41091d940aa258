"""
Query cache keys shared by the sync layer and the mutations.

Keys are tuples; invalidation and cancellation match by prefix, so
PRODUCTS covers ("products", "infinite") as well.
"""

from typing import Tuple

QueryKey = Tuple[str, ...]

PRODUCTS: QueryKey = ("products",)
PRODUCTS_INFINITE: QueryKey = ("products", "infinite")
PRODUCT_TYPES: QueryKey = ("productTypes",)
ORDERS: QueryKey = ("orders",)
USER_ORDERS: QueryKey = ("user", "orders")
CART: QueryKey = ("cart",)
USER_CART: QueryKey = ("user", "cart")


def product_key(product_id: str) -> QueryKey:
    return ("product", str(product_id))


def as_query_key(path) -> QueryKey:
    """Normalise a key path received over the wire (list of strings) into a tuple"""
    if isinstance(path, str):
        return (path,)
    return tuple(str(part) for part in path)
