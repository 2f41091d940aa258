"""
Shared enums and constants used across the application.
"""

from enum import Enum


class MessageType(str, Enum):
    """Broadcast message variants exchanged between tabs"""
    PRODUCT_UPDATE = "PRODUCT_UPDATE"
    CACHE_INVALIDATE = "CACHE_INVALIDATE"
    PURCHASE_UPDATE = "PURCHASE_UPDATE"
    SYNC_REQUEST = "SYNC_REQUEST"


class TabRole(str, Enum):
    FOLLOWER = "follower"
    LEADER = "leader"


class ProductStatus(str, Enum):
    """Product status values as served by the marketplace API"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    ACTIVE = "active"
    SOLD_OUT = "sold_out"
    INACTIVE = "inactive"


class MutationStatus(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"
