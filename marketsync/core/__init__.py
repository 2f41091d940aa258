"""
Core module exports.
"""
from .enums import (
    MessageType,
    TabRole,
    ProductStatus,
    MutationStatus
)

from .exceptions import (
    BaseServiceError,
    SyncError,
    ChannelError,
    MessageParseError,
    SharedStoreError,
    MarketplaceServiceError,
    MarketplaceAPIError,
    MutationError,
    PurchaseFailedError,
    ReserveFailedError,
    AddToCartFailedError
)
