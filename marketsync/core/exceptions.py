from typing import Optional


class BaseServiceError(Exception):
    """Base exception for all service-related errors."""
    pass

class SyncError(BaseServiceError):
    """Base exception for cross-tab coordination errors."""
    pass

class ChannelError(SyncError):
    """Raised when a broadcast message cannot be published."""
    pass

class MessageParseError(SyncError):
    """Raised when an incoming broadcast message is malformed."""
    pass

class SharedStoreError(SyncError):
    """Raised when the shared key-value store is unreachable or misbehaves."""
    pass

class MarketplaceServiceError(BaseServiceError):
    """Base exception for marketplace API errors."""
    pass

class MarketplaceAPIError(MarketplaceServiceError):
    """Raised when a marketplace API call fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code

class MutationError(MarketplaceServiceError):
    """Raised when an optimistic mutation fails and has been rolled back."""

    def __init__(self, message: str, product_id: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.product_id = product_id
        self.status_code = status_code

class PurchaseFailedError(MutationError):
    """Raised when a purchase is rejected or the request fails."""
    pass

class ReserveFailedError(MutationError):
    """Raised when a reservation is rejected or the request fails."""
    pass

class AddToCartFailedError(MutationError):
    """Raised when adding to the cart fails."""
    pass
