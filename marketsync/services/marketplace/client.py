import json
import logging
import uuid
from typing import Any, Dict, Optional

import httpx

from marketsync.core.config import get_settings
from marketsync.core.exceptions import MarketplaceAPIError

logger = logging.getLogger(__name__)


def error_message_from(response: httpx.Response, fallback: str) -> str:
    """Human-readable message from a failed response: `message`, then `error`, then the fallback"""
    try:
        body = response.json()
    except ValueError:
        return fallback
    if isinstance(body, dict):
        return body.get("message") or body.get("error") or fallback
    return fallback


class MarketplaceClient:
    """
    Purpose: Asynchronous client (httpx) for the buyer mutation endpoints of the marketplace API.

    Functionality:
        - purchase: POST {productId, quantity, buyerId} -> created order
        - reserve: POST {productId, quantity, buyerId, duration?} -> reservation
        - add_to_cart: POST {productId, quantity, buyerId} -> cart
        - Every non-2xx status or transport error becomes a MarketplaceAPIError carrying the
          server's message (or a generic fallback when the body is unparsable).

    Requests carry an optional timeout and, when enabled, an Idempotency-Key header so a
    purchase abandoned on timeout can be safely retried by the server.
    """

    def __init__(
        self,
        base_url: str,
        auth_token: str = "",
        timeout: Optional[float] = 30.0,
        send_idempotency_key: bool = True,
        purchase_path: str = "/api/buyer/purchase",
        reserve_path: str = "/api/buyer/reserve",
        cart_add_path: str = "/api/buyer/cart/add",
    ):
        self.base_url = base_url.rstrip("/")
        self.auth_token = auth_token
        self.timeout = timeout or None
        self.send_idempotency_key = send_idempotency_key
        self.purchase_path = purchase_path
        self.reserve_path = reserve_path
        self.cart_add_path = cart_add_path

    @classmethod
    def from_settings(cls, settings=None) -> "MarketplaceClient":
        settings = settings or get_settings()
        return cls(
            base_url=settings.MARKETPLACE_API_URL,
            auth_token=settings.MARKETPLACE_AUTH_TOKEN,
            timeout=settings.PURCHASE_TIMEOUT_SECONDS,
            send_idempotency_key=settings.SEND_IDEMPOTENCY_KEY,
            purchase_path=settings.PURCHASE_PATH,
            reserve_path=settings.RESERVE_PATH,
            cart_add_path=settings.CART_ADD_PATH,
        )

    def _get_headers(self, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if idempotency_key and self.send_idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def _post(
        self,
        endpoint: str,
        data: Dict[str, Any],
        fallback_message: str,
        idempotency_key: Optional[str] = None,
    ) -> Dict:
        """
        POST to the marketplace API

        Raises:
            MarketplaceAPIError: If the request fails or the response is not 2xx
        """
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        cookies = {"token": self.auth_token} if self.auth_token else None

        logger.debug(f"Making POST request to {url}")
        logger.debug(f"Data: {json.dumps(data)[:500]}")

        try:
            async with httpx.AsyncClient(timeout=self.timeout, cookies=cookies) as client:
                response = await client.post(
                    url,
                    headers=self._get_headers(idempotency_key),
                    json=data,
                )
        except httpx.TimeoutException as e:
            logger.error(f"Timeout error: {str(e)}")
            raise MarketplaceAPIError(f"{fallback_message}: request timed out")
        except httpx.RequestError as e:
            logger.error(f"Network error: {str(e)}")
            raise MarketplaceAPIError(fallback_message)

        if response.status_code < 200 or response.status_code >= 300:
            message = error_message_from(response, fallback_message)
            logger.error(f"Marketplace API error {response.status_code}: {message}")
            raise MarketplaceAPIError(message, status_code=response.status_code)

        if response.status_code == 204:
            return {}

        try:
            return response.json()
        except ValueError:
            return {}

    async def purchase(self, product_id: str, quantity: int, buyer_id: str, idempotency_key: Optional[str] = None) -> Dict:
        return await self._post(
            self.purchase_path,
            {"productId": product_id, "quantity": quantity, "buyerId": buyer_id},
            "Purchase failed",
            idempotency_key=idempotency_key or uuid.uuid4().hex,
        )

    async def reserve(
        self,
        product_id: str,
        quantity: int,
        buyer_id: str,
        duration: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict:
        data = {"productId": product_id, "quantity": quantity, "buyerId": buyer_id}
        if duration is not None:
            data["duration"] = duration
        return await self._post(
            self.reserve_path,
            data,
            "Reserve failed",
            idempotency_key=idempotency_key or uuid.uuid4().hex,
        )

    async def add_to_cart(self, product_id: str, quantity: int, buyer_id: str) -> Dict:
        return await self._post(
            self.cart_add_path,
            {"productId": product_id, "quantity": quantity, "buyerId": buyer_id},
            "Add to cart failed",
        )
