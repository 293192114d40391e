"""ABA PayWay check-transaction client.

Implements the single gateway call the reconciler needs:
1. Build the request time and HMAC-SHA512 hash
2. POST the multipart form to ``/payments/check-transaction``
3. Return the decoded JSON object untouched

Interpreting the response is GatewayStatusAdapter's job.
"""

import base64
import hashlib
import hmac
import logging
from typing import Any, Optional

import httpx

from reconciler.core.config import settings
from reconciler.utils.dates import utcnow

logger = logging.getLogger(__name__)

CHECK_TRANSACTION_PATH = "/payments/check-transaction"


class PayWayClientError(Exception):
    """Base exception for gateway call failures."""

    pass


class PayWayConfigurationError(PayWayClientError):
    """Raised when merchant credentials are not configured."""

    pass


class PayWayResponseError(PayWayClientError):
    """Raised when the gateway answers with an unusable response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


def request_time() -> str:
    """Gateway request timestamp, ``YYYYMMDDHHmmss`` in UTC."""
    return utcnow().strftime("%Y%m%d%H%M%S")


def sign(api_key: str, *parts: str) -> str:
    """Base64 HMAC-SHA512 over the concatenated parts."""
    message = "".join(parts).encode()
    digest = hmac.new(api_key.encode(), message, hashlib.sha512).digest()
    return base64.b64encode(digest).decode()


class PayWayClient:
    """HTTP client for the PayWay payment gateway."""

    def __init__(
        self,
        merchant_id: Optional[str] = None,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """Initialize the client.

        Args:
            merchant_id: Merchant id (defaults to settings)
            api_key: HMAC key (defaults to settings)
            base_url: Gateway API root (defaults to settings)
            timeout: Request timeout in seconds (defaults to settings)
            transport: Optional httpx transport, used by tests
        """
        self.merchant_id = merchant_id if merchant_id is not None else settings.PAYWAY_MERCHANT_ID
        self.api_key = api_key if api_key is not None else settings.PAYWAY_API_KEY
        self.base_url = (base_url or settings.PAYWAY_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.PAYWAY_TIMEOUT_SECONDS
        self._transport = transport

    async def check_transaction(self, tran_id: str) -> dict[str, Any]:
        """Ask the gateway for the status of a transaction.

        Args:
            tran_id: Gateway transaction identifier

        Returns:
            Decoded JSON response object

        Raises:
            PayWayConfigurationError: If credentials are missing
            PayWayResponseError: On non-2xx, non-JSON or non-object bodies
            PayWayClientError: On network failure
        """
        if not self.merchant_id or not self.api_key:
            raise PayWayConfigurationError(
                "PayWay is not configured. "
                "Set PAYWAY_MERCHANT_ID and PAYWAY_API_KEY environment variables."
            )

        req_time = request_time()
        form = {
            "req_time": req_time,
            "merchant_id": self.merchant_id,
            "tran_id": tran_id,
            "hash": sign(self.api_key, req_time, self.merchant_id, tran_id),
        }

        async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
            try:
                # PayWay expects multipart/form-data
                response = await client.post(
                    f"{self.base_url}{CHECK_TRANSACTION_PATH}",
                    files={key: (None, value) for key, value in form.items()},
                )
            except httpx.RequestError as e:
                logger.error(f"Network error checking transaction {tran_id}: {e}")
                raise PayWayClientError(f"Network error: {e}") from e

        if response.status_code >= 400:
            logger.error(
                f"Check transaction {tran_id} failed with status {response.status_code}"
            )
            raise PayWayResponseError(
                f"Gateway returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise PayWayResponseError(
                "Gateway returned a non-JSON body", status_code=response.status_code
            ) from e

        if not isinstance(payload, dict):
            raise PayWayResponseError(
                f"Gateway returned {type(payload).__name__}, expected an object",
                status_code=response.status_code,
            )

        logger.debug(f"Check transaction {tran_id} response: {payload}")
        return payload


def get_payway_client() -> PayWayClient:
    """Factory function to create a PayWayClient from settings."""
    return PayWayClient()
