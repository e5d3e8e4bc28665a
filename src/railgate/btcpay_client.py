"""Async HTTP client for BTCPay Server's Greenfield API."""

from __future__ import annotations

from decimal import Decimal
from typing import Any

import httpx

from railgate.constants import SATS_PER_BTC
from railgate.errors import ExternalDependencyError


# ---------------------------------------------------------------------------
# Exception hierarchy
# ---------------------------------------------------------------------------


class BTCPayError(ExternalDependencyError):
    """Base exception for BTCPay operations."""


class BTCPayAuthError(BTCPayError):
    """401/403: authentication or authorization failure."""


class BTCPayNotFoundError(BTCPayError):
    """404: resource not found."""


class BTCPayValidationError(BTCPayError):
    """422: request validation failure."""


class BTCPayServerError(BTCPayError):
    """5xx: server-side error (retryable)."""


class BTCPayConnectionError(BTCPayError):
    """Network/DNS failure (retryable)."""


class BTCPayTimeoutError(BTCPayError):
    """Request timeout (retryable)."""


class BTCPayTransportError(BTCPayError):
    """Connection dropped after the request was sent; it may have been processed."""


# ---------------------------------------------------------------------------
# Sats → BTC conversion
# ---------------------------------------------------------------------------

# Default ceiling: 1 BTC.  Any single payout above this is almost certainly
# a unit-mismatch bug (sats confused with BTC → 10^8× overpayment).
_SATS_CONVERSION_MAX_DEFAULT = SATS_PER_BTC


def sats_to_btc_string(sats: int, *, max_sats: int = _SATS_CONVERSION_MAX_DEFAULT) -> str:
    """Convert satoshis to an 8-decimal-place BTC string.

    Raises ValueError on negative values or values exceeding *max_sats*.
    """
    if sats < 0:
        raise ValueError(f"sats must be non-negative, got {sats}")
    if sats > max_sats:
        raise ValueError(
            f"sats ({sats:,}) exceeds ceiling ({max_sats:,})"
        )
    return f"{Decimal(sats) / SATS_PER_BTC:.8f}"


# ---------------------------------------------------------------------------
# Status code → exception mapping
# ---------------------------------------------------------------------------

_STATUS_MAP: dict[int, type[BTCPayError]] = {
    401: BTCPayAuthError,
    403: BTCPayAuthError,
    404: BTCPayNotFoundError,
    422: BTCPayValidationError,
}

# Payment-method ids BTCPay has used for Lightning over its versions.
_LIGHTNING_METHOD_IDS = ("BTC-LN", "BTC-LightningNetwork", "BTC_LightningLike")


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class BTCPayClient:
    """Async client for BTCPay Server Greenfield API v1.

    Constructor accepts explicit params; no env-var loading.
    Uses ``token`` auth header (not Bearer) per BTCPay convention.
    """

    def __init__(
        self, host: str, api_key: str, store_id: str, timeout_secs: float = 15.0
    ) -> None:
        base_url = host.rstrip("/") + "/api/v1"
        self._store_id = store_id
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"token {api_key}"},
            timeout=httpx.Timeout(connect=5.0, read=timeout_secs, write=10.0, pool=5.0),
        )

    # -- internal request dispatcher -----------------------------------------

    async def _request(
        self,
        method: str,
        endpoint: str,
        json_data: dict[str, Any] | None = None,
    ) -> Any:
        """Send a request and map errors to the BTCPay exception hierarchy."""
        try:
            response = await self._client.request(method, endpoint, json=json_data)
        except httpx.ConnectError as exc:
            raise BTCPayConnectionError(str(exc)) from exc
        except httpx.TimeoutException as exc:
            raise BTCPayTimeoutError(str(exc)) from exc
        except httpx.TransportError as exc:
            raise BTCPayTransportError(str(exc)) from exc

        if response.status_code >= 400:
            body = response.text
            exc_cls = _STATUS_MAP.get(response.status_code)
            if exc_cls is not None:
                raise exc_cls(body, status_code=response.status_code)
            if response.status_code >= 500:
                raise BTCPayServerError(body, status_code=response.status_code)
            raise BTCPayError(body, status_code=response.status_code)

        return response.json()

    # -- public API methods ---------------------------------------------------

    async def health_check(self) -> dict[str, Any]:
        """GET /health: server health status."""
        return await self._request("GET", "/health")

    async def get_store(self) -> dict[str, Any]:
        """GET /stores/{storeId}: store details."""
        return await self._request("GET", f"/stores/{self._store_id}")

    async def get_api_key_info(self) -> dict[str, Any]:
        """GET /api-keys/current: current API key metadata and permissions."""
        return await self._request("GET", "/api-keys/current")

    async def create_invoice(
        self,
        amount: Decimal,
        currency: str = "USD",
        metadata: dict[str, Any] | None = None,
        expiration_minutes: int | None = None,
    ) -> dict[str, Any]:
        """POST /stores/{storeId}/invoices: create a Lightning-only invoice."""
        payload: dict[str, Any] = {
            "amount": str(amount),
            "currency": currency,
            "checkout": {"paymentMethods": ["BTC-LN"]},
        }
        if expiration_minutes is not None:
            payload["checkout"]["expirationMinutes"] = expiration_minutes
        if metadata is not None:
            payload["metadata"] = metadata
        return await self._request(
            "POST", f"/stores/{self._store_id}/invoices", json_data=payload
        )

    async def get_invoice(self, invoice_id: str) -> dict[str, Any]:
        """GET /stores/{storeId}/invoices/{invoiceId}: invoice details."""
        return await self._request(
            "GET", f"/stores/{self._store_id}/invoices/{invoice_id}"
        )

    async def get_invoice_payment_methods(self, invoice_id: str) -> list[dict[str, Any]]:
        """GET /stores/{storeId}/invoices/{invoiceId}/payment-methods."""
        return await self._request(
            "GET", f"/stores/{self._store_id}/invoices/{invoice_id}/payment-methods"
        )

    async def get_lightning_destination(self, invoice_id: str) -> str:
        """Return the BOLT11 payment request behind a store invoice."""
        methods = await self.get_invoice_payment_methods(invoice_id)
        for method in methods:
            method_id = method.get("paymentMethodId") or method.get("paymentMethod")
            if method_id in _LIGHTNING_METHOD_IDS and method.get("destination"):
                return str(method["destination"])
        raise BTCPayError(
            f"Invoice {invoice_id} has no Lightning payment method"
        )

    async def pay_lightning_invoice(
        self,
        bolt11: str,
        crypto_code: str = "BTC",
        amount_msat: int | None = None,
    ) -> dict[str, Any]:
        """POST /stores/{storeId}/lightning/{cryptoCode}/invoices/pay: pay a BOLT11.

        *amount_msat* is required by the node for amountless invoices and
        must be omitted otherwise.
        """
        payload: dict[str, Any] = {"BOLT11": bolt11}
        if amount_msat is not None:
            payload["amount"] = str(amount_msat)
        return await self._request(
            "POST",
            f"/stores/{self._store_id}/lightning/{crypto_code}/invoices/pay",
            json_data=payload,
        )

    # -- lifecycle ------------------------------------------------------------

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> BTCPayClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
