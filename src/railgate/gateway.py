"""Payment-gateway contract and its BTCPay implementation.

The rest of the system talks to ``PaymentGateway``; only this module knows
BTCPay's payload shapes and status strings.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Protocol, runtime_checkable

from railgate.btcpay_client import (
    BTCPayClient,
    BTCPayConnectionError,
    BTCPayError,
    BTCPayServerError,
    BTCPayTimeoutError,
    BTCPayTransportError,
)
from railgate.constants import MSATS_PER_SAT

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LightningInvoice:
    invoice_id: str
    invoice_text: str  # BOLT11
    expires_at: datetime | None


@dataclass(frozen=True)
class InvoiceState:
    """Gateway view of a deposit invoice: New | Processing | Settled | Expired | Invalid."""

    invoice_id: str
    status: str
    amount: Decimal
    currency: str


@dataclass(frozen=True)
class PaymentResult:
    """Outcome of paying a BOLT11.

    ``outcome_known`` is False when the gateway may or may not have sent
    the payment (timeout, 5xx, ``Unknown`` result).
    """

    success: bool
    gateway_ref: str | None = None
    settled_sats: int | None = None
    error: str | None = None
    outcome_known: bool = True


@runtime_checkable
class PaymentGateway(Protocol):
    async def create_invoice(
        self, amount_usd: Decimal, metadata: dict[str, Any] | None = None
    ) -> LightningInvoice: ...

    async def invoice_state(self, invoice_id: str) -> InvoiceState: ...

    async def pay_invoice(
        self, invoice_text: str, amount_sats: int | None = None
    ) -> PaymentResult: ...


def _to_decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal("0")


def _from_unix(value: Any) -> datetime | None:
    if value in (None, "", 0):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class BTCPayGateway:
    """``PaymentGateway`` backed by a BTCPay store with a Lightning node."""

    def __init__(
        self,
        client: BTCPayClient,
        *,
        expiration_minutes: int | None = 15,
        crypto_code: str = "BTC",
    ) -> None:
        self._client = client
        self._expiration_minutes = expiration_minutes
        self._crypto_code = crypto_code

    async def create_invoice(
        self, amount_usd: Decimal, metadata: dict[str, Any] | None = None
    ) -> LightningInvoice:
        invoice = await self._client.create_invoice(
            amount_usd,
            currency="USD",
            metadata=metadata,
            expiration_minutes=self._expiration_minutes,
        )
        invoice_id = str(invoice.get("id", ""))
        if not invoice_id:
            raise BTCPayError("BTCPay returned an invoice without an id")
        bolt11 = await self._client.get_lightning_destination(invoice_id)
        return LightningInvoice(
            invoice_id=invoice_id,
            invoice_text=bolt11,
            expires_at=_from_unix(invoice.get("expirationTime")),
        )

    async def invoice_state(self, invoice_id: str) -> InvoiceState:
        invoice = await self._client.get_invoice(invoice_id)
        return InvoiceState(
            invoice_id=invoice_id,
            status=str(invoice.get("status", "Unknown")),
            amount=_to_decimal(invoice.get("amount", "0")),
            currency=str(invoice.get("currency", "")),
        )

    async def pay_invoice(
        self, invoice_text: str, amount_sats: int | None = None
    ) -> PaymentResult:
        """Pay a BOLT11 from the store's node. Never raises BTCPayError.

        *amount_sats* is only passed for amountless invoices.
        """
        amount_msat = amount_sats * MSATS_PER_SAT if amount_sats is not None else None
        try:
            data = await self._client.pay_lightning_invoice(
                invoice_text, crypto_code=self._crypto_code, amount_msat=amount_msat
            )
        except (BTCPayTimeoutError, BTCPayServerError, BTCPayTransportError) as e:
            logger.error("Gateway payment outcome unknown: %s", e)
            return PaymentResult(success=False, error=str(e), outcome_known=False)
        except BTCPayConnectionError as e:
            # Never reached the gateway; nothing was sent.
            return PaymentResult(success=False, error=str(e))
        except BTCPayError as e:
            return PaymentResult(success=False, error=str(e))

        result = str(data.get("result", "Unknown"))
        if result == "Ok":
            total = data.get("totalAmount")
            settled = (
                int(_to_decimal(total) / MSATS_PER_SAT) if total is not None else None
            )
            return PaymentResult(
                success=True,
                gateway_ref=data.get("paymentHash"),
                settled_sats=settled,
            )
        error = data.get("errorDetail") or result
        return PaymentResult(
            success=False,
            gateway_ref=data.get("paymentHash"),
            error=str(error),
            outcome_known=result != "Unknown",
        )
