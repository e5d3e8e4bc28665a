"""Inbound notification authentication and payload parsing.

Nothing in an inbound body is trusted until the sender is authenticated:

- Helius address webhooks carry the configured ``authHeader`` value verbatim
  in ``Authorization``.
- BTCPay webhooks sign the raw body: ``BTCPay-Sig: sha256=<hex hmac>``.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

from railgate.errors import ValidationError, WebhookAuthError

logger = logging.getLogger(__name__)

_SIG_PREFIX = "sha256="


def verify_shared_secret(presented: str | None, expected: str | None) -> None:
    """Constant-time comparison of a shared-secret header."""
    if not expected:
        raise WebhookAuthError("Ledger webhook secret is not configured")
    if not presented or not hmac.compare_digest(presented.encode(), expected.encode()):
        raise WebhookAuthError("Ledger webhook authorization mismatch")


def verify_btcpay_signature(body: bytes, signature: str | None, secret: str | None) -> None:
    if not secret:
        raise WebhookAuthError("Gateway webhook secret is not configured")
    if not signature or not signature.startswith(_SIG_PREFIX):
        raise WebhookAuthError("Gateway webhook signature missing")
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(signature[len(_SIG_PREFIX):].lower(), expected):
        raise WebhookAuthError("Gateway webhook signature mismatch")


# ---------------------------------------------------------------------------
# Ledger-token notifier (Helius enhanced transactions)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LedgerObservation:
    """Token amount seen arriving at one address in one delivery."""

    address: str
    amount: Decimal
    tx_ref: str


def parse_ledger_transfers(payload: Any, token_mint: str) -> list[LedgerObservation]:
    """Collapse a delivery into one observation per receiving address.

    Failed transactions and transfers of other mints are ignored. Several
    transfers to the same address are summed; the first contributing
    signature is kept as the reference.
    """
    if isinstance(payload, dict):
        payload = [payload]
    if not isinstance(payload, list):
        raise ValidationError("Ledger webhook body must be a list of transactions")

    totals: dict[str, Decimal] = {}
    refs: dict[str, str] = {}
    for tx in payload:
        if not isinstance(tx, dict):
            continue
        signature = str(tx.get("signature") or "")
        if tx.get("transactionError"):
            logger.warning("Skipping failed transaction %s in ledger webhook.", signature)
            continue
        for transfer in tx.get("tokenTransfers") or []:
            if transfer.get("mint") != token_mint:
                continue
            address = transfer.get("toUserAccount")
            if not address:
                continue
            try:
                amount = Decimal(str(transfer.get("tokenAmount", "0")))
            except InvalidOperation:
                logger.warning("Unparseable token amount in transaction %s.", signature)
                continue
            if amount <= 0:
                continue
            totals[address] = totals.get(address, Decimal("0")) + amount
            refs.setdefault(address, signature)

    return [
        LedgerObservation(address=address, amount=amount, tx_ref=refs[address])
        for address, amount in totals.items()
    ]


# ---------------------------------------------------------------------------
# Lightning gateway (BTCPay)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GatewayEvent:
    invoice_id: str
    event_type: str
    delivery_id: str | None = None


def parse_gateway_event(body: bytes) -> GatewayEvent:
    try:
        data: dict[str, Any] = json.loads(body)
    except (ValueError, UnicodeDecodeError) as e:
        raise ValidationError("Gateway webhook body is not JSON") from e
    if not isinstance(data, dict):
        raise ValidationError("Gateway webhook body must be an object")
    invoice_id = data.get("invoiceId")
    if not invoice_id:
        raise ValidationError("Gateway webhook carries no invoiceId")
    return GatewayEvent(
        invoice_id=str(invoice_id),
        event_type=str(data.get("type", "")),
        delivery_id=data.get("deliveryId"),
    )
