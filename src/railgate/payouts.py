"""Payout dispatcher: ``attempt_payout(customer_id, destination, requested_usd)``.

Order of operations:

1. Classify the destination locally (bad shapes never reach the network).
2. Work out the USD amount to reserve. A fixed-amount invoice is valued at
   the current BTC price; otherwise the caller's ``requested_usd`` is used.
3. Reserve atomically: window read, reservation write and pending payout
   creation happen as one unit in the store.
4. Resolve the destination to a final invoice.
5. Pay through the gateway and settle the payout.

Reservation policy when a payout fails after step 3:

- release it when no funds can have moved (resolution failed, the gateway
  was never reached, or the gateway definitively rejected the payment);
- retain it when the gateway outcome is unknown (timeout, 5xx, ``Unknown``
  result); an operator settles those.

The payout is ``failed`` in both cases, never left ``pending``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

from railgate.btcpay_client import sats_to_btc_string
from railgate.constants import PayoutStatus
from railgate.errors import RailgateError, ValidationError
from railgate.gateway import PaymentGateway, PaymentResult
from railgate.limits import CashoutLimitLedger
from railgate.models import Payout, new_id
from railgate.rates import ExchangeRateSource
from railgate.resolver import Destination, InvoiceResolver
from railgate.store import OrderStore

logger = logging.getLogger(__name__)

_MIN_RESERVATION = Decimal("0.01")


@dataclass(frozen=True)
class PayoutResult:
    payout: Payout
    success: bool
    reason: str | None = None
    message: str | None = None
    reservation_released: bool = False
    duplicate: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "payout_id": self.payout.id,
            "status": self.payout.status.value,
            "reserved_usd": str(self.payout.reserved_usd),
            "resolved_sats": self.payout.resolved_sats,
            "gateway_ref": self.payout.gateway_ref,
            "reason": self.reason,
            "message": self.message,
            "reservation_released": self.reservation_released,
            "duplicate": self.duplicate,
        }


def validate_usd(value: Decimal | str | int | None) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        usd = Decimal(str(value))
    except InvalidOperation as e:
        raise ValidationError(f"Invalid USD amount: {value!r}", reason="invalid_amount") from e
    if not usd.is_finite() or usd <= 0:
        raise ValidationError("USD amount must be positive.", reason="invalid_amount")
    return usd


class PayoutDispatcher:
    def __init__(
        self,
        store: OrderStore,
        limits: CashoutLimitLedger,
        resolver: InvoiceResolver,
        gateway: PaymentGateway,
        rates: ExchangeRateSource,
    ) -> None:
        self._store = store
        self._limits = limits
        self._resolver = resolver
        self._gateway = gateway
        self._rates = rates

    async def _reservation_amount(
        self, dest: Destination, requested_usd: Decimal | None
    ) -> Decimal:
        if dest.invoice is not None and dest.invoice.amount_sats is not None:
            value = await self._rates.sats_to_usd(dest.invoice.amount_sats)
            return max(value, _MIN_RESERVATION)
        if requested_usd is None:
            raise ValidationError(
                "An amount in USD is required for this destination.",
                reason="amount_required",
            )
        return requested_usd

    async def attempt_payout(
        self,
        customer_id: str,
        destination: str,
        requested_usd: Decimal | str | int | None = None,
        payout_id: str | None = None,
    ) -> PayoutResult:
        """Reserve, resolve and pay.

        Raises ``ValidationError``/``LimitExceededError`` (nothing recorded)
        or a rate-source error (nothing recorded). Once the reservation is
        written every outcome comes back as a ``PayoutResult``.
        """
        if not customer_id:
            raise ValidationError("customer_id is required.")
        usd = validate_usd(requested_usd)
        dest = self._resolver.parse(destination)
        reserve_usd = await self._reservation_amount(dest, usd)

        outcome = await self._limits.reserve(Payout(
            id=payout_id or new_id(),
            customer_id=customer_id,
            destination=dest.text,
            requested_usd=usd,
            reserved_usd=reserve_usd,
        ))
        payout = outcome.payout
        if not outcome.created:
            if payout.customer_id != customer_id:
                raise ValidationError("payout_id is already in use.", reason="duplicate_id")
            logger.info("Payout %s already recorded (%s); not re-sent.", payout.id, payout.status.value)
            return PayoutResult(
                payout=payout,
                success=payout.status is PayoutStatus.COMPLETED,
                reason="duplicate",
                duplicate=True,
            )

        try:
            resolution = await self._resolver.resolve(dest, usd)
        except RailgateError as e:
            return await self._fail(
                payout, reason=e.reason, detail=str(e),
                public_message=e.public_message, release=True,
            )
        except Exception as e:
            logger.exception("Resolving payout %s raised unexpectedly.", payout.id)
            return await self._fail(
                payout, reason="resolution_failed", detail=str(e),
                public_message="The payment destination could not be resolved.",
                release=True,
            )

        changes = {
            "resolved_sats": resolution.rail_amount_sats,
            "final_invoice": resolution.final_invoice,
        }
        try:
            result = await self._gateway.pay_invoice(
                resolution.final_invoice,
                None if resolution.amount_fixed else resolution.rail_amount_sats,
            )
        except Exception as e:
            logger.exception("Gateway raised while paying payout %s.", payout.id)
            result = PaymentResult(success=False, error=str(e), outcome_known=False)

        if result.success:
            done = await self._store.transition_payout(
                payout.id, PayoutStatus.PENDING, PayoutStatus.COMPLETED,
                gateway_ref=result.gateway_ref, **changes,
            )
            logger.info(
                "Payout %s sent: %d sats to %s for customer %s.",
                payout.id, resolution.rail_amount_sats, dest.text, customer_id,
            )
            return PayoutResult(payout=done or payout, success=True)

        changes["gateway_ref"] = result.gateway_ref
        if result.outcome_known:
            return await self._fail(
                payout, reason="gateway_rejected", detail=result.error or "payment failed",
                public_message="The payout could not be sent.", release=True, **changes,
            )
        return await self._fail(
            payout, reason="outcome_unknown", detail=result.error or "no answer from gateway",
            public_message="The payout could not be confirmed. Support has been notified.",
            release=False, **changes,
        )

    async def _fail(
        self,
        payout: Payout,
        *,
        reason: str,
        detail: str,
        public_message: str,
        release: bool,
        **changes: Any,
    ) -> PayoutResult:
        failed = await self._store.transition_payout(
            payout.id, PayoutStatus.PENDING, PayoutStatus.FAILED,
            failure_reason=f"{reason}: {detail}", **changes,
        )
        released = False
        if release:
            released = await self._limits.release(payout.id, reason)
            logger.warning("Payout %s failed (%s): %s", payout.id, reason, detail)
        else:
            logger.error(
                "CRITICAL: payout %s outcome unknown; $%s stays reserved until reviewed: %s",
                payout.id, payout.reserved_usd, detail,
            )
        return PayoutResult(
            payout=failed or payout,
            success=False,
            reason=reason,
            message=public_message,
            reservation_released=released,
        )

    async def quote(self, usd: Decimal | str | int) -> dict[str, Any]:
        """Satoshis a USD amount buys at the current price. Reserves nothing."""
        amount = validate_usd(usd)
        if amount is None:
            raise ValidationError("An amount in USD is required.", reason="amount_required")
        if amount > self._limits.ceiling_usd:
            raise ValidationError(
                f"Cashouts are limited to ${self._limits.ceiling_usd} per 24 hours.",
                reason="amount_out_of_bounds",
            )
        price = await self._rates.btc_price_usd()
        sats = await self._rates.usd_to_sats(amount)
        return {
            "usd": str(amount),
            "sats": sats,
            "btc": sats_to_btc_string(sats),
            "btc_price_usd": str(price),
        }

    async def get_payout(self, payout_id: str) -> Payout | None:
        return await self._store.get_payout(payout_id)
