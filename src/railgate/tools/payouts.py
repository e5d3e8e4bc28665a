"""Payout tools: attempt_payout, cashout_limit, payout_quote."""

from __future__ import annotations

from typing import Any

from railgate.errors import LimitExceededError, RailgateError
from railgate.limits import CashoutLimitLedger
from railgate.payouts import PayoutDispatcher
from railgate.tools.results import failure


async def attempt_payout_tool(
    dispatcher: PayoutDispatcher,
    customer_id: str,
    destination: str,
    usd_amount: str | None = None,
    payout_id: str | None = None,
) -> dict[str, Any]:
    """Cash out to a Lightning invoice or Lightning address.

    Args:
        dispatcher: Configured PayoutDispatcher.
        customer_id: Customer whose 24-hour limit is charged.
        destination: BOLT11 invoice or user@domain Lightning address.
        usd_amount: Required unless the invoice carries its own amount.
        payout_id: Optional idempotency key. Retrying with the same key
            never sends or reserves twice.

    Returns dict with:
        success: True only when the gateway confirmed the payment.
        payout_id/status/reserved_usd/resolved_sats/gateway_ref.
        reason/message: Set on failure; ``limit_exceeded`` also carries
            ``remaining_usd``.
    """
    try:
        result = await dispatcher.attempt_payout(
            customer_id, destination, usd_amount, payout_id=payout_id
        )
    except LimitExceededError as e:
        response = failure(e, f"attempt_payout for {customer_id}")
        response["remaining_usd"] = str(e.remaining_usd)
        return response
    except RailgateError as e:
        return failure(e, f"attempt_payout for {customer_id}")

    response = result.to_dict()
    if result.success:
        response["message"] = (
            f"Sent {result.payout.resolved_sats:,} sats." if result.payout.resolved_sats
            else "Payout already completed."
        )
    elif result.message is None:
        response["message"] = f"Payout is {result.payout.status.value}."
    return response


async def cashout_limit_tool(
    limits: CashoutLimitLedger, customer_id: str
) -> dict[str, Any]:
    """Current 24-hour cashout usage. Reserves nothing."""
    snapshot = await limits.check_limit(customer_id)
    return {"success": True, **snapshot.to_dict()}


async def payout_quote_tool(dispatcher: PayoutDispatcher, usd_amount: str) -> dict[str, Any]:
    """Satoshis a USD cashout would currently buy."""
    try:
        quote = await dispatcher.quote(usd_amount)
    except RailgateError as e:
        return failure(e, "payout_quote")
    return {"success": True, **quote}
