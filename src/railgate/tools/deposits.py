"""Deposit tools: create_deposit, order_status, recover_sweep."""

from __future__ import annotations

import logging
from typing import Any

from railgate.errors import NotFoundError, RailgateError
from railgate.provisioner import DepositProvisioner
from railgate.store import OrderStore
from railgate.sweeper import SweepExecutor
from railgate.tools.results import failure

logger = logging.getLogger(__name__)


async def create_deposit_tool(
    provisioner: DepositProvisioner,
    customer_id: str,
    amount: str,
    rail: str,
) -> dict[str, Any]:
    """Create a top-up order and return where the customer should pay.

    Args:
        provisioner: Configured DepositProvisioner.
        customer_id: Customer the deposit is credited to.
        amount: Amount in USD (one ledger token unit is one USD).
        rail: 'lightning' or 'ledger-token'.

    Returns dict with:
        success: True when an address or invoice was issued.
        order_id/status/rail/requested_amount: The new order.
        deposit_address: Ledger-token rail only.
        invoice/expires_at: Lightning rail only.
    """
    try:
        order = await provisioner.create_deposit(customer_id, amount, rail)
    except RailgateError as e:
        return failure(e, f"create_deposit for {customer_id}")

    result: dict[str, Any] = {"success": True}
    result.update(order.public_view())
    if order.deposit_address:
        result["message"] = (
            f"Send {order.requested_amount} tokens to {order.deposit_address}."
        )
    else:
        result["message"] = "Pay the Lightning invoice before it expires."
    return result


async def order_status_tool(store: OrderStore, order_id: str) -> dict[str, Any]:
    """Look up an order. Never returns key material."""
    order = await store.get_order(order_id)
    if order is None:
        return failure(NotFoundError(f"Order {order_id} not found"), "order_status")
    result: dict[str, Any] = {"success": True}
    result.update(order.public_view())
    result["settlement_tx_ref"] = order.settlement_tx_ref
    result["sweep_tx_ref"] = order.sweep_tx_ref
    result["completed_at"] = order.completed_at.isoformat() if order.completed_at else None
    return result


async def recover_sweep_tool(sweeper: SweepExecutor, order_id: str) -> dict[str, Any]:
    """Operator tool: sweep an order stuck in sweep_failed, or reclaim the
    reserve of a ledger-token order that failed while provisioning.

    Only call this after confirming on chain that the previous sweep did
    not land.
    """
    try:
        order = await sweeper.recover_sweep(order_id)
    except RailgateError as e:
        return failure(e, f"recover_sweep for order {order_id}")
    logger.info("Operator recovery of order %s finished.", order_id)
    return {
        "success": True,
        "order_id": order.id,
        "status": order.status.value,
        "sweep_tx_ref": order.sweep_tx_ref,
    }
