"""Deposit address provisioner: ``create_deposit(customer_id, amount, rail)``.

Ledger-token deposits get a fresh keypair whose secret is sealed by the key
vault (bound to the address as associated data) before anything is stored.
The order is stored as ``provisioning`` with that sealed key before the
master wallet funds the address, then put on the notifier's watch list.
Only after both steps does it become ``pending`` and visible to the
monitor. If either step fails the order is parked as ``failed`` with its
sealed key and the caller gets an error instead of an address;
``SweepExecutor.recover_sweep`` reclaims its reserve.
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Any

from railgate.chain import LedgerChain
from railgate.config import MasterWallet
from railgate.constants import MAX_DEPOSIT_USD, OrderStatus, Rail
from railgate.errors import DepositError, ValidationError
from railgate.gateway import PaymentGateway
from railgate.key_vault import KeyVault
from railgate.models import Order, new_id
from railgate.notifier import BalanceNotifier
from railgate.store import OrderStore

logger = logging.getLogger(__name__)


def validate_amount(amount: Decimal | str | int) -> Decimal:
    try:
        value = Decimal(str(amount))
    except InvalidOperation as e:
        raise ValidationError(f"Invalid amount: {amount!r}", reason="invalid_amount") from e
    if not value.is_finite() or value <= 0:
        raise ValidationError("Amount must be positive.", reason="invalid_amount")
    if value > MAX_DEPOSIT_USD:
        raise ValidationError(
            f"Amount exceeds the ${MAX_DEPOSIT_USD} deposit maximum.",
            reason="amount_out_of_bounds",
        )
    if value.as_tuple().exponent < -2:
        raise ValidationError("Amount has more than two decimal places.", reason="invalid_amount")
    return value


class DepositProvisioner:
    def __init__(
        self,
        store: OrderStore,
        vault: KeyVault,
        master: MasterWallet,
        *,
        chain: LedgerChain | None = None,
        notifier: BalanceNotifier | None = None,
        gateway: PaymentGateway | None = None,
    ) -> None:
        self._store = store
        self._vault = vault
        self._master = master
        self._chain = chain
        self._notifier = notifier
        self._gateway = gateway

    async def create_deposit(
        self, customer_id: str, amount: Decimal | str | int, rail: Rail | str
    ) -> Order:
        if not customer_id:
            raise ValidationError("customer_id is required.")
        value = validate_amount(amount)
        try:
            rail = Rail(rail)
        except ValueError as e:
            raise ValidationError(f"Unknown rail: {rail!r}", reason="invalid_rail") from e

        if rail is Rail.LEDGER_TOKEN:
            return await self._create_ledger_deposit(customer_id, value)
        return await self._create_lightning_deposit(customer_id, value)

    async def _create_ledger_deposit(self, customer_id: str, amount: Decimal) -> Order:
        if self._chain is None or self._notifier is None:
            raise ValidationError("Ledger-token deposits are not enabled.", reason="rail_disabled")

        deposit = self._chain.generate_keypair()
        sealed = self._vault.encrypt(deposit.secret, associated_data=deposit.address.encode())
        order = Order(
            id=new_id(),
            customer_id=customer_id,
            requested_amount=amount,
            rail=Rail.LEDGER_TOKEN,
            status=OrderStatus.PROVISIONING,
            deposit_address=deposit.address,
            encrypted_private_key=sealed,
        )
        await self._store.insert_order(order)

        try:
            funding_tx_ref = await self._chain.fund_deposit_address(self._master, deposit)
        except Exception as e:
            await self._abort(order, f"funding failed: {e}")
            raise DepositError(f"Funding deposit address failed: {e}") from e

        try:
            await self._notifier.register_address(deposit.address)
        except Exception as e:
            await self._abort(
                order, f"notifier registration failed: {e}", funding_tx_ref=funding_tx_ref
            )
            raise DepositError(f"Notifier registration failed for order {order.id}: {e}") from e

        pending = await self._store.transition_order(
            order.id, OrderStatus.PROVISIONING, OrderStatus.PENDING,
            funding_tx_ref=funding_tx_ref,
        )
        if pending is None:
            raise DepositError(f"Order {order.id} changed while provisioning")
        logger.info(
            "Ledger-token deposit %s created for customer %s: %s at %s.",
            order.id, customer_id, amount, deposit.address,
        )
        return pending

    async def _abort(self, order: Order, reason: str, **changes: Any) -> None:
        """Park a half-provisioned order as ``failed``; the sealed key stays."""
        logger.error(
            "Deposit for order %s aborted at %s: %s", order.id, order.deposit_address, reason
        )
        await self._store.transition_order(
            order.id, OrderStatus.PROVISIONING, OrderStatus.FAILED,
            failure_reason=reason, **changes,
        )

    async def _create_lightning_deposit(self, customer_id: str, amount: Decimal) -> Order:
        if self._gateway is None:
            raise ValidationError("Lightning deposits are not enabled.", reason="rail_disabled")

        order_id = new_id()
        try:
            invoice = await self._gateway.create_invoice(
                amount, metadata={"orderId": order_id, "customerId": customer_id}
            )
        except Exception as e:
            logger.error("Invoice creation for order %s failed: %s", order_id, e)
            raise DepositError(f"Invoice creation failed: {e}") from e

        order = Order(
            id=order_id,
            customer_id=customer_id,
            requested_amount=amount,
            rail=Rail.LIGHTNING,
            invoice_text=invoice.invoice_text,
            gateway_invoice_id=invoice.invoice_id,
            expires_at=invoice.expires_at,
        )
        await self._store.insert_order(order)
        logger.info(
            "Lightning deposit %s created for customer %s: $%s (invoice %s).",
            order.id, customer_id, amount, invoice.invoice_id,
        )
        return order
