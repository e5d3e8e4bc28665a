"""Dual-path confirmation monitor.

Webhook deliveries and the periodic poller are thin adapters over one
guarded transition, ``observe``. It only ever moves an order
``pending -> paid`` through the store's compare-and-set, so however many
times either path reports the same payment, exactly one transition fires
and only the winner enqueues the sweep.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime
from decimal import Decimal
from typing import Any

from railgate.chain import LedgerChain
from railgate.constants import ConfirmationSource, OrderStatus, Rail
from railgate.errors import ExternalDependencyError, NotFoundError
from railgate.gateway import InvoiceState, PaymentGateway
from railgate.models import Order, utcnow
from railgate.store import OrderStore
from railgate.webhooks import (
    parse_gateway_event,
    parse_ledger_transfers,
    verify_btcpay_signature,
    verify_shared_secret,
)

logger = logging.getLogger(__name__)

# Gateway invoice statuses
_SETTLED = "Settled"
_EXPIRED = "Expired"
_INVALID = "Invalid"


class ConfirmationMonitor:
    """Turns payment observations into ``pending -> paid`` transitions."""

    def __init__(
        self,
        store: OrderStore,
        *,
        chain: LedgerChain | None = None,
        gateway: PaymentGateway | None = None,
        on_paid: Callable[[Order], None] | None = None,
        token_mint: str | None = None,
        ledger_auth_header: str | None = None,
        gateway_webhook_secret: str | None = None,
        poll_interval_secs: float = 30.0,
    ) -> None:
        self._store = store
        self._chain = chain
        self._gateway = gateway
        self._on_paid = on_paid
        self._token_mint = token_mint
        self._ledger_auth_header = ledger_auth_header
        self._gateway_webhook_secret = gateway_webhook_secret
        self._poll_interval = poll_interval_secs
        self._poll_task: asyncio.Task[None] | None = None

    # -- reconciliation -------------------------------------------------------

    async def observe(
        self,
        order_id: str,
        observed_amount: Decimal,
        tx_ref: str | None,
        source: ConfirmationSource,
    ) -> Order | None:
        """Apply one observation. Returns the order only if this call paid it."""
        order = await self._store.get_order(order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        if order.status is not OrderStatus.PENDING:
            if order.status in (OrderStatus.EXPIRED, OrderStatus.FAILED):
                logger.warning(
                    "Payment of %s observed on %s order %s via %s; needs manual review.",
                    observed_amount, order.status.value, order.id, source.value,
                )
            else:
                logger.debug(
                    "Order %s already %s; %s observation ignored.",
                    order.id, order.status.value, source.value,
                )
            return None
        if observed_amount < order.requested_amount:
            logger.info(
                "Order %s: observed %s of %s via %s, still waiting.",
                order.id, observed_amount, order.requested_amount, source.value,
            )
            return None

        paid = await self._store.transition_order(
            order.id,
            OrderStatus.PENDING,
            OrderStatus.PAID,
            paid_at=utcnow(),
            confirmation_source=source,
            settlement_tx_ref=tx_ref,
            observed_amount=observed_amount,
        )
        if paid is None:
            logger.debug("Order %s was confirmed concurrently.", order.id)
            return None
        logger.info(
            "Order %s paid: %s observed via %s (ref %s).",
            paid.id, observed_amount, source.value, tx_ref,
        )
        if self._on_paid is not None:
            self._on_paid(paid)
        return paid

    async def expire(self, order: Order, reason: str = "invoice expired") -> Order | None:
        expired = await self._store.transition_order(
            order.id, OrderStatus.PENDING, OrderStatus.EXPIRED, failure_reason=reason
        )
        if expired is not None:
            logger.info("Order %s expired: %s.", order.id, reason)
        return expired

    async def _apply_invoice_state(
        self,
        order: Order,
        state: InvoiceState,
        source: ConfirmationSource,
        now: datetime,
    ) -> Order | None:
        # Settlement wins over a local expiry that elapsed during the round trip.
        if state.status == _SETTLED:
            return await self.observe(order.id, state.amount, state.invoice_id, source)
        if state.status == _EXPIRED or order.is_expired(now):
            return await self.expire(order)
        if state.status == _INVALID:
            failed = await self._store.transition_order(
                order.id, OrderStatus.PENDING, OrderStatus.FAILED,
                failure_reason="invoice invalidated by gateway",
            )
            if failed is not None:
                logger.warning("Order %s failed: gateway marked invoice invalid.", order.id)
            return failed
        return None

    # -- webhook path ---------------------------------------------------------

    async def handle_ledger_webhook(
        self, payload: Any, authorization: str | None
    ) -> list[Order]:
        """Authenticate and apply a balance-change delivery. Re-delivery is harmless."""
        verify_shared_secret(authorization, self._ledger_auth_header)
        if not self._token_mint:
            raise ExternalDependencyError("Ledger token mint is not configured")

        paid: list[Order] = []
        for obs in parse_ledger_transfers(payload, self._token_mint):
            order = await self._store.find_order_by_address(obs.address)
            if order is None or order.rail is not Rail.LEDGER_TOKEN:
                logger.debug("Ledger webhook for unknown address %s ignored.", obs.address)
                continue
            result = await self.observe(
                order.id, obs.amount, obs.tx_ref, ConfirmationSource.WEBHOOK
            )
            if result is not None:
                paid.append(result)
        return paid

    async def handle_gateway_webhook(
        self, body: bytes, signature: str | None
    ) -> Order | None:
        """Authenticate a gateway event, then trust only the re-fetched invoice."""
        verify_btcpay_signature(body, signature, self._gateway_webhook_secret)
        event = parse_gateway_event(body)
        order = await self._store.find_order_by_invoice(event.invoice_id)
        if order is None:
            logger.warning(
                "Gateway webhook %s for unknown invoice %s ignored.",
                event.event_type, event.invoice_id,
            )
            return None
        if self._gateway is None:
            raise ExternalDependencyError("Payment gateway is not configured")
        state = await self._gateway.invoice_state(event.invoice_id)
        return await self._apply_invoice_state(
            order, state, ConfirmationSource.WEBHOOK, utcnow()
        )

    # -- poll path ------------------------------------------------------------

    async def _poll_order(self, order: Order, now: datetime) -> Order | None:
        if order.rail is Rail.LEDGER_TOKEN:
            if self._chain is None or order.deposit_address is None:
                return None
            balance = await self._chain.token_balance(order.deposit_address)
            return await self.observe(order.id, balance, None, ConfirmationSource.POLL)

        if self._gateway is None or order.gateway_invoice_id is None:
            if order.is_expired(now):
                return await self.expire(order)
            return None
        state = await self._gateway.invoice_state(order.gateway_invoice_id)
        return await self._apply_invoice_state(order, state, ConfirmationSource.POLL, now)

    async def poll_once(self, now: datetime | None = None) -> int:
        """Re-read every pending order once. Returns the number of transitions."""
        now = now or utcnow()
        changed = 0
        for order in await self._store.list_orders(status=OrderStatus.PENDING):
            try:
                if await self._poll_order(order, now) is not None:
                    changed += 1
            except ExternalDependencyError as e:
                logger.warning("Poll of order %s skipped: %s", order.id, e)
        return changed

    async def start_polling(self) -> None:
        """Start the periodic poll task."""
        if self._poll_task is not None:
            return
        self._poll_task = asyncio.create_task(self._poll_loop())

    async def _poll_loop(self) -> None:
        logger.info("Confirmation poller started (interval=%ss).", self._poll_interval)
        try:
            while True:
                await asyncio.sleep(self._poll_interval)
                try:
                    changed = await self.poll_once()
                except Exception:
                    logger.exception("Poll cycle failed.")
                    continue
                if changed:
                    logger.info("Poll cycle moved %d order(s).", changed)
        except asyncio.CancelledError:
            pass

    async def stop(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None

    @property
    def polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()
