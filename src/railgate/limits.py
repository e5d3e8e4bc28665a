"""Cashout limit ledger: rolling-window reservations against a per-customer ceiling."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal

from railgate.constants import CASHOUT_LIMIT_USD, CASHOUT_WINDOW
from railgate.models import LimitSnapshot, Payout, utcnow
from railgate.store import OrderStore, ReservationOutcome

logger = logging.getLogger(__name__)


class CashoutLimitLedger:
    """Thin policy layer over the store's atomic reserve/release primitives."""

    def __init__(
        self,
        store: OrderStore,
        ceiling_usd: Decimal = CASHOUT_LIMIT_USD,
        window: timedelta = CASHOUT_WINDOW,
    ) -> None:
        self._store = store
        self.ceiling_usd = ceiling_usd
        self.window = window

    async def check_limit(
        self, customer_id: str, now: datetime | None = None
    ) -> LimitSnapshot:
        """Read-only view of the customer's window. Not a reservation."""
        return await self._store.limit_snapshot(
            customer_id, self.ceiling_usd, self.window, now or utcnow()
        )

    async def reserve(
        self, payout: Payout, now: datetime | None = None
    ) -> ReservationOutcome:
        """Reserve ``payout.reserved_usd`` and create the pending payout atomically.

        Raises ``LimitExceededError`` when the ceiling would be crossed.
        """
        outcome = await self._store.reserve_payout(
            payout, self.ceiling_usd, self.window, now or utcnow()
        )
        if outcome.created:
            logger.info(
                "Reserved $%s for customer %s (payout %s); $%s left in window.",
                payout.reserved_usd, payout.customer_id, payout.id,
                outcome.snapshot.remaining_usd - payout.reserved_usd,
            )
        return outcome

    async def release(
        self, payout_id: str, reason: str, now: datetime | None = None
    ) -> bool:
        released = await self._store.release_reservation(payout_id, reason, now or utcnow())
        if released:
            logger.info("Released reservation for payout %s: %s.", payout_id, reason)
        return released
