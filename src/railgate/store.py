"""Persistence interface for orders, payouts and the cashout limit ledger.

Defines the ``OrderStore`` Protocol the settlement components depend on,
plus ``MemoryStore``, an in-process implementation. The durable
implementation lives in ``railgate.sqlite_store``.

Two operations carry the concurrency guarantees of the whole system:

- ``transition_order`` is a compare-and-set on the order status. Webhook
  and poll workers race on it; exactly one of them wins.
- ``reserve_payout`` reads the customer's rolling window, writes the
  reservation and creates the pending payout as one atomic unit.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Protocol, runtime_checkable

from railgate.constants import OrderStatus, PayoutStatus, Rail
from railgate.errors import LimitExceededError, NotFoundError
from railgate.models import (
    LimitRelease,
    LimitReservation,
    LimitSnapshot,
    Order,
    Payout,
    new_id,
    summarize_window,
)


@dataclass(frozen=True)
class ReservationOutcome:
    """What ``reserve_payout`` did.

    ``created`` is False when the payout id already existed; in that case
    no second reservation was written and ``payout`` is the stored record.
    """

    payout: Payout
    snapshot: LimitSnapshot
    created: bool


def limit_exceeded(snapshot: LimitSnapshot, amount_usd: Decimal) -> LimitExceededError:
    return LimitExceededError(
        f"Cashout of ${amount_usd} exceeds the 24-hour limit: "
        f"${snapshot.remaining_usd} of ${snapshot.ceiling_usd} remaining.",
        remaining_usd=snapshot.remaining_usd,
    )


@runtime_checkable
class OrderStore(Protocol):
    """Async backing store for settlement state."""

    async def insert_order(self, order: Order) -> None: ...

    async def get_order(self, order_id: str) -> Order | None: ...

    async def find_order_by_address(self, address: str) -> Order | None: ...

    async def find_order_by_invoice(self, invoice_id: str) -> Order | None: ...

    async def list_orders(
        self, status: OrderStatus | None = None, rail: Rail | None = None
    ) -> list[Order]: ...

    async def transition_order(
        self,
        order_id: str,
        expected: OrderStatus,
        new: OrderStatus,
        **changes: Any,
    ) -> Order | None: ...

    async def reserve_payout(
        self,
        payout: Payout,
        ceiling_usd: Decimal,
        window: timedelta,
        now: datetime,
    ) -> ReservationOutcome: ...

    async def release_reservation(
        self, payout_id: str, reason: str, now: datetime
    ) -> bool: ...

    async def limit_snapshot(
        self,
        customer_id: str,
        ceiling_usd: Decimal,
        window: timedelta,
        now: datetime,
    ) -> LimitSnapshot: ...

    async def get_payout(self, payout_id: str) -> Payout | None: ...

    async def list_payouts(self, customer_id: str | None = None) -> list[Payout]: ...

    async def transition_payout(
        self,
        payout_id: str,
        expected: PayoutStatus,
        new: PayoutStatus,
        **changes: Any,
    ) -> Payout | None: ...


class MemoryStore:
    """In-process ``OrderStore``.

    - Order and payout status changes are compare-and-set under one lock.
    - Reservations take a per-customer lock, so customers never contend.
    - Reads return copies; callers cannot mutate stored state in place.
    """

    def __init__(self) -> None:
        self._orders: dict[str, Order] = {}
        self._payouts: dict[str, Payout] = {}
        self._reservations: list[LimitReservation] = []
        self._releases: dict[str, LimitRelease] = {}  # reservation_id -> release
        self._orders_lock = asyncio.Lock()
        self._payouts_lock = asyncio.Lock()
        self._customer_locks: dict[str, asyncio.Lock] = {}

    def _get_lock(self, customer_id: str) -> asyncio.Lock:
        """Get or create a per-customer lock."""
        if customer_id not in self._customer_locks:
            self._customer_locks[customer_id] = asyncio.Lock()
        return self._customer_locks[customer_id]

    # -- orders ---------------------------------------------------------------

    async def insert_order(self, order: Order) -> None:
        async with self._orders_lock:
            if order.id in self._orders:
                raise ValueError(f"Order {order.id} already exists")
            self._orders[order.id] = replace(order)

    async def get_order(self, order_id: str) -> Order | None:
        order = self._orders.get(order_id)
        return replace(order) if order else None

    async def find_order_by_address(self, address: str) -> Order | None:
        for order in self._orders.values():
            if order.deposit_address == address:
                return replace(order)
        return None

    async def find_order_by_invoice(self, invoice_id: str) -> Order | None:
        for order in self._orders.values():
            if order.gateway_invoice_id == invoice_id:
                return replace(order)
        return None

    async def list_orders(
        self, status: OrderStatus | None = None, rail: Rail | None = None
    ) -> list[Order]:
        return [
            replace(o) for o in self._orders.values()
            if (status is None or o.status is status)
            and (rail is None or o.rail is rail)
        ]

    async def transition_order(
        self,
        order_id: str,
        expected: OrderStatus,
        new: OrderStatus,
        **changes: Any,
    ) -> Order | None:
        """Move ``expected -> new`` atomically. Returns None if status moved on."""
        async with self._orders_lock:
            current = self._orders.get(order_id)
            if current is None:
                raise NotFoundError(f"Order {order_id} not found")
            if current.status is not expected:
                return None
            updated = current.advanced(new, **changes)
            self._orders[order_id] = updated
            return replace(updated)

    # -- payouts / limit ledger ----------------------------------------------

    def _released_ids(self) -> set[str]:
        return set(self._releases)

    async def limit_snapshot(
        self,
        customer_id: str,
        ceiling_usd: Decimal,
        window: timedelta,
        now: datetime,
    ) -> LimitSnapshot:
        return summarize_window(
            customer_id, self._reservations, self._released_ids(),
            ceiling_usd, window, now,
        )

    async def reserve_payout(
        self,
        payout: Payout,
        ceiling_usd: Decimal,
        window: timedelta,
        now: datetime,
    ) -> ReservationOutcome:
        async with self._get_lock(payout.customer_id):
            existing = self._payouts.get(payout.id)
            snapshot = summarize_window(
                payout.customer_id, self._reservations, self._released_ids(),
                ceiling_usd, window, now,
            )
            if existing is not None:
                return ReservationOutcome(replace(existing), snapshot, created=False)
            if not snapshot.allows(payout.reserved_usd):
                raise limit_exceeded(snapshot, payout.reserved_usd)
            self._reservations.append(LimitReservation(
                id=new_id(),
                customer_id=payout.customer_id,
                payout_id=payout.id,
                amount_usd=payout.reserved_usd,
                created_at=now,
            ))
            self._payouts[payout.id] = replace(payout, created_at=now)
            return ReservationOutcome(replace(self._payouts[payout.id]), snapshot, created=True)

    async def release_reservation(
        self, payout_id: str, reason: str, now: datetime
    ) -> bool:
        """Record a compensating release. Returns False if already released."""
        reservation = next(
            (r for r in self._reservations if r.payout_id == payout_id), None
        )
        if reservation is None:
            raise NotFoundError(f"No reservation for payout {payout_id}")
        async with self._get_lock(reservation.customer_id):
            if reservation.id in self._releases:
                return False
            self._releases[reservation.id] = LimitRelease(
                reservation_id=reservation.id,
                payout_id=payout_id,
                customer_id=reservation.customer_id,
                released_at=now,
                reason=reason,
            )
            return True

    async def get_payout(self, payout_id: str) -> Payout | None:
        payout = self._payouts.get(payout_id)
        return replace(payout) if payout else None

    async def list_payouts(self, customer_id: str | None = None) -> list[Payout]:
        return [
            replace(p) for p in self._payouts.values()
            if customer_id is None or p.customer_id == customer_id
        ]

    async def transition_payout(
        self,
        payout_id: str,
        expected: PayoutStatus,
        new: PayoutStatus,
        **changes: Any,
    ) -> Payout | None:
        async with self._payouts_lock:
            current = self._payouts.get(payout_id)
            if current is None:
                raise NotFoundError(f"Payout {payout_id} not found")
            if current.status is not expected:
                return None
            updated = current.advanced(new, **changes)
            self._payouts[payout_id] = updated
            return replace(updated)

    # -- inspection -----------------------------------------------------------

    def reservations_for(self, payout_id: str) -> list[LimitReservation]:
        """All reservation records written for a payout (tests/audit)."""
        return [r for r in self._reservations if r.payout_id == payout_id]

    def releases_for(self, payout_id: str) -> list[LimitRelease]:
        return [r for r in self._releases.values() if r.payout_id == payout_id]
