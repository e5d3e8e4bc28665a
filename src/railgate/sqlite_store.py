"""SQLiteStore: durable ``OrderStore`` on the standard-library sqlite3 module.

Records are kept as JSON documents next to the indexed columns the queries
need. Every compare-and-set and every reservation runs inside a
``BEGIN IMMEDIATE`` transaction, which takes the database write lock before
the read, so two processes cannot both pass the same limit check.

Blocking sqlite calls run in worker threads via ``asyncio.to_thread``.
In-process reservations are additionally serialized per customer with
asyncio locks, so one customer's queue never holds up another's.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any

from railgate.constants import OrderStatus, PayoutStatus, Rail
from railgate.errors import NotFoundError
from railgate.models import (
    LimitReservation,
    LimitSnapshot,
    Order,
    Payout,
    new_id,
    parse_dt,
    summarize_window,
)
from railgate.store import ReservationOutcome, limit_exceeded

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS orders (
    id TEXT PRIMARY KEY,
    customer_id TEXT NOT NULL,
    rail TEXT NOT NULL,
    status TEXT NOT NULL,
    deposit_address TEXT,
    gateway_invoice_id TEXT,
    data TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status);
CREATE UNIQUE INDEX IF NOT EXISTS idx_orders_address ON orders(deposit_address);
CREATE INDEX IF NOT EXISTS idx_orders_invoice ON orders(gateway_invoice_id);

CREATE TABLE IF NOT EXISTS payouts (
    id TEXT PRIMARY KEY,
    customer_id TEXT NOT NULL,
    status TEXT NOT NULL,
    data TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_payouts_customer ON payouts(customer_id);

CREATE TABLE IF NOT EXISTS limit_reservations (
    id TEXT PRIMARY KEY,
    customer_id TEXT NOT NULL,
    payout_id TEXT NOT NULL UNIQUE,
    amount_usd TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_reservations_customer
    ON limit_reservations(customer_id, created_at);

CREATE TABLE IF NOT EXISTS limit_releases (
    reservation_id TEXT PRIMARY KEY,
    payout_id TEXT NOT NULL,
    customer_id TEXT NOT NULL,
    released_at TEXT NOT NULL,
    reason TEXT NOT NULL
);
"""


class SQLiteStore:
    """``OrderStore`` backed by a single SQLite database file."""

    def __init__(self, path: str | Path, busy_timeout_secs: float = 30.0) -> None:
        self._path = str(path)
        self._busy_timeout = busy_timeout_secs
        self._shared_conn: sqlite3.Connection | None = None
        self._shared_lock = threading.Lock()
        self._customer_locks: dict[str, asyncio.Lock] = {}
        self._init_db()

    def _get_lock(self, customer_id: str) -> asyncio.Lock:
        if customer_id not in self._customer_locks:
            self._customer_locks[customer_id] = asyncio.Lock()
        return self._customer_locks[customer_id]

    # -- connection plumbing --------------------------------------------------

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self._path,
            timeout=self._busy_timeout,
            isolation_level=None,  # explicit BEGIN/COMMIT only
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        if self._path == ":memory:":
            with self._shared_lock:
                if self._shared_conn is None:
                    self._shared_conn = self._open()
                yield self._shared_conn
            return
        conn = self._open()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except Exception:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.executescript(_SCHEMA)
        logger.info("Settlement store ready at %s.", self._path)

    def close(self) -> None:
        if self._shared_conn is not None:
            self._shared_conn.close()
            self._shared_conn = None

    # -- orders ---------------------------------------------------------------

    def _insert_order_sync(self, order: Order) -> None:
        try:
            with self._transaction() as conn:
                conn.execute(
                    "INSERT INTO orders (id, customer_id, rail, status, "
                    "deposit_address, gateway_invoice_id, data) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        order.id, order.customer_id, order.rail.value,
                        order.status.value, order.deposit_address,
                        order.gateway_invoice_id, json.dumps(order.to_dict()),
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise ValueError(f"Order {order.id} already exists: {e}") from e

    async def insert_order(self, order: Order) -> None:
        await asyncio.to_thread(self._insert_order_sync, order)

    def _select_orders(self, where: str, params: tuple[Any, ...]) -> list[Order]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT data FROM orders {where} ORDER BY rowid", params
            ).fetchall()
        return [Order.from_dict(json.loads(row["data"])) for row in rows]

    async def get_order(self, order_id: str) -> Order | None:
        found = await asyncio.to_thread(self._select_orders, "WHERE id = ?", (order_id,))
        return found[0] if found else None

    async def find_order_by_address(self, address: str) -> Order | None:
        found = await asyncio.to_thread(
            self._select_orders, "WHERE deposit_address = ?", (address,)
        )
        return found[0] if found else None

    async def find_order_by_invoice(self, invoice_id: str) -> Order | None:
        found = await asyncio.to_thread(
            self._select_orders, "WHERE gateway_invoice_id = ?", (invoice_id,)
        )
        return found[0] if found else None

    async def list_orders(
        self, status: OrderStatus | None = None, rail: Rail | None = None
    ) -> list[Order]:
        clauses: list[str] = []
        params: list[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if rail is not None:
            clauses.append("rail = ?")
            params.append(rail.value)
        where = ("WHERE " + " AND ".join(clauses)) if clauses else ""
        return await asyncio.to_thread(self._select_orders, where, tuple(params))

    def _transition_order_sync(
        self,
        order_id: str,
        expected: OrderStatus,
        new: OrderStatus,
        changes: dict[str, Any],
    ) -> Order | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT data FROM orders WHERE id = ?", (order_id,)
            ).fetchone()
            if row is None:
                raise NotFoundError(f"Order {order_id} not found")
            current = Order.from_dict(json.loads(row["data"]))
            if current.status is not expected:
                return None
            updated = current.advanced(new, **changes)
            conn.execute(
                "UPDATE orders SET status = ?, data = ? WHERE id = ? AND status = ?",
                (new.value, json.dumps(updated.to_dict()), order_id, expected.value),
            )
            return updated

    async def transition_order(
        self,
        order_id: str,
        expected: OrderStatus,
        new: OrderStatus,
        **changes: Any,
    ) -> Order | None:
        return await asyncio.to_thread(
            self._transition_order_sync, order_id, expected, new, changes
        )

    # -- limit ledger ---------------------------------------------------------

    @staticmethod
    def _window_sync(
        conn: sqlite3.Connection,
        customer_id: str,
        ceiling_usd: Decimal,
        window: timedelta,
        now: datetime,
    ) -> LimitSnapshot:
        since = (now - window).isoformat()
        rows = conn.execute(
            "SELECT id, payout_id, amount_usd, created_at FROM limit_reservations "
            "WHERE customer_id = ? AND created_at >= ?",
            (customer_id, since),
        ).fetchall()
        released = {
            r["reservation_id"] for r in conn.execute(
                "SELECT reservation_id FROM limit_releases WHERE customer_id = ?",
                (customer_id,),
            ).fetchall()
        }
        reservations = [
            LimitReservation(
                id=r["id"],
                customer_id=customer_id,
                payout_id=r["payout_id"],
                amount_usd=Decimal(r["amount_usd"]),
                created_at=parse_dt(r["created_at"]),
            )
            for r in rows
        ]
        return summarize_window(
            customer_id, reservations, released, ceiling_usd, window, now
        )

    def _limit_snapshot_sync(
        self,
        customer_id: str,
        ceiling_usd: Decimal,
        window: timedelta,
        now: datetime,
    ) -> LimitSnapshot:
        with self._connect() as conn:
            return self._window_sync(conn, customer_id, ceiling_usd, window, now)

    async def limit_snapshot(
        self,
        customer_id: str,
        ceiling_usd: Decimal,
        window: timedelta,
        now: datetime,
    ) -> LimitSnapshot:
        return await asyncio.to_thread(
            self._limit_snapshot_sync, customer_id, ceiling_usd, window, now
        )

    def _reserve_payout_sync(
        self,
        payout: Payout,
        ceiling_usd: Decimal,
        window: timedelta,
        now: datetime,
    ) -> ReservationOutcome:
        with self._transaction() as conn:
            snapshot = self._window_sync(
                conn, payout.customer_id, ceiling_usd, window, now
            )
            row = conn.execute(
                "SELECT data FROM payouts WHERE id = ?", (payout.id,)
            ).fetchone()
            if row is not None:
                existing = Payout.from_dict(json.loads(row["data"]))
                return ReservationOutcome(existing, snapshot, created=False)
            if not snapshot.allows(payout.reserved_usd):
                raise limit_exceeded(snapshot, payout.reserved_usd)
            conn.execute(
                "INSERT INTO limit_reservations "
                "(id, customer_id, payout_id, amount_usd, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    new_id(), payout.customer_id, payout.id,
                    str(payout.reserved_usd), now.isoformat(),
                ),
            )
            stored = Payout.from_dict({**payout.to_dict(), "created_at": now.isoformat()})
            conn.execute(
                "INSERT INTO payouts (id, customer_id, status, data) VALUES (?, ?, ?, ?)",
                (
                    stored.id, stored.customer_id, stored.status.value,
                    json.dumps(stored.to_dict()),
                ),
            )
            return ReservationOutcome(stored, snapshot, created=True)

    async def reserve_payout(
        self,
        payout: Payout,
        ceiling_usd: Decimal,
        window: timedelta,
        now: datetime,
    ) -> ReservationOutcome:
        async with self._get_lock(payout.customer_id):
            return await asyncio.to_thread(
                self._reserve_payout_sync, payout, ceiling_usd, window, now
            )

    def _release_reservation_sync(
        self, payout_id: str, reason: str, now: datetime
    ) -> bool:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT id, customer_id FROM limit_reservations WHERE payout_id = ?",
                (payout_id,),
            ).fetchone()
            if row is None:
                raise NotFoundError(f"No reservation for payout {payout_id}")
            cursor = conn.execute(
                "INSERT OR IGNORE INTO limit_releases "
                "(reservation_id, payout_id, customer_id, released_at, reason) "
                "VALUES (?, ?, ?, ?, ?)",
                (row["id"], payout_id, row["customer_id"], now.isoformat(), reason),
            )
            return cursor.rowcount == 1

    async def release_reservation(
        self, payout_id: str, reason: str, now: datetime
    ) -> bool:
        return await asyncio.to_thread(
            self._release_reservation_sync, payout_id, reason, now
        )

    # -- payouts --------------------------------------------------------------

    def _select_payouts(self, where: str, params: tuple[Any, ...]) -> list[Payout]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT data FROM payouts {where} ORDER BY rowid", params
            ).fetchall()
        return [Payout.from_dict(json.loads(row["data"])) for row in rows]

    async def get_payout(self, payout_id: str) -> Payout | None:
        found = await asyncio.to_thread(self._select_payouts, "WHERE id = ?", (payout_id,))
        return found[0] if found else None

    async def list_payouts(self, customer_id: str | None = None) -> list[Payout]:
        if customer_id is None:
            return await asyncio.to_thread(self._select_payouts, "", ())
        return await asyncio.to_thread(
            self._select_payouts, "WHERE customer_id = ?", (customer_id,)
        )

    def _transition_payout_sync(
        self,
        payout_id: str,
        expected: PayoutStatus,
        new: PayoutStatus,
        changes: dict[str, Any],
    ) -> Payout | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT data FROM payouts WHERE id = ?", (payout_id,)
            ).fetchone()
            if row is None:
                raise NotFoundError(f"Payout {payout_id} not found")
            current = Payout.from_dict(json.loads(row["data"]))
            if current.status is not expected:
                return None
            updated = current.advanced(new, **changes)
            conn.execute(
                "UPDATE payouts SET status = ?, data = ? WHERE id = ?",
                (new.value, json.dumps(updated.to_dict()), payout_id),
            )
            return updated

    async def transition_payout(
        self,
        payout_id: str,
        expected: PayoutStatus,
        new: PayoutStatus,
        **changes: Any,
    ) -> Payout | None:
        return await asyncio.to_thread(
            self._transition_payout_sync, payout_id, expected, new, changes
        )
