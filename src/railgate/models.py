"""Order, Payout and limit-ledger records.

Pure data model, no I/O. Amounts are ``Decimal`` in the order's source
currency (USD for both rails; one ledger token unit is one USD). Real
Lightning amounts are integer satoshis and only appear on payouts as
``resolved_sats``.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

from railgate.constants import (
    ORDER_TRANSITIONS,
    PAYOUT_TRANSITIONS,
    ConfirmationSource,
    OrderStatus,
    PayoutStatus,
    Rail,
)
from railgate.errors import InvalidTransitionError
from railgate.key_vault import SealedSecret


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def parse_dt(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _dec(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    return Decimal(str(value))


def check_order_transition(current: OrderStatus, new: OrderStatus) -> None:
    if new not in ORDER_TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Illegal order transition: {current.value} -> {new.value}"
        )


def check_payout_transition(current: PayoutStatus, new: PayoutStatus) -> None:
    if new not in PAYOUT_TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Illegal payout transition: {current.value} -> {new.value}"
        )


# ---------------------------------------------------------------------------
# Order
# ---------------------------------------------------------------------------


@dataclass
class Order:
    """One deposit attempt on one rail.

    ``encrypted_private_key`` is present iff the rail is ledger-token. It is
    only ever decrypted by the sweeper.
    """

    id: str
    customer_id: str
    requested_amount: Decimal
    rail: Rail
    status: OrderStatus = OrderStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    deposit_address: str | None = None
    encrypted_private_key: SealedSecret | None = field(default=None, repr=False)
    invoice_text: str | None = None
    gateway_invoice_id: str | None = None
    expires_at: datetime | None = None
    paid_at: datetime | None = None
    confirmation_source: ConfirmationSource = ConfirmationSource.NONE
    settlement_tx_ref: str | None = None
    observed_amount: Decimal | None = None
    funding_tx_ref: str | None = None
    sweep_tx_ref: str | None = None
    completed_at: datetime | None = None
    failure_reason: str | None = None
    updated_at: datetime | None = None

    def __post_init__(self) -> None:
        has_key = self.encrypted_private_key is not None
        if has_key != (self.rail is Rail.LEDGER_TOKEN):
            raise ValueError(
                "encrypted_private_key must be set exactly for ledger-token orders"
            )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def public_view(self) -> dict[str, Any]:
        """Fields safe to show consumers; never the key material."""
        return {
            "order_id": self.id,
            "customer_id": self.customer_id,
            "rail": self.rail.value,
            "status": self.status.value,
            "requested_amount": str(self.requested_amount),
            "deposit_address": self.deposit_address,
            "invoice": self.invoice_text,
            "expires_at": _iso(self.expires_at),
            "created_at": _iso(self.created_at),
            "paid_at": _iso(self.paid_at),
            "confirmation_source": self.confirmation_source.value,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "requested_amount": str(self.requested_amount),
            "rail": self.rail.value,
            "status": self.status.value,
            "created_at": _iso(self.created_at),
            "deposit_address": self.deposit_address,
            "encrypted_private_key": (
                self.encrypted_private_key.to_dict()
                if self.encrypted_private_key is not None else None
            ),
            "invoice_text": self.invoice_text,
            "gateway_invoice_id": self.gateway_invoice_id,
            "expires_at": _iso(self.expires_at),
            "paid_at": _iso(self.paid_at),
            "confirmation_source": self.confirmation_source.value,
            "settlement_tx_ref": self.settlement_tx_ref,
            "observed_amount": (
                str(self.observed_amount) if self.observed_amount is not None else None
            ),
            "funding_tx_ref": self.funding_tx_ref,
            "sweep_tx_ref": self.sweep_tx_ref,
            "completed_at": _iso(self.completed_at),
            "failure_reason": self.failure_reason,
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Order:
        sealed = data.get("encrypted_private_key")
        return cls(
            id=str(data["id"]),
            customer_id=str(data["customer_id"]),
            requested_amount=Decimal(str(data["requested_amount"])),
            rail=Rail(data["rail"]),
            status=OrderStatus(data.get("status", "pending")),
            created_at=parse_dt(data.get("created_at")) or utcnow(),
            deposit_address=data.get("deposit_address"),
            encrypted_private_key=(
                SealedSecret.from_dict(sealed) if sealed else None
            ),
            invoice_text=data.get("invoice_text"),
            gateway_invoice_id=data.get("gateway_invoice_id"),
            expires_at=parse_dt(data.get("expires_at")),
            paid_at=parse_dt(data.get("paid_at")),
            confirmation_source=ConfirmationSource(
                data.get("confirmation_source") or "none"
            ),
            settlement_tx_ref=data.get("settlement_tx_ref"),
            observed_amount=_dec(data.get("observed_amount")),
            funding_tx_ref=data.get("funding_tx_ref"),
            sweep_tx_ref=data.get("sweep_tx_ref"),
            completed_at=parse_dt(data.get("completed_at")),
            failure_reason=data.get("failure_reason"),
            updated_at=parse_dt(data.get("updated_at")),
        )

    def advanced(self, new_status: OrderStatus, **changes: Any) -> Order:
        """Return a copy moved to ``new_status``; rejects backward edges."""
        check_order_transition(self.status, new_status)
        return replace(self, status=new_status, updated_at=utcnow(), **changes)


# ---------------------------------------------------------------------------
# Payout
# ---------------------------------------------------------------------------


@dataclass
class Payout:
    """One disbursement to an invoice or human-readable payment address."""

    id: str
    customer_id: str
    destination: str
    requested_usd: Decimal | None
    reserved_usd: Decimal
    status: PayoutStatus = PayoutStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    resolved_sats: int | None = None
    final_invoice: str | None = None
    gateway_ref: str | None = None
    failure_reason: str | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "destination": self.destination,
            "requested_usd": (
                str(self.requested_usd) if self.requested_usd is not None else None
            ),
            "reserved_usd": str(self.reserved_usd),
            "status": self.status.value,
            "created_at": _iso(self.created_at),
            "resolved_sats": self.resolved_sats,
            "final_invoice": self.final_invoice,
            "gateway_ref": self.gateway_ref,
            "failure_reason": self.failure_reason,
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Payout:
        resolved = data.get("resolved_sats")
        return cls(
            id=str(data["id"]),
            customer_id=str(data["customer_id"]),
            destination=str(data["destination"]),
            requested_usd=_dec(data.get("requested_usd")),
            reserved_usd=Decimal(str(data.get("reserved_usd", "0"))),
            status=PayoutStatus(data.get("status", "pending")),
            created_at=parse_dt(data.get("created_at")) or utcnow(),
            resolved_sats=int(resolved) if resolved is not None else None,
            final_invoice=data.get("final_invoice"),
            gateway_ref=data.get("gateway_ref"),
            failure_reason=data.get("failure_reason"),
            updated_at=parse_dt(data.get("updated_at")),
        )

    def advanced(self, new_status: PayoutStatus, **changes: Any) -> Payout:
        check_payout_transition(self.status, new_status)
        return replace(self, status=new_status, updated_at=utcnow(), **changes)


# ---------------------------------------------------------------------------
# Limit ledger
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LimitReservation:
    """Immutable claim against a customer's rolling cashout ceiling."""

    id: str
    customer_id: str
    payout_id: str
    amount_usd: Decimal
    created_at: datetime

    def active_until(self, window: timedelta) -> datetime:
        return self.created_at + window


@dataclass(frozen=True)
class LimitRelease:
    """Compensating entry that returns a reservation's capacity."""

    reservation_id: str
    payout_id: str
    customer_id: str
    released_at: datetime
    reason: str


@dataclass(frozen=True)
class LimitSnapshot:
    """Result of a window computation (read-only or inside a reservation)."""

    customer_id: str
    total_usd: Decimal
    ceiling_usd: Decimal
    window_resets_at: datetime | None

    @property
    def remaining_usd(self) -> Decimal:
        return max(Decimal("0"), self.ceiling_usd - self.total_usd)

    def allows(self, amount_usd: Decimal) -> bool:
        return self.total_usd + amount_usd <= self.ceiling_usd

    def to_dict(self) -> dict[str, Any]:
        return {
            "customer_id": self.customer_id,
            "total_in_window_usd": str(self.total_usd),
            "remaining_usd": str(self.remaining_usd),
            "ceiling_usd": str(self.ceiling_usd),
            "window_resets_at": _iso(self.window_resets_at),
        }


def summarize_window(
    customer_id: str,
    reservations: list[LimitReservation],
    released_ids: set[str],
    ceiling_usd: Decimal,
    window: timedelta,
    now: datetime,
) -> LimitSnapshot:
    """Sum unreleased reservations whose timestamp lies within ``window`` of ``now``."""
    since = now - window
    active = [
        r for r in reservations
        if r.customer_id == customer_id
        and r.created_at >= since
        and r.id not in released_ids
    ]
    total = sum((r.amount_usd for r in active), Decimal("0"))
    resets_at = min((r.active_until(window) for r in active), default=None)
    return LimitSnapshot(
        customer_id=customer_id,
        total_usd=total,
        ceiling_usd=ceiling_usd,
        window_resets_at=resets_at,
    )
