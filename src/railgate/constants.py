"""Constants for deposit and payout settlement."""

from datetime import timedelta
from decimal import Decimal
from enum import Enum


CASHOUT_LIMIT_USD = Decimal("300")  # per-customer ceiling over the rolling window
CASHOUT_WINDOW = timedelta(hours=24)

SATS_PER_BTC = 100_000_000
MSATS_PER_SAT = 1_000

TOKEN_DECIMALS_DEFAULT = 6  # PYUSD
DEPOSIT_FEE_ALLOWANCE_LAMPORTS = 50_000  # one sweep transaction plus headroom
SWEEP_FEE_LAMPORTS = 5_000  # fee paid by the deposit wallet for its own sweep

MAX_DEPOSIT_USD = Decimal("10000")  # any single deposit above this is a typo


class Rail(str, Enum):
    """Payment networks an order or payout can travel over."""

    LIGHTNING = "lightning"
    LEDGER_TOKEN = "ledger-token"


class OrderStatus(str, Enum):
    PROVISIONING = "provisioning"  # key sealed and stored; not yet handed out
    PENDING = "pending"
    PAID = "paid"
    SWEEPING = "sweeping"
    COMPLETED = "completed"
    SWEEP_FAILED = "sweep_failed"
    EXPIRED = "expired"
    FAILED = "failed"
    RECLAIMED = "reclaimed"  # reserve of a failed deposit returned to master


class PayoutStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class ConfirmationSource(str, Enum):
    WEBHOOK = "webhook"
    POLL = "poll"
    NONE = "none"


# Forward-only order lifecycle. sweep_failed -> completed and
# failed -> reclaimed are reachable only through operator recovery.
ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PROVISIONING: frozenset({OrderStatus.PENDING, OrderStatus.FAILED}),
    OrderStatus.PENDING: frozenset(
        {OrderStatus.PAID, OrderStatus.EXPIRED, OrderStatus.FAILED}
    ),
    OrderStatus.PAID: frozenset({OrderStatus.SWEEPING, OrderStatus.COMPLETED}),
    OrderStatus.SWEEPING: frozenset(
        {OrderStatus.COMPLETED, OrderStatus.SWEEP_FAILED}
    ),
    OrderStatus.SWEEP_FAILED: frozenset({OrderStatus.COMPLETED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.EXPIRED: frozenset(),
    OrderStatus.FAILED: frozenset({OrderStatus.RECLAIMED}),
    OrderStatus.RECLAIMED: frozenset(),
}

PAYOUT_TRANSITIONS: dict[PayoutStatus, frozenset[PayoutStatus]] = {
    PayoutStatus.PENDING: frozenset({PayoutStatus.COMPLETED, PayoutStatus.FAILED}),
    PayoutStatus.COMPLETED: frozenset(),
    PayoutStatus.FAILED: frozenset(),
}
