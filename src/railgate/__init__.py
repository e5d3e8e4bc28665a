"""Railgate: dual-rail top-ups and capped payouts.

Lightning invoices and SPL stablecoin deposits in; Lightning payouts out,
under a rolling 24-hour cashout ceiling per customer.
"""

__version__ = "0.1.0"

from railgate.config import MasterWallet, RailgateConfig
from railgate.constants import (
    CASHOUT_LIMIT_USD,
    CASHOUT_WINDOW,
    ConfirmationSource,
    OrderStatus,
    PayoutStatus,
    Rail,
)
from railgate.errors import (
    CustodyError,
    DepositError,
    ExternalDependencyError,
    InvalidDestinationError,
    InvalidTransitionError,
    LimitExceededError,
    NotFoundError,
    RailgateError,
    ValidationError,
    WebhookAuthError,
)
from railgate.key_vault import KeyVault, KeyVaultError, SealedSecret
from railgate.models import LimitReservation, LimitSnapshot, Order, Payout
from railgate.store import MemoryStore, OrderStore
from railgate.sqlite_store import SQLiteStore
from railgate.btcpay_client import BTCPayClient, BTCPayError, BTCPayAuthError
from railgate.gateway import BTCPayGateway, PaymentGateway, PaymentResult
from railgate.rates import CoinGeckoRates, ExchangeRateSource, RateError
from railgate.chain import ChainError, LedgerChain
from railgate.notifier import BalanceNotifier, HeliusNotifier, NotifierError
from railgate.provisioner import DepositProvisioner
from railgate.monitor import ConfirmationMonitor
from railgate.sweeper import SweepExecutor
from railgate.limits import CashoutLimitLedger
from railgate.resolver import InvoiceResolver, LnurlError, Resolution
from railgate.payouts import PayoutDispatcher, PayoutResult
from railgate.factory import Railgate, build_railgate

__all__ = [
    "MasterWallet",
    "RailgateConfig",
    "CASHOUT_LIMIT_USD",
    "CASHOUT_WINDOW",
    "ConfirmationSource",
    "OrderStatus",
    "PayoutStatus",
    "Rail",
    "CustodyError",
    "DepositError",
    "ExternalDependencyError",
    "InvalidDestinationError",
    "InvalidTransitionError",
    "LimitExceededError",
    "NotFoundError",
    "RailgateError",
    "ValidationError",
    "WebhookAuthError",
    "KeyVault",
    "KeyVaultError",
    "SealedSecret",
    "LimitReservation",
    "LimitSnapshot",
    "Order",
    "Payout",
    "MemoryStore",
    "OrderStore",
    "SQLiteStore",
    "BTCPayClient",
    "BTCPayError",
    "BTCPayAuthError",
    "BTCPayGateway",
    "PaymentGateway",
    "PaymentResult",
    "CoinGeckoRates",
    "ExchangeRateSource",
    "RateError",
    "ChainError",
    "LedgerChain",
    "BalanceNotifier",
    "HeliusNotifier",
    "NotifierError",
    "DepositProvisioner",
    "ConfirmationMonitor",
    "SweepExecutor",
    "CashoutLimitLedger",
    "InvoiceResolver",
    "LnurlError",
    "Resolution",
    "PayoutDispatcher",
    "PayoutResult",
    "Railgate",
    "build_railgate",
]
