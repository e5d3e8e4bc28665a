"""Railgate configuration: plain frozen dataclasses, no pydantic.

The host application constructs these from its own settings (env vars,
secret manager, etc.) and hands them to ``railgate.factory.build_railgate``,
which wires every setting into the component that uses it.
Secrets are excluded from ``repr()`` so they never reach a log line.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal

from railgate.constants import (
    CASHOUT_LIMIT_USD,
    CASHOUT_WINDOW,
    DEPOSIT_FEE_ALLOWANCE_LAMPORTS,
    TOKEN_DECIMALS_DEFAULT,
)


@dataclass(frozen=True)
class MasterWallet:
    """Destination of every sweep and source of every deposit reserve."""

    address: str
    signing_key: str = field(default="", repr=False)  # base58 secret key


@dataclass(frozen=True)
class RailgateConfig:
    # Lightning gateway (BTCPay Server Greenfield API)
    btcpay_host: str | None = None
    btcpay_store_id: str | None = None
    btcpay_api_key: str | None = field(default=None, repr=False)
    btcpay_webhook_secret: str | None = field(default=None, repr=False)
    lightning_invoice_expiry_minutes: int = 15

    # Ledger-token rail (Solana SPL token, e.g. PYUSD)
    solana_rpc_url: str | None = None
    token_mint: str | None = None
    token_program_id: str = "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb"  # Token-2022
    token_decimals: int = TOKEN_DECIMALS_DEFAULT
    deposit_fee_allowance_lamports: int = DEPOSIT_FEE_ALLOWANCE_LAMPORTS

    # Balance-change notifier (Helius address webhook)
    helius_api_key: str | None = field(default=None, repr=False)
    helius_webhook_id: str | None = None
    helius_auth_header: str | None = field(default=None, repr=False)

    # Key vault: urlsafe base64 encoded 32-byte AES key
    vault_key: str | None = field(default=None, repr=False)

    # Payout limits
    cashout_limit_usd: Decimal = CASHOUT_LIMIT_USD
    cashout_window: timedelta = CASHOUT_WINDOW

    # Workers / outbound calls
    poll_interval_secs: float = 30.0
    http_timeout_secs: float = 15.0
    rate_cache_secs: float = 60.0
