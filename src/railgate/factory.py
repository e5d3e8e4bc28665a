"""Wire a ``RailgateConfig`` into ready-to-use components.

A rail is enabled only when every setting it needs is present:

- lightning: ``btcpay_host``, ``btcpay_store_id`` and ``btcpay_api_key``
- ledger-token: ``solana_rpc_url``, ``token_mint``, ``helius_api_key`` and
  ``helius_webhook_id``

Payouts travel over Lightning, so the dispatcher exists only when that
rail does. The key vault is always required.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from railgate.btcpay_client import BTCPayClient
from railgate.config import MasterWallet, RailgateConfig
from railgate.errors import ValidationError
from railgate.gateway import BTCPayGateway
from railgate.key_vault import KeyVault
from railgate.limits import CashoutLimitLedger
from railgate.monitor import ConfirmationMonitor
from railgate.notifier import HeliusNotifier
from railgate.payouts import PayoutDispatcher
from railgate.provisioner import DepositProvisioner
from railgate.rates import CoinGeckoRates
from railgate.resolver import InvoiceResolver
from railgate.solana_chain import SolanaTokenChain
from railgate.store import OrderStore
from railgate.sweeper import SweepExecutor

logger = logging.getLogger(__name__)


@dataclass
class Railgate:
    """Everything a host application needs, built from one config."""

    config: RailgateConfig
    store: OrderStore
    provisioner: DepositProvisioner
    monitor: ConfirmationMonitor
    sweeper: SweepExecutor
    limits: CashoutLimitLedger
    rates: CoinGeckoRates
    btcpay: BTCPayClient | None = None
    gateway: BTCPayGateway | None = None
    chain: SolanaTokenChain | None = None
    notifier: HeliusNotifier | None = None
    resolver: InvoiceResolver | None = None
    payouts: PayoutDispatcher | None = None

    async def start(self) -> None:
        """Reconcile leftovers from the last run, then start both workers."""
        await self.sweeper.requeue_paid()
        await self.sweeper.start()
        await self.monitor.start_polling()

    async def close(self) -> None:
        await self.monitor.stop()
        await self.sweeper.stop()
        for client in (self.btcpay, self.chain, self.notifier, self.resolver, self.rates):
            if client is not None:
                await client.close()


def _lightning_enabled(config: RailgateConfig) -> bool:
    return bool(config.btcpay_host and config.btcpay_store_id and config.btcpay_api_key)


def _ledger_enabled(config: RailgateConfig) -> bool:
    return bool(
        config.solana_rpc_url
        and config.token_mint
        and config.helius_api_key
        and config.helius_webhook_id
    )


def build_railgate(
    config: RailgateConfig, store: OrderStore, master: MasterWallet
) -> Railgate:
    """Build every component ``config`` enables, sharing one store."""
    if not config.vault_key:
        raise ValidationError("vault_key is required.", reason="missing_vault_key")
    vault = KeyVault.from_encoded(config.vault_key)
    rates = CoinGeckoRates(
        cache_secs=config.rate_cache_secs, timeout_secs=config.http_timeout_secs
    )

    btcpay = gateway = None
    if _lightning_enabled(config):
        btcpay = BTCPayClient(
            config.btcpay_host,
            config.btcpay_api_key,
            config.btcpay_store_id,
            timeout_secs=config.http_timeout_secs,
        )
        gateway = BTCPayGateway(
            btcpay, expiration_minutes=config.lightning_invoice_expiry_minutes
        )

    chain = notifier = None
    if _ledger_enabled(config):
        chain = SolanaTokenChain(
            config.solana_rpc_url,
            config.token_mint,
            config.token_program_id,
            token_decimals=config.token_decimals,
            fee_allowance_lamports=config.deposit_fee_allowance_lamports,
            timeout_secs=config.http_timeout_secs,
        )
        notifier = HeliusNotifier(
            config.helius_api_key,
            config.helius_webhook_id,
            timeout_secs=config.http_timeout_secs,
        )

    sweeper = SweepExecutor(store, vault, chain, master, notifier=notifier)
    monitor = ConfirmationMonitor(
        store,
        chain=chain,
        gateway=gateway,
        on_paid=sweeper.enqueue,
        token_mint=config.token_mint,
        ledger_auth_header=config.helius_auth_header,
        gateway_webhook_secret=config.btcpay_webhook_secret,
        poll_interval_secs=config.poll_interval_secs,
    )
    provisioner = DepositProvisioner(
        store, vault, master, chain=chain, notifier=notifier, gateway=gateway
    )
    limits = CashoutLimitLedger(store, config.cashout_limit_usd, config.cashout_window)

    resolver = payouts = None
    if gateway is not None:
        resolver = InvoiceResolver(rates, timeout_secs=config.http_timeout_secs)
        payouts = PayoutDispatcher(store, limits, resolver, gateway, rates)

    logger.info(
        "Railgate built: lightning=%s ledger-token=%s.",
        "on" if gateway is not None else "off",
        "on" if chain is not None else "off",
    )
    return Railgate(
        config=config,
        store=store,
        provisioner=provisioner,
        monitor=monitor,
        sweeper=sweeper,
        limits=limits,
        rates=rates,
        btcpay=btcpay,
        gateway=gateway,
        chain=chain,
        notifier=notifier,
        resolver=resolver,
        payouts=payouts,
    )
