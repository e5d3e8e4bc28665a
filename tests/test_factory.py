"""Tests for building components from a RailgateConfig."""

import base64
import os
from datetime import timedelta
from decimal import Decimal

import pytest

from railgate.config import RailgateConfig
from railgate.errors import ValidationError
from railgate.factory import build_railgate
from railgate.key_vault import KeyVaultError

MINT = "2b1kV6DkPAnxd5ixfnxCpjxmKwqjjaYmCZfHsFu24GXo"


def _config(**overrides) -> RailgateConfig:
    values = dict(
        btcpay_host="https://btcpay.example.com",
        btcpay_store_id="store-1",
        btcpay_api_key="key",
        btcpay_webhook_secret="hook",
        lightning_invoice_expiry_minutes=20,
        solana_rpc_url="https://rpc.example.com",
        token_mint=MINT,
        token_decimals=2,
        deposit_fee_allowance_lamports=70_000,
        helius_api_key="helius",
        helius_webhook_id="wh-1",
        helius_auth_header="auth",
        vault_key=base64.urlsafe_b64encode(os.urandom(32)).decode(),
        cashout_limit_usd=Decimal("150"),
        cashout_window=timedelta(hours=12),
        poll_interval_secs=5.0,
        http_timeout_secs=7.0,
        rate_cache_secs=90.0,
    )
    values.update(overrides)
    return RailgateConfig(**values)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


class TestBuild:
    def test_settings_reach_components(self, store, master) -> None:
        app = build_railgate(_config(), store, master)

        assert app.gateway._expiration_minutes == 20
        assert app.btcpay._client.timeout.read == 7.0
        assert app.chain._decimals == 2
        assert app.chain._fee_allowance == 70_000
        assert str(app.chain._mint) == MINT
        assert app.rates._cache_secs == 90.0
        assert app.monitor._poll_interval == 5.0
        assert app.monitor._gateway_webhook_secret == "hook"
        assert app.monitor._ledger_auth_header == "auth"
        assert app.limits.ceiling_usd == Decimal("150")
        assert app.limits.window == timedelta(hours=12)

    def test_components_share_collaborators(self, store, master) -> None:
        app = build_railgate(_config(), store, master)

        assert app.sweeper._notifier is app.notifier
        assert app.provisioner._notifier is app.notifier
        assert app.provisioner._chain is app.chain
        assert app.monitor._on_paid == app.sweeper.enqueue
        assert app.payouts._limits is app.limits
        assert app.store is store

    def test_lightning_only(self, store, master) -> None:
        app = build_railgate(_config(solana_rpc_url=None), store, master)
        assert app.chain is None
        assert app.notifier is None
        assert app.payouts is not None

    def test_ledger_only_has_no_payouts(self, store, master) -> None:
        app = build_railgate(_config(btcpay_api_key=None), store, master)
        assert app.gateway is None
        assert app.payouts is None
        assert app.chain is not None

    @pytest.mark.asyncio
    async def test_close(self, store, master) -> None:
        app = build_railgate(_config(), store, master)
        await app.close()
        assert app.btcpay._client.is_closed


# ---------------------------------------------------------------------------
# Vault key
# ---------------------------------------------------------------------------


class TestVaultKey:
    def test_required(self, store, master) -> None:
        with pytest.raises(ValidationError) as exc_info:
            build_railgate(_config(vault_key=None), store, master)
        assert exc_info.value.reason == "missing_vault_key"

    def test_invalid(self, store, master) -> None:
        with pytest.raises(KeyVaultError):
            build_railgate(_config(vault_key="too-short"), store, master)
