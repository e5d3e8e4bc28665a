"""Diagnostics tool: railgate_status."""

from __future__ import annotations

import importlib.metadata
import platform
from typing import Any

from railgate.btcpay_client import BTCPayAuthError, BTCPayClient, BTCPayError
from railgate.config import RailgateConfig
from railgate.key_vault import KeyVaultError, load_vault_key

# Greenfield permissions the gateway needs: invoices in, Lightning payments out.
_REQUIRED_PERMISSIONS = (
    "btcpay.store.cancreateinvoice",
    "btcpay.store.canviewinvoices",
    "btcpay.store.canuselightningnode",
)


def _presence(value: object) -> str:
    return "present" if value else "missing"


def _granted(permission: str, granted: list[str]) -> bool:
    # Store-scoped grants look like "btcpay.store.canviewinvoices:<storeId>".
    return any(g == permission or g.startswith(permission + ":") for g in granted)


async def railgate_status_tool(
    config: RailgateConfig,
    btcpay: BTCPayClient | None,
) -> dict[str, Any]:
    """Report configuration state and gateway connectivity for diagnostics.

    Admin/operator tool. Secrets are reported only as present/missing; the
    vault key is checked for shape, never echoed.

    Args:
        config: RailgateConfig.
        btcpay: BTCPay client (may be None if connection vars are missing).

    Returns dict with:
        versions: Python and installed package versions.
        lightning: Gateway endpoint config, reachability, store name and
            API key permissions.
        ledger_token: RPC endpoint, mint, notifier config presence.
        vault_key: 'valid', 'invalid' or 'missing'.
        cashout_limit: Ceiling and window.
    """
    result: dict[str, Any] = {}

    versions: dict[str, str] = {"python": platform.python_version()}
    for pkg in ("railgate", "httpx", "solana"):
        try:
            versions[pkg] = importlib.metadata.version(pkg)
        except importlib.metadata.PackageNotFoundError:
            versions[pkg] = "unknown"
    result["versions"] = versions

    if config.vault_key:
        try:
            load_vault_key(config.vault_key)
            result["vault_key"] = "valid"
        except KeyVaultError:
            result["vault_key"] = "invalid"
    else:
        result["vault_key"] = "missing"

    result["ledger_token"] = {
        "solana_rpc_url": config.solana_rpc_url,
        "token_mint": config.token_mint,
        "helius_api_key_status": _presence(config.helius_api_key),
        "helius_webhook_id": config.helius_webhook_id,
        "helius_auth_header_status": _presence(config.helius_auth_header),
    }
    result["cashout_limit"] = {
        "ceiling_usd": str(config.cashout_limit_usd),
        "window_hours": config.cashout_window.total_seconds() / 3600,
    }

    lightning: dict[str, Any] = {
        "btcpay_host": config.btcpay_host or None,
        "btcpay_store_id": config.btcpay_store_id or None,
        "btcpay_api_key_status": _presence(config.btcpay_api_key),
        "btcpay_webhook_secret_status": _presence(config.btcpay_webhook_secret),
    }
    connection_vars_present = bool(
        config.btcpay_host and config.btcpay_store_id and config.btcpay_api_key
    )
    if connection_vars_present and btcpay is not None:
        try:
            await btcpay.health_check()
            lightning["server_reachable"] = True
        except BTCPayError:
            lightning["server_reachable"] = False

        try:
            store = await btcpay.get_store()
            lightning["store_name"] = store.get("name", "unknown")
        except BTCPayAuthError:
            lightning["store_name"] = "unauthorized"
        except BTCPayError:
            lightning["store_name"] = None

        try:
            key_info = await btcpay.get_api_key_info()
            permissions = key_info.get("permissions", [])
            lightning["api_key_permissions"] = {
                "required": list(_REQUIRED_PERMISSIONS),
                "missing": [p for p in _REQUIRED_PERMISSIONS if not _granted(p, permissions)],
            }
        except BTCPayError as e:
            lightning["api_key_permissions"] = {"error": str(e)}
    else:
        lightning["server_reachable"] = None
        lightning["store_name"] = None
    result["lightning"] = lightning

    return result
