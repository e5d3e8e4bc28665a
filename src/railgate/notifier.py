"""Balance-change notifier registration (Helius address webhooks).

Every deposit address must be on the webhook's watch list before it is
handed to a customer, otherwise a payment to it is only ever seen by the
poller.

Helius keeps the whole watch list in one webhook document, so registration
is read-modify-write. An in-process lock serializes those updates and the
PUT response is checked for the new address, which catches a lost update
from another writer.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol, runtime_checkable

import httpx

from railgate.errors import ExternalDependencyError

logger = logging.getLogger(__name__)

_HELIUS_URL = "https://api.helius.xyz/v0"


class NotifierError(ExternalDependencyError):
    """Watch-list update failed; the address is not monitored."""


@runtime_checkable
class BalanceNotifier(Protocol):
    async def register_address(self, address: str) -> None: ...

    async def deregister_address(self, address: str) -> None: ...


class HeliusNotifier:
    """Adds/removes deposit addresses on an existing Helius webhook."""

    def __init__(
        self,
        api_key: str,
        webhook_id: str,
        base_url: str = _HELIUS_URL,
        timeout_secs: float = 10.0,
    ) -> None:
        self._webhook_id = webhook_id
        self._client = httpx.AsyncClient(
            base_url=base_url,
            params={"api-key": api_key},
            timeout=timeout_secs,
        )
        self._lock = asyncio.Lock()

    async def _request(
        self, method: str, json_data: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        try:
            response = await self._client.request(
                method, f"/webhooks/{self._webhook_id}", json=json_data
            )
        except httpx.HTTPError as exc:
            raise NotifierError(f"Helius {method} failed: {exc}") from exc
        if response.status_code >= 400:
            raise NotifierError(
                f"Helius {method} returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise NotifierError(
                f"Helius {method} returned a non-JSON body: {response.text[:200]}"
            ) from exc

    async def _update_addresses(self, address: str, *, add: bool) -> None:
        async with self._lock:
            webhook = await self._request("GET")
            addresses = list(webhook.get("accountAddresses") or [])
            present = address in addresses
            if add == present:
                return
            if add:
                addresses.append(address)
            else:
                addresses.remove(address)
            updated = await self._request("PUT", {
                "webhookURL": webhook.get("webhookURL"),
                "transactionTypes": webhook.get("transactionTypes"),
                "accountAddresses": addresses,
                "webhookType": webhook.get("webhookType"),
                "authHeader": webhook.get("authHeader"),
            })
            now_present = address in (updated.get("accountAddresses") or [])
            if now_present != add:
                raise NotifierError(
                    f"Helius watch list did not accept update for {address}"
                )

    async def register_address(self, address: str) -> None:
        await self._update_addresses(address, add=True)
        logger.info("Registered deposit address %s with notifier.", address)

    async def deregister_address(self, address: str) -> None:
        await self._update_addresses(address, add=False)
        logger.info("Deregistered deposit address %s from notifier.", address)

    async def close(self) -> None:
        await self._client.aclose()
