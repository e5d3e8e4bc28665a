"""Tests for Helius watch-list registration."""

import asyncio
from unittest.mock import AsyncMock

import httpx
import pytest

from railgate.errors import ExternalDependencyError
from railgate.notifier import BalanceNotifier, HeliusNotifier, NotifierError

_WEBHOOK = {
    "webhookID": "wh-1",
    "webhookURL": "https://app.example.com/hooks/ledger",
    "transactionTypes": ["TRANSFER"],
    "accountAddresses": ["Existing1"],
    "webhookType": "enhanced",
    "authHeader": "shared-secret",
}


def _mock_response(status: int = 200, json_data: object = None) -> httpx.Response:
    return httpx.Response(
        status_code=status,
        json=json_data if json_data is not None else {},
        request=httpx.Request("GET", "https://api.helius.xyz"),
    )


class _FakeHelius:
    """Keeps one webhook document and answers GET/PUT like the API."""

    def __init__(self, drop_updates: bool = False) -> None:
        self.doc = dict(_WEBHOOK, accountAddresses=list(_WEBHOOK["accountAddresses"]))
        self.puts: list[dict] = []
        self.drop_updates = drop_updates

    async def request(self, method: str, url: str, json: dict | None = None) -> httpx.Response:
        await asyncio.sleep(0)
        if method == "PUT":
            self.puts.append(json)
            if not self.drop_updates:
                self.doc = dict(self.doc, accountAddresses=list(json["accountAddresses"]))
        return _mock_response(200, self.doc)


def _notifier(fake: _FakeHelius) -> HeliusNotifier:
    notifier = HeliusNotifier("api-key", "wh-1")
    notifier._client.request = fake.request
    return notifier


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestRegister:
    def test_satisfies_protocol(self) -> None:
        assert isinstance(HeliusNotifier("k", "wh"), BalanceNotifier)

    def test_api_key_sent_as_query_param(self) -> None:
        notifier = HeliusNotifier("my-key", "wh")
        assert notifier._client.params["api-key"] == "my-key"

    @pytest.mark.asyncio
    async def test_appends_and_preserves_config(self) -> None:
        fake = _FakeHelius()
        await _notifier(fake).register_address("NewAddr")
        put = fake.puts[0]
        assert put["accountAddresses"] == ["Existing1", "NewAddr"]
        assert put["webhookURL"] == _WEBHOOK["webhookURL"]
        assert put["authHeader"] == "shared-secret"

    @pytest.mark.asyncio
    async def test_already_registered_is_noop(self) -> None:
        fake = _FakeHelius()
        await _notifier(fake).register_address("Existing1")
        assert fake.puts == []

    @pytest.mark.asyncio
    async def test_concurrent_registrations_not_lost(self) -> None:
        fake = _FakeHelius()
        notifier = _notifier(fake)
        await asyncio.gather(*[notifier.register_address(f"A{i}") for i in range(5)])
        assert set(fake.doc["accountAddresses"]) == {"Existing1", "A0", "A1", "A2", "A3", "A4"}

    @pytest.mark.asyncio
    async def test_dropped_update_raises(self) -> None:
        fake = _FakeHelius(drop_updates=True)
        with pytest.raises(NotifierError, match="did not accept"):
            await _notifier(fake).register_address("NewAddr")

    @pytest.mark.asyncio
    async def test_deregister(self) -> None:
        fake = _FakeHelius()
        await _notifier(fake).deregister_address("Existing1")
        assert fake.doc["accountAddresses"] == []


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


class TestErrors:
    @pytest.mark.asyncio
    async def test_http_status_error(self) -> None:
        notifier = HeliusNotifier("k", "wh")
        notifier._client.request = AsyncMock(return_value=_mock_response(401, {"error": "bad key"}))
        with pytest.raises(NotifierError) as exc_info:
            await notifier.register_address("A")
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_transport_error(self) -> None:
        notifier = HeliusNotifier("k", "wh")
        notifier._client.request = AsyncMock(side_effect=httpx.ReadTimeout("slow"))
        with pytest.raises(NotifierError):
            await notifier.register_address("A")

    @pytest.mark.asyncio
    async def test_non_json_body(self) -> None:
        notifier = HeliusNotifier("k", "wh")
        notifier._client.request = AsyncMock(return_value=httpx.Response(
            200, text="<html>gateway</html>",
            request=httpx.Request("GET", "https://api.helius.xyz"),
        ))
        with pytest.raises(NotifierError, match="non-JSON"):
            await notifier.register_address("A")

    def test_is_external_dependency_error(self) -> None:
        assert issubclass(NotifierError, ExternalDependencyError)
