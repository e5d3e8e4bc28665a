"""Shared fixtures: in-memory collaborators standing in for chain, notifier,
gateway and price source."""

from __future__ import annotations

import os
from datetime import timedelta
from decimal import Decimal
from types import SimpleNamespace
from typing import Any

import pytest
from bolt11.exceptions import Bolt11Exception

from railgate.chain import ChainError, DepositKeypair, SweepReceipt
from railgate.config import MasterWallet
from railgate.gateway import InvoiceState, LightningInvoice, PaymentResult
from railgate.key_vault import KeyVault
from railgate.models import utcnow
from railgate.rates import sats_to_usd_at, usd_to_sats_at
from railgate.store import MemoryStore


class FakeChain:
    """``LedgerChain`` with balances held in a dict."""

    def __init__(self) -> None:
        self.balances: dict[str, Decimal] = {}
        self.funded: list[str] = []
        self.sweeps: list[str] = []
        self.fund_error: Exception | None = None
        self.balance_error: Exception | None = None
        self.sweep_error: Exception | None = None
        self._keys: dict[bytes, str] = {}
        self._n = 0

    def generate_keypair(self) -> DepositKeypair:
        self._n += 1
        secret = os.urandom(64)
        address = f"Deposit{self._n}Address"
        self._keys[secret] = address
        return DepositKeypair(address=address, secret=secret)

    def keypair_from_secret(self, secret: bytes) -> DepositKeypair:
        if secret not in self._keys:
            raise ChainError("unknown secret")
        return DepositKeypair(address=self._keys[secret], secret=secret)

    async def fund_deposit_address(self, master: MasterWallet, deposit: DepositKeypair) -> str:
        if self.fund_error is not None:
            raise self.fund_error
        self.funded.append(deposit.address)
        return f"fund-{deposit.address}"

    async def token_balance(self, address: str) -> Decimal:
        if self.balance_error is not None:
            raise self.balance_error
        return self.balances.get(address, Decimal("0"))

    async def sweep(self, deposit: DepositKeypair, master: MasterWallet) -> SweepReceipt:
        self.sweeps.append(deposit.address)
        if self.sweep_error is not None:
            raise self.sweep_error
        amount = self.balances.pop(deposit.address, Decimal("0"))
        return SweepReceipt(
            tx_ref=f"sweep-{deposit.address}", token_amount=amount, reclaimed_lamports=45_000
        )


class FakeNotifier:
    def __init__(self) -> None:
        self.registered: list[str] = []
        self.deregistered: list[str] = []
        self.error: Exception | None = None

    async def register_address(self, address: str) -> None:
        if self.error is not None:
            raise self.error
        self.registered.append(address)

    async def deregister_address(self, address: str) -> None:
        if address in self.registered:
            self.registered.remove(address)
        self.deregistered.append(address)


class FakeGateway:
    """``PaymentGateway`` whose invoice statuses and payment result are set by tests."""

    def __init__(self) -> None:
        self.statuses: dict[str, str] = {}
        self.amounts: dict[str, Decimal] = {}
        self.paid: list[tuple[str, int | None]] = []
        self.pay_result = PaymentResult(success=True, gateway_ref="hash-1", settled_sats=1)
        self.create_error: Exception | None = None
        self.state_error: Exception | None = None
        self._n = 0

    async def create_invoice(
        self, amount_usd: Decimal, metadata: dict[str, Any] | None = None
    ) -> LightningInvoice:
        if self.create_error is not None:
            raise self.create_error
        self._n += 1
        invoice_id = f"inv-{self._n}"
        self.statuses[invoice_id] = "New"
        self.amounts[invoice_id] = amount_usd
        return LightningInvoice(
            invoice_id=invoice_id,
            invoice_text=f"lnbc1fakeinvoice{self._n}",
            expires_at=utcnow() + timedelta(minutes=15),
        )

    async def invoice_state(self, invoice_id: str) -> InvoiceState:
        if self.state_error is not None:
            raise self.state_error
        return InvoiceState(
            invoice_id=invoice_id,
            status=self.statuses[invoice_id],
            amount=self.amounts[invoice_id],
            currency="USD",
        )

    async def pay_invoice(self, invoice_text: str, amount_sats: int | None = None) -> PaymentResult:
        self.paid.append((invoice_text, amount_sats))
        return self.pay_result


class FakeRates:
    def __init__(self, price: Decimal = Decimal("60000")) -> None:
        self.price = price
        self.calls = 0

    async def btc_price_usd(self) -> Decimal:
        self.calls += 1
        return self.price

    async def usd_to_sats(self, usd: Decimal) -> int:
        return usd_to_sats_at(usd, await self.btc_price_usd())

    async def sats_to_usd(self, sats: int) -> Decimal:
        return sats_to_usd_at(sats, await self.btc_price_usd())


@pytest.fixture
def vault() -> KeyVault:
    return KeyVault(os.urandom(32))


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def master() -> MasterWallet:
    return MasterWallet(address="MasterWalletAddress", signing_key="master-signing-key")


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def rates() -> FakeRates:
    return FakeRates()


def decoded_invoice_stub(
    amount_msat: int | None = None,
    currency: str = "bc",
    age_secs: int = 0,
    expiry: int | None = 600,
) -> SimpleNamespace:
    """Stands in for a ``bolt11.decode`` result."""
    return SimpleNamespace(
        currency=currency,
        date=int(utcnow().timestamp()) - age_secs,
        expiry=expiry,
        amount_msat=amount_msat,
        payment_hash="ab" * 32,
    )


class FakeDecoder:
    """Replaces ``bolt11.decode``; unregistered text is malformed."""

    def __init__(self) -> None:
        self.table: dict[str, SimpleNamespace] = {}

    def add(self, invoice_text: str, **stub: Any) -> None:
        self.table[invoice_text] = decoded_invoice_stub(**stub)

    def __call__(self, invoice_text: str) -> SimpleNamespace:
        if invoice_text not in self.table:
            raise Bolt11Exception("bad invoice")
        return self.table[invoice_text]


@pytest.fixture
def fake_decode(monkeypatch: pytest.MonkeyPatch) -> FakeDecoder:
    decoder = FakeDecoder()
    monkeypatch.setattr("railgate.resolver._decode", decoder)
    return decoder
