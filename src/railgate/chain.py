"""Ledger-token rail contract: ephemeral keypairs, reserves, balances, sweeps."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Protocol, runtime_checkable

from railgate.config import MasterWallet
from railgate.errors import ExternalDependencyError


class ChainError(ExternalDependencyError):
    """Submission, confirmation or RPC failure on the ledger-token rail."""


class InsufficientFundsError(ChainError):
    """Master wallet cannot cover the deposit reserve."""


@dataclass(frozen=True)
class DepositKeypair:
    """Plaintext keypair. Lives only inside a provisioning or sweep call."""

    address: str
    secret: bytes = field(repr=False)


@dataclass(frozen=True)
class SweepReceipt:
    tx_ref: str
    token_amount: Decimal
    reclaimed_lamports: int


@runtime_checkable
class LedgerChain(Protocol):
    def generate_keypair(self) -> DepositKeypair: ...

    def keypair_from_secret(self, secret: bytes) -> DepositKeypair: ...

    async def fund_deposit_address(
        self, master: MasterWallet, deposit: DepositKeypair
    ) -> str: ...

    async def token_balance(self, address: str) -> Decimal: ...

    async def sweep(self, deposit: DepositKeypair, master: MasterWallet) -> SweepReceipt: ...
