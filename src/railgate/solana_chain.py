"""SolanaTokenChain: ``LedgerChain`` for an SPL stablecoin (e.g. PYUSD).

Deposit addresses are plain system accounts created and funded by the
master wallet with rent exemption plus a fee allowance. A sweep is one
transaction signed by the deposit key that

1. transfers the whole token balance to the master wallet's token account,
2. closes the deposit token account (rent goes to the master wallet),
3. returns the remaining SOL reserve minus the fee to the master wallet.
"""

from __future__ import annotations

import logging
from decimal import Decimal

import httpx
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.core import (
    RPCException,
    RPCNoResultException,
    TransactionExpiredBlockheightExceededError,
    UnconfirmedTxError,
)
from solana.rpc.types import TxOpts
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.system_program import (
    CreateAccountParams,
    TransferParams,
    create_account,
    transfer,
)
from solders.transaction import Transaction
from spl.token.instructions import (
    CloseAccountParams,
    TransferCheckedParams,
    close_account,
    transfer_checked,
)

from railgate.chain import ChainError, DepositKeypair, InsufficientFundsError, SweepReceipt
from railgate.config import MasterWallet
from railgate.constants import DEPOSIT_FEE_ALLOWANCE_LAMPORTS, SWEEP_FEE_LAMPORTS

logger = logging.getLogger(__name__)

ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string(
    "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL"
)

_RPC_ERRORS = (
    RPCException,
    RPCNoResultException,
    SolanaRpcException,
    TransactionExpiredBlockheightExceededError,
    UnconfirmedTxError,
    httpx.HTTPError,
)


def associated_token_address(owner: Pubkey, mint: Pubkey, token_program: Pubkey) -> Pubkey:
    address, _bump = Pubkey.find_program_address(
        [bytes(owner), bytes(token_program), bytes(mint)],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )
    return address


class SolanaTokenChain:
    """JSON-RPC adapter. The master wallet is passed per call, never stored."""

    def __init__(
        self,
        rpc_url: str,
        token_mint: str,
        token_program_id: str,
        token_decimals: int = 6,
        fee_allowance_lamports: int = DEPOSIT_FEE_ALLOWANCE_LAMPORTS,
        timeout_secs: float = 15.0,
    ) -> None:
        self._client = AsyncClient(rpc_url, commitment=Confirmed, timeout=timeout_secs)
        self._mint = Pubkey.from_string(token_mint)
        self._token_program = Pubkey.from_string(token_program_id)
        self._decimals = token_decimals
        self._fee_allowance = fee_allowance_lamports

    # -- keys -----------------------------------------------------------------

    def generate_keypair(self) -> DepositKeypair:
        keypair = Keypair()
        return DepositKeypair(address=str(keypair.pubkey()), secret=bytes(keypair))

    def keypair_from_secret(self, secret: bytes) -> DepositKeypair:
        try:
            keypair = Keypair.from_bytes(secret)
        except ValueError as e:
            raise ChainError("Deposit secret is not a valid keypair") from e
        return DepositKeypair(address=str(keypair.pubkey()), secret=secret)

    @staticmethod
    def _master_keypair(master: MasterWallet) -> Keypair:
        try:
            payer = Keypair.from_base58_string(master.signing_key)
        except ValueError as e:
            raise ChainError("Master wallet signing key is invalid") from e
        if str(payer.pubkey()) != master.address:
            raise ChainError("Master wallet signing key does not match its address")
        return payer

    # -- transaction plumbing -------------------------------------------------

    async def _submit(
        self,
        instructions: list[Instruction],
        payer: Keypair,
        signers: list[Keypair],
    ) -> str:
        blockhash_resp = await self._client.get_latest_blockhash()
        blockhash: Hash = blockhash_resp.value.blockhash
        tx = Transaction.new_signed_with_payer(
            instructions, payer.pubkey(), signers, blockhash
        )
        sent = await self._client.send_raw_transaction(
            bytes(tx), opts=TxOpts(skip_confirmation=True, preflight_commitment=Confirmed)
        )
        signature = sent.value
        confirmed = await self._client.confirm_transaction(
            signature,
            commitment=Confirmed,
            last_valid_block_height=blockhash_resp.value.last_valid_block_height,
        )
        status = confirmed.value[0] if confirmed.value else None
        if status is not None and status.err is not None:
            raise ChainError(f"Transaction {signature} failed on chain: {status.err}")
        return str(signature)

    # -- LedgerChain ----------------------------------------------------------

    async def fund_deposit_address(
        self, master: MasterWallet, deposit: DepositKeypair
    ) -> str:
        """Create the deposit account with rent exemption plus one sweep's fees."""
        payer = self._master_keypair(master)
        new_account = Keypair.from_bytes(deposit.secret)
        try:
            rent = (await self._client.get_minimum_balance_for_rent_exemption(0)).value
            lamports = rent + self._fee_allowance
            available = (await self._client.get_balance(payer.pubkey())).value
            if available < lamports + SWEEP_FEE_LAMPORTS:
                raise InsufficientFundsError(
                    f"Master wallet has {available} lamports, "
                    f"needs {lamports + SWEEP_FEE_LAMPORTS}"
                )
            ix = create_account(CreateAccountParams(
                from_pubkey=payer.pubkey(),
                to_pubkey=new_account.pubkey(),
                lamports=lamports,
                space=0,
                owner=SYSTEM_PROGRAM_ID,
            ))
            signature = await self._submit([ix], payer, [payer, new_account])
        except _RPC_ERRORS as e:
            raise ChainError(f"Funding {deposit.address} failed: {e}") from e
        logger.info("Funded deposit address %s with %d lamports.", deposit.address, lamports)
        return signature

    async def token_balance(self, address: str) -> Decimal:
        """Token balance in whole units. A missing token account reads as zero."""
        ata = associated_token_address(
            Pubkey.from_string(address), self._mint, self._token_program
        )
        try:
            resp = await self._client.get_token_account_balance(ata)
        except RPCException:
            return Decimal("0")
        except (SolanaRpcException, httpx.HTTPError) as e:
            raise ChainError(f"Balance lookup for {address} failed: {e}") from e
        return Decimal(resp.value.amount) / (Decimal(10) ** resp.value.decimals)

    async def sweep(self, deposit: DepositKeypair, master: MasterWallet) -> SweepReceipt:
        owner_kp = Keypair.from_bytes(deposit.secret)
        owner = owner_kp.pubkey()
        master_pk = Pubkey.from_string(master.address)
        source = associated_token_address(owner, self._mint, self._token_program)
        dest = associated_token_address(master_pk, self._mint, self._token_program)

        try:
            try:
                balance = await self._client.get_token_account_balance(source)
                raw_amount = int(balance.value.amount)
                decimals = balance.value.decimals
            except RPCException:
                raw_amount, decimals = 0, self._decimals

            instructions: list[Instruction] = []
            if raw_amount > 0:
                instructions.append(transfer_checked(TransferCheckedParams(
                    program_id=self._token_program,
                    source=source,
                    mint=self._mint,
                    dest=dest,
                    owner=owner,
                    amount=raw_amount,
                    decimals=decimals,
                )))
                instructions.append(close_account(CloseAccountParams(
                    program_id=self._token_program,
                    account=source,
                    dest=master_pk,
                    owner=owner,
                )))

            lamports = (await self._client.get_balance(owner)).value
            reclaimed = max(0, lamports - SWEEP_FEE_LAMPORTS)
            if reclaimed > 0:
                instructions.append(transfer(TransferParams(
                    from_pubkey=owner, to_pubkey=master_pk, lamports=reclaimed,
                )))
            if not instructions:
                raise ChainError(f"Nothing to sweep at {deposit.address}")

            signature = await self._submit(instructions, owner_kp, [owner_kp])
        except _RPC_ERRORS as e:
            raise ChainError(f"Sweep of {deposit.address} failed: {e}") from e

        amount = Decimal(raw_amount) / (Decimal(10) ** decimals)
        logger.info(
            "Swept %s tokens and %d lamports from %s (tx %s).",
            amount, reclaimed, deposit.address, signature,
        )
        return SweepReceipt(tx_ref=signature, token_amount=amount, reclaimed_lamports=reclaimed)

    async def close(self) -> None:
        await self._client.close()
