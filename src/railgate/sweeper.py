"""Fund sweep executor.

Drives paid orders to a terminal state:

- lightning: ``paid -> completed`` (funds already settled at the gateway)
- ledger-token: ``paid -> sweeping -> completed | sweep_failed``

The deposit key is decrypted before the order is claimed, so a custody
failure changes nothing. A chain failure after the claim leaves the order
in ``sweep_failed`` and is never retried automatically; ``recover_sweep``
is the operator's way out. It also reclaims the funded reserve of a
ledger-token order that failed during provisioning (``failed -> reclaimed``).
Swept addresses are taken off the notifier's watch list.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from railgate.chain import DepositKeypair, LedgerChain
from railgate.config import MasterWallet
from railgate.constants import OrderStatus, Rail
from railgate.errors import (
    CustodyError,
    InvalidTransitionError,
    NotFoundError,
    RailgateError,
    ValidationError,
)
from railgate.key_vault import KeyVault
from railgate.models import Order, utcnow
from railgate.notifier import BalanceNotifier
from railgate.store import OrderStore

logger = logging.getLogger(__name__)


class SweepExecutor:
    def __init__(
        self,
        store: OrderStore,
        vault: KeyVault,
        chain: LedgerChain | None,
        master: MasterWallet,
        *,
        notifier: BalanceNotifier | None = None,
    ) -> None:
        self._store = store
        self._vault = vault
        self._chain = chain
        self._master = master
        self._notifier = notifier
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._worker_task: asyncio.Task[None] | None = None
        self._recovering: set[str] = set()

    # -- queue ----------------------------------------------------------------

    def enqueue(self, order: Order) -> None:
        """Schedule a sweep. Safe to pass as the monitor's ``on_paid`` hook."""
        self._queue.put_nowait(order.id)

    @property
    def queued(self) -> int:
        return self._queue.qsize()

    async def _process(self, order_id: str) -> Order | None:
        try:
            return await self.sweep(order_id)
        except CustodyError:
            return None  # logged by _unseal; needs an operator
        except RailgateError as e:
            logger.warning("Sweep of order %s not run: %s", order_id, e)
            return None

    async def run_pending(self) -> list[Order]:
        """Drain the queue inline. Returns the orders that were moved."""
        results: list[Order] = []
        while not self._queue.empty():
            order_id = self._queue.get_nowait()
            try:
                order = await self._process(order_id)
            finally:
                self._queue.task_done()
            if order is not None:
                results.append(order)
        return results

    async def start(self) -> None:
        """Start the background sweep worker."""
        if self._worker_task is not None:
            return
        self._worker_task = asyncio.create_task(self._worker_loop())

    async def _worker_loop(self) -> None:
        try:
            while True:
                order_id = await self._queue.get()
                try:
                    await self._process(order_id)
                except Exception:
                    logger.exception("Sweep worker failed on order %s.", order_id)
                finally:
                    self._queue.task_done()
        except asyncio.CancelledError:
            pass

    async def stop(self) -> None:
        if self._worker_task is not None:
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass
            self._worker_task = None

    async def requeue_paid(self) -> tuple[list[str], list[str]]:
        """Startup reconciliation.

        Orders left in ``paid`` are enqueued again. Orders found in
        ``sweeping`` were interrupted mid-broadcast; they are reported and
        left alone. Orders still ``provisioning`` were interrupted before
        the customer saw an address; they are parked as ``failed`` so
        ``recover_sweep`` can reclaim their reserve. Returns
        ``(requeued_ids, needs_operator_ids)``.
        """
        requeued = []
        for order in await self._store.list_orders(status=OrderStatus.PAID):
            self.enqueue(order)
            requeued.append(order.id)
        stuck = []
        for order in await self._store.list_orders(status=OrderStatus.SWEEPING):
            logger.error(
                "CRITICAL: order %s was mid-sweep at shutdown; verify %s on chain "
                "before recovering.",
                order.id, order.deposit_address,
            )
            stuck.append(order.id)
        for order in await self._store.list_orders(status=OrderStatus.PROVISIONING):
            parked = await self._store.transition_order(
                order.id, OrderStatus.PROVISIONING, OrderStatus.FAILED,
                failure_reason="interrupted while provisioning",
            )
            if parked is not None:
                logger.error(
                    "Order %s was provisioning at shutdown; parked as failed, "
                    "reserve at %s is reclaimable.",
                    order.id, order.deposit_address,
                )
                stuck.append(order.id)
        if requeued:
            logger.info("Requeued %d paid order(s) for sweeping.", len(requeued))
        return requeued, stuck

    # -- custody --------------------------------------------------------------

    def _unseal(self, order: Order) -> DepositKeypair:
        """Decrypt the deposit key. The plaintext never leaves the sweep call."""
        if self._chain is None:
            raise ValidationError("Ledger-token rail is not configured")
        if order.encrypted_private_key is None or order.deposit_address is None:
            raise CustodyError(f"Order {order.id} carries no deposit key")
        try:
            secret = self._vault.decrypt(
                order.encrypted_private_key,
                associated_data=order.deposit_address.encode(),
            )
            deposit = self._chain.keypair_from_secret(secret)
        except RailgateError as e:
            logger.error(
                "CRITICAL: deposit key for order %s could not be recovered: %s",
                order.id, e,
            )
            raise CustodyError(f"Deposit key for order {order.id} unusable") from e
        if deposit.address != order.deposit_address:
            logger.error(
                "CRITICAL: decrypted key for order %s does not match its address.",
                order.id,
            )
            raise CustodyError(f"Deposit key for order {order.id} mismatched")
        return deposit

    # -- sweeping -------------------------------------------------------------

    async def sweep(self, order_id: str) -> Order:
        """Sweep one paid order. Returns the order in its resulting state."""
        order = await self._store.get_order(order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        if order.status is not OrderStatus.PAID:
            raise InvalidTransitionError(
                f"Order {order_id} is {order.status.value}; only paid orders sweep"
            )

        if order.rail is Rail.LIGHTNING:
            done = await self._store.transition_order(
                order.id, OrderStatus.PAID, OrderStatus.COMPLETED, completed_at=utcnow()
            )
            if done is None:
                raise InvalidTransitionError(f"Order {order_id} was claimed concurrently")
            logger.info("Lightning order %s completed.", order.id)
            return done

        deposit = self._unseal(order)
        claimed = await self._store.transition_order(
            order.id, OrderStatus.PAID, OrderStatus.SWEEPING
        )
        if claimed is None:
            raise InvalidTransitionError(f"Order {order_id} was claimed concurrently")

        try:
            receipt = await self._chain.sweep(deposit, self._master)
        except Exception as e:
            failed = await self._store.transition_order(
                order.id, OrderStatus.SWEEPING, OrderStatus.SWEEP_FAILED,
                failure_reason=str(e),
            )
            logger.error(
                "CRITICAL: sweep of order %s failed; funds remain at %s: %s",
                order.id, order.deposit_address, e,
            )
            return failed or claimed

        done = await self._store.transition_order(
            order.id, OrderStatus.SWEEPING, OrderStatus.COMPLETED,
            sweep_tx_ref=receipt.tx_ref,
            completed_at=utcnow(),
        )
        logger.info(
            "Order %s swept to master wallet (tx %s).", order.id, receipt.tx_ref
        )
        if done is not None:
            await self._retire(done)
        return done or claimed

    async def recover_sweep(self, order_id: str) -> Order:
        """Operator-triggered sweep of an order nobody else will touch again.

        - ``sweep_failed``: retry the sweep; ``sweep_failed -> completed``.
        - ``failed`` ledger-token order: return whatever the master wallet
          funded it with; ``failed -> reclaimed``.

        Chain errors propagate and leave the order where it was.
        """
        order = await self._store.get_order(order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        if order.status is OrderStatus.SWEEP_FAILED:
            target = OrderStatus.COMPLETED
        elif order.status is OrderStatus.FAILED and order.rail is Rail.LEDGER_TOKEN:
            target = OrderStatus.RECLAIMED
        else:
            raise InvalidTransitionError(
                f"Order {order_id} is {order.status.value}; only sweep_failed or "
                f"failed ledger-token orders recover"
            )
        if order_id in self._recovering:
            raise ValidationError(f"Recovery of order {order_id} is already running")

        self._recovering.add(order_id)
        try:
            deposit = self._unseal(order)
            receipt = await self._chain.sweep(deposit, self._master)
            changes: dict[str, Any] = {"sweep_tx_ref": receipt.tx_ref, "completed_at": utcnow()}
            if target is OrderStatus.COMPLETED:
                changes["failure_reason"] = None
            done = await self._store.transition_order(
                order.id, order.status, target, **changes
            )
        finally:
            self._recovering.discard(order_id)
        if done is None:
            raise InvalidTransitionError(f"Order {order_id} changed during recovery")
        logger.info(
            "Order %s %s by operator (tx %s).", order.id, target.value, receipt.tx_ref
        )
        await self._retire(done)
        return done

    async def _retire(self, order: Order) -> None:
        """Drop a swept address from the watch list. Failure only costs noise."""
        if self._notifier is None or order.deposit_address is None:
            return
        try:
            await self._notifier.deregister_address(order.deposit_address)
        except Exception as e:
            logger.warning(
                "Could not deregister %s after order %s finished: %s",
                order.deposit_address, order.id, e,
            )
