"""Batch Executor - Validated, bounded-parallel transaction submission with retries."""

from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Set
import asyncio
import logging
import time
import uuid

import backoff

from .config import BundlerConfig
from .gas import scale_wei
from .interfaces import LedgerProvider, SignerProvider
from .models import (
    BatchResult,
    ErrorKind,
    Transaction,
    TxOutcome,
    TxStatus,
)

logger = logging.getLogger(__name__)


RequestTransform = Callable[[dict], Awaitable[dict]]


class GroupFailure(Exception):
    """A parallel group raised instead of reporting per-transaction outcomes."""


@dataclass
class _Totals:
    successful: int = 0
    failed: int = 0
    gas_used: int = 0
    gas_price: int = 0
    failed_groups: int = 0

    def add(self, other: "_Totals") -> None:
        self.successful += other.successful
        self.failed += other.failed
        self.gas_used += other.gas_used
        self.gas_price += other.gas_price
        self.failed_groups += other.failed_groups


class _SignerSequencer:
    """Makes each transaction wait for the previous one from the same signer."""

    def __init__(self, transactions: List[Transaction]):
        self._done: Dict[str, asyncio.Event] = {tx.id: asyncio.Event() for tx in transactions}
        self._previous: Dict[str, str] = {}
        last: Dict[str, str] = {}
        for tx in transactions:
            address = tx.signer.address
            if address in last:
                self._previous[tx.id] = last[address]
            last[address] = tx.id

    async def wait_turn(self, tx: Transaction) -> None:
        previous = self._previous.get(tx.id)
        if previous is not None:
            await self._done[previous].wait()

    def finish(self, tx: Transaction) -> None:
        self._done[tx.id].set()


def order_by_nonce(transactions: List[Transaction]) -> List[Transaction]:
    """
    Reorder each signer's transactions by nonce, keeping the slots they occupy.

    Transactions of different signers keep their relative positions.
    """
    slots: Dict[str, List[int]] = {}
    for index, tx in enumerate(transactions):
        slots.setdefault(tx.signer.address, []).append(index)

    ordered = list(transactions)
    for indexes in slots.values():
        by_nonce = sorted((transactions[i] for i in indexes), key=lambda tx: tx.nonce)
        for index, tx in zip(indexes, by_nonce):
            ordered[index] = tx
    return ordered


class BatchExecutor:
    """
    Validates and submits batches of transactions.

    Transactions are split into groups of MAX_BATCH_SIZE and up to
    PARALLEL_BATCHES groups run concurrently, with a short pause between
    waves so the RPC endpoint is not saturated. Failed transactions are
    resubmitted with escalated fees until RETRY_ATTEMPTS is reached.

    Nonce discipline:
    - nonces are assigned once per signer from the "pending" count
    - one signer never has two unconfirmed submissions in flight
    - a nonce consumed on-chain (mined but reverted) is never reused
    - a nonce abandoned by a transaction that failed without being mined
      is taken over by the signer's next transaction
    """

    def __init__(
        self,
        rpc_client: LedgerProvider,
        signer: SignerProvider,
        config: BundlerConfig = None,
    ):
        """
        Initialize batch executor.

        Args:
            rpc_client: Ledger RPC provider
            signer: Wallet signing provider
            config: Bundler configuration

        Raises:
            ConfigurationError: if the configuration is invalid
        """
        self.rpc = rpc_client
        self.signer = signer
        self.config = (config or BundlerConfig()).validate()

        # Next unused nonce per signer address, learned from mined receipts
        self._next_nonce: Dict[str, int] = {}
        # Nonces left unused by transactions that failed without being mined
        self._released: Dict[str, Set[int]] = {}
        self._results: Dict[str, BatchResult] = {}
        self._batch_counter = 0

    @backoff.on_exception(
        backoff.expo,
        Exception,
        max_tries=3,
        on_backoff=lambda details: logger.warning(
            f"Ledger provider unreachable, retrying... attempt {details['tries']}"
        ),
    )
    async def initialize(self) -> int:
        """Check provider connectivity; raises after the last retry."""
        block = await self.rpc.get_block_number()
        logger.info(f"Batch executor connected at block {block}")
        return block

    async def validate(self, transactions: List[Transaction]) -> List[Transaction]:
        """
        Drop transactions that cannot be submitted and assign missing nonces.

        A transaction is dropped when it has no destination or signer, or
        when its signer cannot cover gas_price * gas_limit + value.
        Dropped transactions are marked FAILED and never submitted.

        Args:
            transactions: Candidate transactions

        Returns:
            The transactions that passed validation, in input order
        """
        valid = []
        next_nonce: Dict[str, int] = {}

        for tx in transactions:
            try:
                if not tx.to or tx.signer is None:
                    logger.warning(f"Invalid transaction {tx.id}: missing destination or signer")
                    tx.status = TxStatus.FAILED
                    continue

                address = tx.signer.address
                balance = await self.rpc.get_balance(address)
                gas_cost = tx.gas_price * tx.gas_limit(self.config.default_gas_limit)

                if balance < gas_cost + tx.value:
                    logger.warning(
                        f"Insufficient balance for transaction {tx.id}: "
                        f"{balance} < {gas_cost + tx.value}"
                    )
                    tx.status = TxStatus.FAILED
                    continue

                if tx.nonce is None:
                    if address not in next_nonce:
                        next_nonce[address] = await self._pending_nonce(address)
                    tx.nonce = next_nonce[address]
                next_nonce[address] = max(next_nonce.get(address, 0), tx.nonce + 1)

                valid.append(tx)

            except Exception as e:
                logger.error(f"Error validating transaction {tx.id}: {e}")
                tx.status = TxStatus.FAILED

        return valid

    async def process_batch(
        self,
        transactions: List[Transaction],
        batch_id: Optional[str] = None,
    ) -> BatchResult:
        """
        Validate and submit a batch of transactions.

        Args:
            transactions: Transactions to submit
            batch_id: Identifier to report under (generated if omitted)

        Returns:
            BatchResult with success/failure counts and gas totals
        """
        batch_id = batch_id or self._generate_batch_id()
        started = time.monotonic()
        logger.info(f"📦 Processing batch {batch_id} of {len(transactions)} transactions")

        valid = await self.validate(transactions)

        if not valid:
            result = BatchResult(
                batch_id=batch_id,
                execution_time=time.monotonic() - started,
                error="No valid transactions in batch",
                error_kind=ErrorKind.VALIDATION,
            )
            self._results[batch_id] = result
            logger.warning(f"Batch {batch_id} has no valid transactions")
            return result

        totals = await self._process_in_groups(valid)

        result = BatchResult(
            batch_id=batch_id,
            transactions=valid,
            successful_txs=totals.successful,
            failed_txs=totals.failed,
            total_gas_used=totals.gas_used,
            total_gas_price=totals.gas_price,
            execution_time=time.monotonic() - started,
        )
        if totals.failed_groups:
            result.error = f"{totals.failed_groups} group(s) failed"
            result.error_kind = ErrorKind.GROUP
        self._results[batch_id] = result

        logger.info(f"✅ Batch {batch_id} processed: {totals.successful}/{len(valid)} successful")
        return result

    async def _process_in_groups(self, transactions: List[Transaction]) -> _Totals:
        """Run groups of transactions in waves of parallel groups."""
        ordered = order_by_nonce(transactions)
        sequencer = _SignerSequencer(ordered)
        totals = _Totals()

        group_size = self.config.max_batch_size
        wave_size = group_size * self.config.parallel_batches

        for start in range(0, len(ordered), wave_size):
            wave = ordered[start:start + wave_size]
            groups = [wave[i:i + group_size] for i in range(0, len(wave), group_size)]

            results = await asyncio.gather(
                *(self._process_group(group, sequencer) for group in groups),
                return_exceptions=True,
            )

            for group, result in zip(groups, results):
                if isinstance(result, Exception):
                    # Fail closed: the whole group counts as failed
                    logger.error(f"Group of {len(group)} transactions failed: {result}")
                    totals.failed += len(group)
                    totals.failed_groups += 1
                else:
                    totals.add(result)

            if start + wave_size < len(ordered):
                await asyncio.sleep(self.config.group_delay / 1000)

        return totals

    async def _process_group(
        self,
        group: List[Transaction],
        sequencer: _SignerSequencer,
    ) -> _Totals:
        """Submit one group concurrently and tally its outcomes."""
        outcomes = await asyncio.gather(
            *(self._run_transaction(tx, sequencer) for tx in group),
            return_exceptions=True,
        )

        errors = [o for o in outcomes if isinstance(o, Exception)]
        if errors:
            raise GroupFailure(f"{len(errors)} transaction task(s) raised: {errors[0]}")

        totals = _Totals()
        for outcome in outcomes:
            if outcome.success:
                totals.successful += 1
                totals.gas_used += outcome.gas_used
                totals.gas_price += outcome.gas_price
            else:
                totals.failed += 1
        return totals

    async def _run_transaction(
        self,
        tx: Transaction,
        sequencer: _SignerSequencer,
    ) -> TxOutcome:
        """Submit a transaction, retrying with escalated fees on failure."""
        await sequencer.wait_turn(tx)
        try:
            outcome = await self.submit_once(tx)
            while not outcome.success and tx.retry_count < self.config.retry_attempts:
                outcome = await self._retry(tx)

            if not outcome.success:
                logger.warning(
                    f"Transaction {tx.id} failed after {tx.retry_count} retries: {outcome.error}"
                )
                if not outcome.nonce_consumed:
                    self._release_nonce(tx)
            return outcome
        finally:
            sequencer.finish(tx)

    async def _retry(self, tx: Transaction) -> TxOutcome:
        tx.retry_count += 1
        tx.status = TxStatus.RETRY
        self.escalate(tx)

        logger.info(
            f"Retrying transaction {tx.id} ({tx.retry_count}/{self.config.retry_attempts}) "
            f"at gas price {tx.gas_price}"
        )

        await asyncio.sleep(self.config.retry_delay / 1000)
        return await self.submit_once(tx)

    def escalate(self, tx: Transaction) -> None:
        """Raise a transaction's fees by the configured increments."""
        tx.gas_price = scale_wei(tx.gas_price, self.config.gas_price_increment)
        tx.priority_fee = scale_wei(tx.priority_fee, self.config.priority_fee_increment)

    async def submit_once(
        self,
        tx: Transaction,
        transform: Optional[RequestTransform] = None,
    ) -> TxOutcome:
        """
        Sign, submit and await the receipt of one transaction.

        Args:
            tx: Transaction to submit (status is updated in place)
            transform: Optional rewrite applied to the raw request before signing

        Returns:
            TxOutcome; failures are reported, never raised
        """
        address = tx.signer.address
        expected = self._next_nonce.get(address)
        if tx.nonce is None:
            tx.nonce = await self._pending_nonce(address)
        elif expected is not None and tx.nonce < expected:
            # Nonce already consumed on-chain
            tx.nonce = expected
        self._fill_nonce_gap(tx)

        request = tx.to_request()
        if transform is not None:
            request = await transform(request)
            tx.apply_request(request)

        try:
            signed = await self.signer.sign(tx.signer, request)
            response = await self.rpc.submit(signed)
            tx.tx_hash = response["hash"]
            tx.status = TxStatus.SENT
        except Exception as e:
            logger.error(f"Error submitting transaction {tx.id}: {e}")
            tx.status = TxStatus.FAILED
            return TxOutcome(success=False, error=str(e), error_kind=ErrorKind.SUBMISSION)

        try:
            receipt = await self.rpc.await_receipt(tx.tx_hash)
        except Exception as e:
            logger.error(f"Error awaiting receipt for {tx.id} ({tx.tx_hash}): {e}")
            tx.status = TxStatus.FAILED
            return TxOutcome(
                success=False,
                tx_hash=tx.tx_hash,
                error=str(e),
                error_kind=ErrorKind.CONFIRMATION,
            )

        # Mined either way: the nonce is spent
        self._next_nonce[address] = max(self._next_nonce.get(address, 0), tx.nonce + 1)

        if receipt.get("status") != 1:
            tx.status = TxStatus.FAILED
            return TxOutcome(
                success=False,
                tx_hash=tx.tx_hash,
                block_number=receipt.get("blockNumber"),
                error="Transaction reverted",
                error_kind=ErrorKind.CONFIRMATION,
                nonce_consumed=True,
            )

        tx.status = TxStatus.CONFIRMED
        tx.block_number = receipt.get("blockNumber")
        tx.gas_used = int(receipt.get("gasUsed") or 0)

        return TxOutcome(
            success=True,
            tx_hash=tx.tx_hash,
            block_number=tx.block_number,
            gas_used=tx.gas_used,
            gas_price=int(receipt.get("gasPrice") or 0),
            nonce_consumed=True,
        )

    def _release_nonce(self, tx: Transaction) -> None:
        if tx.nonce is not None:
            self._released.setdefault(tx.signer.address, set()).add(tx.nonce)

    def _fill_nonce_gap(self, tx: Transaction) -> None:
        """Move a transaction down onto the lowest nonce its signer abandoned."""
        address = tx.signer.address
        released = self._released.get(address)
        if not released:
            return

        floor = self._next_nonce.get(address, 0)
        released.difference_update([n for n in released if n < floor])

        lowest = min(released, default=None)
        if lowest is None or lowest >= tx.nonce:
            return

        logger.info(f"Transaction {tx.id} takes abandoned nonce {lowest} instead of {tx.nonce}")
        released.discard(lowest)
        released.add(tx.nonce)
        tx.nonce = lowest

    async def _pending_nonce(self, address: str) -> int:
        """Next nonce for a signer: the pending count, never below local knowledge."""
        pending = await self.rpc.get_transaction_count(address, "pending")
        return max(int(pending), self._next_nonce.get(address, 0))

    def _generate_batch_id(self) -> str:
        self._batch_counter += 1
        return f"batch_{uuid.uuid4().hex[:8]}_{self._batch_counter}"

    def get_result(self, batch_id: str) -> Optional[BatchResult]:
        return self._results.get(batch_id)

    def results(self) -> Dict[str, BatchResult]:
        """Copy of the results of every processed batch."""
        return dict(self._results)
