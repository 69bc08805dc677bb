"""Priority batch queue and the dispatcher that drains it."""

from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set
import asyncio
import heapq
import itertools
import logging

from .batch_executor import BatchExecutor
from .config import BundlerConfig
from .events import BatchCompleted, EventBus
from .models import (
    Batch,
    BatchResult,
    BatchStatus,
    ErrorKind,
    Priority,
    Transaction,
    utcnow,
)

logger = logging.getLogger(__name__)


class PriorityBatchQueue:
    """
    Pending batches ordered by priority (highest first), then created_at.

    Batches with equal priority and timestamp keep insertion order.
    """

    def __init__(self):
        self._heap: list = []
        self._sequence = itertools.count()

    def push(self, batch: Batch) -> None:
        entry = (-int(batch.priority), batch.created_at, next(self._sequence), batch)
        heapq.heappush(self._heap, entry)

    def pop(self) -> Optional[Batch]:
        """Remove and return the head batch, or None if empty."""
        if not self._heap:
            return None
        return heapq.heappop(self._heap)[-1]

    def peek(self) -> Optional[Batch]:
        return self._heap[0][-1] if self._heap else None

    def snapshot(self) -> List[Batch]:
        """Queued batches in dispatch order."""
        return [entry[-1] for entry in sorted(self._heap, key=lambda e: e[:3])]

    def clear(self) -> List[Batch]:
        removed = self.snapshot()
        self._heap = []
        return removed

    def __len__(self) -> int:
        return len(self._heap)


class BatchDispatcher:
    """
    Drains the batch queue one batch per tick.

    The loop wakes on a fixed timer (DISPATCH_INTERVAL) or when a batch
    is enqueued. Only the dispatcher mutates dequeued batches; producers
    only push. Deadlines are checked when a batch is popped: an expired
    batch is marked TIMEOUT and none of its transactions are submitted.

    Usage:
        dispatcher = BatchDispatcher(executor, config, events)
        batch_id = dispatcher.submit(transactions, Priority.HIGH)
        ...
        await dispatcher.stop()
    """

    def __init__(
        self,
        executor: BatchExecutor,
        config: BundlerConfig = None,
        events: EventBus = None,
        clock: Callable[[], datetime] = utcnow,
        auto_start: bool = True,
    ):
        """
        Initialize batch dispatcher.

        Args:
            executor: Executor that processes dequeued batches
            config: Bundler configuration
            events: Event bus receiving BatchCompleted notifications
            clock: Source of the current UTC time
            auto_start: Start the dispatch loop on the first enqueue
        """
        self.executor = executor
        self.config = (config or BundlerConfig()).validate()
        self.events = events or EventBus()
        self._clock = clock
        self.auto_start = auto_start

        self.queue = PriorityBatchQueue()
        self._wakeup = asyncio.Event()
        self._tick_lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()
        self._loop_token: Optional[object] = None
        self._running = False
        self._stopped = False

        self._batches: Dict[str, Batch] = {}
        self._results: Dict[str, BatchResult] = {}

    def submit(
        self,
        transactions: List[Transaction],
        priority: Priority = Priority.MEDIUM,
    ) -> str:
        """
        Queue transactions as a new batch due within BATCH_TIMEOUT.

        Returns:
            The new batch id
        """
        now = self._clock()
        batch = Batch(
            transactions=list(transactions),
            priority=priority,
            created_at=now,
            deadline=now + timedelta(milliseconds=self.config.batch_timeout),
        )
        return self.enqueue(batch)

    def enqueue(self, batch: Batch) -> str:
        """
        Insert a batch and start the dispatcher if it is idle.

        A dispatcher halted by stop() is not restarted; call start().
        """
        batch.status = BatchStatus.QUEUED
        self.queue.push(batch)
        self._batches[batch.id] = batch
        self._wakeup.set()

        logger.info(
            f"📋 Batch {batch.id} queued: {len(batch.transactions)} txs, "
            f"{batch.priority.name} priority"
        )

        if self.auto_start and not self._running and not self._stopped:
            try:
                self.start()
            except RuntimeError:
                logger.debug("No running event loop; dispatcher not started")

        return batch.id

    def start(self) -> None:
        """Start the dispatch loop on the running event loop."""
        if self._running:
            return
        loop = asyncio.get_running_loop()
        self._running = True
        self._stopped = False
        self._loop_token = token = object()
        task = loop.create_task(self._run(token))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info("Batch dispatcher started")

    async def stop(self, wait: bool = True) -> None:
        """
        Halt future ticks. The batch in flight, if any, runs to completion.

        Args:
            wait: Wait for every loop, including superseded ones, to finish
        """
        self._running = False
        self._stopped = True
        self._loop_token = None
        self._wakeup.set()

        if wait and self._tasks:
            await asyncio.gather(*list(self._tasks))
        logger.info("Batch dispatcher stopped")

    async def _run(self, token: object) -> None:
        # A loop superseded by stop() and start() exits after its current tick
        while self._loop_token is token:
            try:
                await self.dispatch_tick()
            except Exception as e:
                logger.error(f"Error in dispatch tick: {e}")

            if self._loop_token is not token:
                break

            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.config.dispatch_interval)
            except asyncio.TimeoutError:
                pass
            self._wakeup.clear()

    async def dispatch_tick(self) -> Optional[BatchResult]:
        """
        Process at most one batch.

        Returns:
            The batch result, or None when the queue was empty
        """
        async with self._tick_lock:
            return await self._dispatch_one()

    async def _dispatch_one(self) -> Optional[BatchResult]:
        batch = self.queue.pop()
        if batch is None:
            return None

        if batch.is_expired(self._clock()):
            batch.status = BatchStatus.TIMEOUT
            logger.warning(f"Batch {batch.id} timed out before dispatch")
            result = BatchResult(
                batch_id=batch.id,
                transactions=batch.transactions,
                status=BatchStatus.TIMEOUT,
                error="Deadline passed before dispatch",
                error_kind=ErrorKind.TIMEOUT,
            )
            return await self._finish(batch, result)

        batch.status = BatchStatus.PROCESSING

        try:
            result = await self.executor.process_batch(batch.transactions, batch_id=batch.id)
            batch.status = BatchStatus.COMPLETED if result.success else BatchStatus.FAILED
        except Exception as e:
            logger.error(f"Error processing batch {batch.id}: {e}")
            batch.status = BatchStatus.FAILED
            result = BatchResult(
                batch_id=batch.id,
                transactions=batch.transactions,
                failed_txs=len(batch.transactions),
                error=str(e),
                error_kind=ErrorKind.UNEXPECTED,
            )

        result.status = batch.status
        logger.info(f"Batch {batch.id} {batch.status.value}: {result}")
        return await self._finish(batch, result)

    async def _finish(self, batch: Batch, result: BatchResult) -> BatchResult:
        self._results[batch.id] = result
        await self.events.emit(BatchCompleted(result))
        return result

    def get_batch(self, batch_id: str) -> Optional[Batch]:
        return self._batches.get(batch_id)

    def queue_snapshot(self) -> List[Batch]:
        return self.queue.snapshot()

    def results(self) -> Dict[str, BatchResult]:
        return dict(self._results)

    def clear_queue(self) -> int:
        """Drop every queued batch. Returns the number removed."""
        removed = self.queue.clear()
        logger.info(f"Batch queue cleared ({len(removed)} batches)")
        return len(removed)

    @property
    def is_running(self) -> bool:
        return self._running

    def status(self) -> dict:
        return {
            "is_running": self._running,
            "queue_length": len(self.queue),
            "processed_batches": len(self._results),
            "total_batches": len(self._batches),
        }
