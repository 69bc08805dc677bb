"""Tests for the priority batch queue and dispatcher."""

import asyncio
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

from bundler.batch_queue import BatchDispatcher, PriorityBatchQueue
from bundler.config import BundlerConfig
from bundler.events import BatchCompleted, EventBus
from bundler.models import (
    Batch,
    BatchResult,
    BatchStatus,
    ErrorKind,
    Priority,
    SignerRef,
    Transaction,
)


NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def make_batch(priority=Priority.MEDIUM, created_at=NOW, deadline=None, size=1):
    """Build a batch of `size` placeholder transactions."""
    return Batch(
        transactions=[
            Transaction(payload={"to": "0xtarget"}, signer=SignerRef("0xsigner"))
            for _ in range(size)
        ],
        priority=priority,
        created_at=created_at,
        deadline=deadline or NOW + timedelta(minutes=5),
    )


def succeed(transactions, batch_id=None):
    return BatchResult(
        batch_id=batch_id,
        transactions=transactions,
        successful_txs=len(transactions),
    )


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def mock_executor():
    """Mock executor confirming every transaction."""
    executor = AsyncMock()
    executor.process_batch = AsyncMock(side_effect=succeed)
    return executor


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def config():
    return BundlerConfig(batch_timeout=60_000, dispatch_interval=0.01)


@pytest.fixture
def dispatcher(mock_executor, config, events):
    """Dispatcher driven manually through dispatch_tick()."""
    return BatchDispatcher(mock_executor, config, events, clock=lambda: NOW, auto_start=False)


def dispatched_ids(mock_executor):
    return [c.kwargs["batch_id"] for c in mock_executor.process_batch.call_args_list]


# ============================================================================
# Unit Tests - PriorityBatchQueue
# ============================================================================

class TestPriorityBatchQueue:
    """Tests for queue ordering."""

    def test_priority_order(self):
        queue = PriorityBatchQueue()
        low, high, medium = (
            make_batch(Priority.LOW),
            make_batch(Priority.HIGH),
            make_batch(Priority.MEDIUM),
        )
        for batch in (low, high, medium):
            queue.push(batch)

        assert [queue.pop(), queue.pop(), queue.pop()] == [high, medium, low]
        assert queue.pop() is None

    def test_created_at_breaks_ties(self):
        queue = PriorityBatchQueue()
        later = make_batch(created_at=NOW + timedelta(seconds=1))
        earlier = make_batch(created_at=NOW)
        queue.push(later)
        queue.push(earlier)

        assert queue.pop() is earlier

    def test_fifo_for_identical_keys(self):
        queue = PriorityBatchQueue()
        batches = [make_batch() for _ in range(5)]
        for batch in batches:
            queue.push(batch)

        assert queue.snapshot() == batches
        assert [queue.pop() for _ in batches] == batches

    def test_critical_first(self):
        queue = PriorityBatchQueue()
        queue.push(make_batch(Priority.HIGH))
        critical = make_batch(Priority.CRITICAL, created_at=NOW + timedelta(hours=1))
        queue.push(critical)

        assert queue.peek() is critical

    def test_snapshot_does_not_consume(self):
        queue = PriorityBatchQueue()
        queue.push(make_batch())

        queue.snapshot()

        assert len(queue) == 1

    def test_clear(self):
        queue = PriorityBatchQueue()
        queue.push(make_batch())
        queue.push(make_batch())

        removed = queue.clear()

        assert len(removed) == 2
        assert len(queue) == 0


# ============================================================================
# Unit Tests - BatchDispatcher
# ============================================================================

class TestDispatchTick:
    """Tests for single dispatch ticks."""

    @pytest.mark.asyncio
    async def test_dispatch_order(self, dispatcher, mock_executor):
        low = dispatcher.enqueue(make_batch(Priority.LOW))
        high = dispatcher.enqueue(make_batch(Priority.HIGH))
        medium = dispatcher.enqueue(make_batch(Priority.MEDIUM))

        for _ in range(3):
            await dispatcher.dispatch_tick()

        assert dispatched_ids(mock_executor) == [high, medium, low]

    @pytest.mark.asyncio
    async def test_one_batch_per_tick(self, dispatcher, mock_executor):
        dispatcher.enqueue(make_batch())
        dispatcher.enqueue(make_batch())

        await dispatcher.dispatch_tick()

        assert mock_executor.process_batch.await_count == 1
        assert len(dispatcher.queue_snapshot()) == 1

    @pytest.mark.asyncio
    async def test_expired_batch_times_out(self, dispatcher, mock_executor):
        batch = make_batch(deadline=NOW - timedelta(milliseconds=1), size=3)
        dispatcher.enqueue(batch)

        result = await dispatcher.dispatch_tick()

        assert batch.status == BatchStatus.TIMEOUT
        assert result.status == BatchStatus.TIMEOUT
        assert result.error_kind == ErrorKind.TIMEOUT
        assert result.successful_txs == 0
        mock_executor.process_batch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_deadline_equal_to_now_still_runs(self, dispatcher, mock_executor):
        dispatcher.enqueue(make_batch(deadline=NOW))

        result = await dispatcher.dispatch_tick()

        assert result.status == BatchStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_empty_queue_is_noop(self, dispatcher, mock_executor):
        assert await dispatcher.dispatch_tick() is None
        mock_executor.process_batch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_completed_when_any_succeeds(self, dispatcher):
        batch = make_batch()
        dispatcher.enqueue(batch)

        result = await dispatcher.dispatch_tick()

        assert batch.status == BatchStatus.COMPLETED
        assert result.status == BatchStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_failed_when_none_succeed(self, dispatcher, mock_executor):
        mock_executor.process_batch = AsyncMock(side_effect=lambda txs, batch_id=None: BatchResult(
            batch_id=batch_id, transactions=txs, failed_txs=len(txs),
        ))
        batch = make_batch(size=2)
        dispatcher.enqueue(batch)

        await dispatcher.dispatch_tick()

        assert batch.status == BatchStatus.FAILED

    @pytest.mark.asyncio
    async def test_executor_error_fails_batch(self, dispatcher, mock_executor):
        mock_executor.process_batch = AsyncMock(side_effect=RuntimeError("boom"))
        batch = make_batch(size=2)
        dispatcher.enqueue(batch)

        result = await dispatcher.dispatch_tick()

        assert batch.status == BatchStatus.FAILED
        assert result.error_kind == ErrorKind.UNEXPECTED
        assert result.failed_txs == 2

    @pytest.mark.asyncio
    async def test_submit_sets_deadline(self, dispatcher):
        batch_id = dispatcher.submit([Transaction()], Priority.HIGH)

        batch = dispatcher.get_batch(batch_id)
        assert batch.priority == Priority.HIGH
        assert batch.status == BatchStatus.QUEUED
        assert batch.deadline == NOW + timedelta(seconds=60)

    @pytest.mark.asyncio
    async def test_completion_events(self, dispatcher, events):
        received = []
        events.on_batch_completed(received.append)
        dispatcher.enqueue(make_batch())
        dispatcher.enqueue(make_batch(deadline=NOW - timedelta(seconds=1)))

        await dispatcher.dispatch_tick()
        await dispatcher.dispatch_tick()

        assert len(received) == 2
        assert all(isinstance(e, BatchCompleted) for e in received)
        assert {e.result.status for e in received} == {BatchStatus.COMPLETED, BatchStatus.TIMEOUT}

    @pytest.mark.asyncio
    async def test_status_and_results(self, dispatcher):
        batch_id = dispatcher.enqueue(make_batch())
        dispatcher.enqueue(make_batch())

        await dispatcher.dispatch_tick()

        status = dispatcher.status()
        assert status["queue_length"] == 1
        assert status["processed_batches"] == 1
        assert status["total_batches"] == 2
        assert status["is_running"] is False
        assert batch_id in dispatcher.results()

    def test_clear_queue(self, dispatcher):
        dispatcher.enqueue(make_batch())
        dispatcher.enqueue(make_batch())

        assert dispatcher.clear_queue() == 2
        assert dispatcher.queue_snapshot() == []


# ============================================================================
# Integration Tests - Dispatch loop
# ============================================================================

class TestDispatchLoop:
    """Tests for the background dispatch loop."""

    @pytest.mark.asyncio
    async def test_enqueue_starts_loop(self, mock_executor, config, events):
        done = asyncio.Event()
        events.on_batch_completed(lambda event: done.set())
        dispatcher = BatchDispatcher(mock_executor, config, events)

        dispatcher.enqueue(make_batch(deadline=datetime.now(timezone.utc) + timedelta(minutes=1)))
        await asyncio.wait_for(done.wait(), timeout=1)

        assert dispatcher.is_running
        await dispatcher.stop()
        assert not dispatcher.is_running

    @pytest.mark.asyncio
    async def test_batches_processed_serially(self, config, events):
        state = {"in_flight": 0, "peak": 0}
        finished = []
        all_done = asyncio.Event()

        async def slow(transactions, batch_id=None):
            state["in_flight"] += 1
            state["peak"] = max(state["peak"], state["in_flight"])
            await asyncio.sleep(0.01)
            state["in_flight"] -= 1
            return succeed(transactions, batch_id)

        def on_done(event):
            finished.append(event.result.batch_id)
            if len(finished) == 3:
                all_done.set()

        executor = AsyncMock()
        executor.process_batch = AsyncMock(side_effect=slow)
        events.on_batch_completed(on_done)
        dispatcher = BatchDispatcher(executor, config, events)

        for _ in range(3):
            dispatcher.submit([Transaction()])
        await asyncio.wait_for(all_done.wait(), timeout=2)
        await dispatcher.stop()

        assert state["peak"] == 1
        assert len(finished) == 3

    @pytest.mark.asyncio
    async def test_stopped_dispatcher_does_not_drain(self, mock_executor, config, events):
        dispatcher = BatchDispatcher(mock_executor, config, events)
        dispatcher.start()
        await dispatcher.stop()

        dispatcher.submit([Transaction()])
        await asyncio.sleep(0.05)

        assert not dispatcher.is_running
        mock_executor.process_batch.assert_not_awaited()
        assert len(dispatcher.queue_snapshot()) == 1

    @pytest.mark.asyncio
    async def test_stop_lets_in_flight_batch_finish(self, config, events):
        started = asyncio.Event()
        release = asyncio.Event()

        async def blocking(transactions, batch_id=None):
            started.set()
            await release.wait()
            return succeed(transactions, batch_id)

        executor = AsyncMock()
        executor.process_batch = AsyncMock(side_effect=blocking)
        dispatcher = BatchDispatcher(executor, config, events)
        batch_id = dispatcher.submit([Transaction()])

        await asyncio.wait_for(started.wait(), timeout=1)
        stopping = asyncio.create_task(dispatcher.stop())
        await asyncio.sleep(0)
        release.set()
        await asyncio.wait_for(stopping, timeout=1)

        assert dispatcher.get_batch(batch_id).status == BatchStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_restart_without_waiting_keeps_batches_serial(self, config, events):
        state = {"in_flight": 0, "peak": 0}
        finished = []
        all_done = asyncio.Event()
        first_started = asyncio.Event()

        async def slow(transactions, batch_id=None):
            state["in_flight"] += 1
            state["peak"] = max(state["peak"], state["in_flight"])
            first_started.set()
            await asyncio.sleep(0.02)
            state["in_flight"] -= 1
            return succeed(transactions, batch_id)

        def on_done(event):
            finished.append(event.result.batch_id)
            if len(finished) == 6:
                all_done.set()

        executor = AsyncMock()
        executor.process_batch = AsyncMock(side_effect=slow)
        events.on_batch_completed(on_done)
        dispatcher = BatchDispatcher(executor, config, events)

        for _ in range(6):
            dispatcher.submit([Transaction()])
        await asyncio.wait_for(first_started.wait(), timeout=1)

        await dispatcher.stop(wait=False)
        dispatcher.start()

        await asyncio.wait_for(all_done.wait(), timeout=2)
        await dispatcher.stop()

        assert state["peak"] == 1
        assert len(finished) == 6
