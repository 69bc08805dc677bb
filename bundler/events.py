"""Completion events and their delivery to subscribers."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List
import inspect
import json
import logging

import redis.asyncio as redis

from .interfaces import EventHandler
from .models import BatchResult, BundleResult, utcnow

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    """Kinds of notifications emitted by the core."""
    BUNDLE_COMPLETED = "bundle_completed"
    BATCH_COMPLETED = "batch_completed"


@dataclass
class BundleCompleted:
    """A bundle reached a terminal status."""

    result: BundleResult
    timestamp: datetime = field(default_factory=utcnow)
    kind: EventKind = EventKind.BUNDLE_COMPLETED

    def to_json(self) -> str:
        """Serialize to JSON for Redis."""
        r = self.result
        return json.dumps({
            "kind": self.kind.value,
            "timestamp": self.timestamp.isoformat(),
            "bundle_id": r.bundle_id,
            "status": r.status.value,
            "launch_success": r.launch_success,
            "total_buys": r.total_buys,
            "successful_buys": r.successful_buys,
            "failed_buys": r.failed_buys,
            "total_gas_used": str(r.total_gas_used),
            "total_gas_price": str(r.total_gas_price),
            "total_profit": str(r.total_profit),
            "launch_tx_hash": r.launch_tx_hash,
            "buy_tx_hashes": r.buy_tx_hashes,
            "block_number": r.block_number,
            "execution_time": r.execution_time,
            "error": r.error,
            "error_kind": r.error_kind.value if r.error_kind else None,
        })


@dataclass
class BatchCompleted:
    """A queued batch reached a terminal status."""

    result: BatchResult
    timestamp: datetime = field(default_factory=utcnow)
    kind: EventKind = EventKind.BATCH_COMPLETED

    def to_json(self) -> str:
        """Serialize to JSON for Redis."""
        r = self.result
        return json.dumps({
            "kind": self.kind.value,
            "timestamp": self.timestamp.isoformat(),
            "batch_id": r.batch_id,
            "status": r.status.value if r.status else None,
            "successful_txs": r.successful_txs,
            "failed_txs": r.failed_txs,
            "total_gas_used": str(r.total_gas_used),
            "total_gas_price": str(r.total_gas_price),
            "execution_time": r.execution_time,
            "error": r.error,
            "error_kind": r.error_kind.value if r.error_kind else None,
        })


class EventBus:
    """
    Callback registry per event kind.

    Handlers may be plain functions or coroutines. A failing handler is
    logged and skipped; the core never depends on delivery.
    """

    def __init__(self):
        self._handlers: Dict[EventKind, List[EventHandler]] = {kind: [] for kind in EventKind}

    def subscribe(self, kind: EventKind, handler: EventHandler) -> None:
        """Register a handler for an event kind."""
        self._handlers[kind].append(handler)

    def unsubscribe(self, kind: EventKind, handler: EventHandler) -> None:
        """Remove a previously registered handler."""
        if handler in self._handlers[kind]:
            self._handlers[kind].remove(handler)

    def on_bundle_completed(self, handler: EventHandler) -> None:
        self.subscribe(EventKind.BUNDLE_COMPLETED, handler)

    def on_batch_completed(self, handler: EventHandler) -> None:
        self.subscribe(EventKind.BATCH_COMPLETED, handler)

    async def emit(self, event) -> int:
        """
        Deliver an event to every handler of its kind.

        Returns:
            Number of handlers that accepted the event
        """
        delivered = 0
        for handler in list(self._handlers[event.kind]):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception as e:
                logger.error(f"Event handler failed for {event.kind.value}: {e}")
        return delivered


@dataclass
class RedisChannels:
    """Redis channel/key names for completion events."""

    # Pub/Sub channels
    BUNDLES: str = "bundler:bundles"
    BATCHES: str = "bundler:batches"

    # List keys for reliable consumption
    BUNDLE_QUEUE: str = "queue:bundles"
    BATCH_QUEUE: str = "queue:batches"


class RedisEventSink:
    """
    Publishes completion events to Redis for downstream consumers.

    Uses Pub/Sub for real-time streaming and Lists for queue-based
    processing. Attach with `sink.attach(bus)`.
    """

    def __init__(self, redis_client: redis.Redis, channels: RedisChannels = None):
        """
        Initialize the sink.

        Args:
            redis_client: Async Redis client instance
            channels: Channel/key names
        """
        self.redis = redis_client
        self.channels = channels or RedisChannels()

    @classmethod
    def from_url(cls, url: str) -> "RedisEventSink":
        """Create a sink backed by a new redis.asyncio client."""
        return cls(redis.from_url(url, decode_responses=True))

    def attach(self, bus: EventBus) -> None:
        """Subscribe this sink to every event kind on the bus."""
        bus.on_bundle_completed(self.publish)
        bus.on_batch_completed(self.publish)

    async def publish(self, event) -> None:
        """
        Publish one completion event.

        Args:
            event: BundleCompleted or BatchCompleted
        """
        if event.kind == EventKind.BUNDLE_COMPLETED:
            channel, queue = self.channels.BUNDLES, self.channels.BUNDLE_QUEUE
        else:
            channel, queue = self.channels.BATCHES, self.channels.BATCH_QUEUE

        message = event.to_json()
        await self.redis.publish(channel, message)
        await self.redis.lpush(queue, message)
        logger.debug(f"Published {event.kind.value} to {channel}")
