"""Launch Bundler - Fee estimation, batched submission and launch bundles."""

from .addressing import Create2TargetResolver, derive_salt
from .batch_executor import BatchExecutor
from .batch_queue import BatchDispatcher, PriorityBatchQueue
from .config import BundlerConfig, configure_logging
from .errors import BundleNotFoundError, BundlerError, ConfigurationError
from .events import BatchCompleted, BundleCompleted, EventBus, EventKind, RedisEventSink
from .gas import FeeEstimator
from .models import (
    Batch,
    BatchResult,
    BatchStatus,
    Bundle,
    BundleResult,
    BundleStatus,
    ErrorKind,
    Priority,
    SignerRef,
    TokenLaunchParams,
    Transaction,
    TxKind,
    TxStatus,
)
from .orchestrator import BundleOrchestrator

__all__ = [
    "Create2TargetResolver",
    "derive_salt",
    "BatchExecutor",
    "BatchDispatcher",
    "PriorityBatchQueue",
    "BundlerConfig",
    "configure_logging",
    "BundleNotFoundError",
    "BundlerError",
    "ConfigurationError",
    "BatchCompleted",
    "BundleCompleted",
    "EventBus",
    "EventKind",
    "RedisEventSink",
    "FeeEstimator",
    "Batch",
    "BatchResult",
    "BatchStatus",
    "Bundle",
    "BundleResult",
    "BundleStatus",
    "ErrorKind",
    "Priority",
    "SignerRef",
    "TokenLaunchParams",
    "Transaction",
    "TxKind",
    "TxStatus",
    "BundleOrchestrator",
]
