"""Core data model for batches, bundles and fee samples."""

from dataclasses import dataclass, field
from decimal import Decimal
from datetime import datetime, timezone
from typing import Optional, List
from enum import Enum, IntEnum
import uuid


GWEI = 10**9
ETHER = 10**18


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_wei(amount, unit: int = ETHER) -> int:
    """Convert a decimal amount (ether or gwei) into integer wei."""
    return int(Decimal(str(amount)) * unit)


def from_wei(amount: int, unit: int = ETHER) -> Decimal:
    """Convert integer wei into a decimal amount of the given unit."""
    return Decimal(amount) / Decimal(unit)


class Priority(IntEnum):
    """Batch priority, also used as the fee recommendation level."""
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4


class TxKind(str, Enum):
    """Purpose of a transaction, drives the urgency multiplier."""
    LAUNCH = "launch"
    BUY = "buy"


class TxStatus(str, Enum):
    """Lifecycle of a single transaction."""
    PENDING = "pending"
    SENT = "sent"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    RETRY = "retry"


class BatchStatus(str, Enum):
    """Lifecycle of a queued batch."""
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"


class BundleStatus(str, Enum):
    """Lifecycle of a launch bundle."""
    PENDING = "pending"
    LAUNCHING = "launching"
    BUYING = "buying"
    COMPLETED = "completed"
    FAILED = "failed"


class FeeTrend(str, Enum):
    """Direction of recent network gas prices."""
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


class ErrorKind(str, Enum):
    """Why an operation did not succeed."""
    VALIDATION = "validation"
    SUBMISSION = "submission"
    CONFIRMATION = "confirmation"
    TIMEOUT = "timeout"
    GROUP = "group"
    CONFIGURATION = "configuration"
    NOT_FOUND = "not_found"
    UNEXPECTED = "unexpected"


@dataclass(frozen=True)
class FeeSample:
    """One observation of network fee levels."""

    gas_price: int
    priority_fee: int
    max_fee_per_gas: int
    congestion: float
    recommendation: Priority
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class SignerRef:
    """Reference to an account held by the signer provider (never a key)."""

    address: str
    key_ref: str = ""


@dataclass
class Transaction:
    """A transaction tracked through submission, retry and confirmation."""

    payload: dict = field(default_factory=dict)  # to, value, gas_limit, data
    signer: Optional[SignerRef] = None
    id: str = field(default_factory=lambda: f"tx_{uuid.uuid4().hex[:12]}")
    kind: Optional[TxKind] = None
    nonce: Optional[int] = None
    gas_price: int = 0
    priority_fee: int = 0
    max_fee_per_gas: int = 0
    status: TxStatus = TxStatus.PENDING
    retry_count: int = 0
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
    gas_used: Optional[int] = None

    @property
    def to(self) -> Optional[str]:
        return self.payload.get("to")

    @property
    def value(self) -> int:
        return int(self.payload.get("value") or 0)

    def gas_limit(self, default: int = 200_000) -> int:
        return int(self.payload.get("gas_limit") or default)

    @property
    def is_terminal(self) -> bool:
        return self.status in (TxStatus.CONFIRMED, TxStatus.FAILED)

    def to_request(self) -> dict:
        """Build the raw transaction handed to the signer provider."""
        request = {
            "from": self.signer.address if self.signer else None,
            "to": self.to,
            "value": self.value,
            "data": self.payload.get("data", "0x"),
            "gas": self.gas_limit(),
            "gasPrice": self.gas_price,
            "maxFeePerGas": self.max_fee_per_gas,
            "maxPriorityFeePerGas": self.priority_fee,
            "nonce": self.nonce,
        }
        return request

    def apply_request(self, request: dict) -> None:
        """Copy fee fields rewritten by a protection transform back onto the tx."""
        if request.get("gasPrice"):
            self.gas_price = int(request["gasPrice"])
        if request.get("maxFeePerGas"):
            self.max_fee_per_gas = int(request["maxFeePerGas"])
        if request.get("maxPriorityFeePerGas"):
            self.priority_fee = int(request["maxPriorityFeePerGas"])


@dataclass
class TxOutcome:
    """Result of one submission attempt."""

    success: bool
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
    gas_used: int = 0
    gas_price: int = 0
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    nonce_consumed: bool = False


@dataclass
class Batch:
    """A group of transactions submitted under one priority and deadline."""

    transactions: List[Transaction]
    deadline: datetime
    priority: Priority = Priority.MEDIUM
    id: str = field(default_factory=lambda: f"batch_{uuid.uuid4().hex[:12]}")
    created_at: datetime = field(default_factory=utcnow)
    status: BatchStatus = BatchStatus.QUEUED

    def is_expired(self, now: datetime) -> bool:
        return now > self.deadline


@dataclass
class BatchResult:
    """Aggregate outcome of processing one batch."""

    batch_id: str
    transactions: List[Transaction] = field(default_factory=list)
    successful_txs: int = 0
    failed_txs: int = 0
    total_gas_used: int = 0
    total_gas_price: int = 0
    execution_time: float = 0.0
    status: Optional[BatchStatus] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    @property
    def success(self) -> bool:
        return self.successful_txs > 0

    def __str__(self) -> str:
        total = self.successful_txs + self.failed_txs
        if self.error:
            return f"Batch {self.batch_id}: FAILED ({self.error})"
        return f"Batch {self.batch_id}: {self.successful_txs}/{total} successful"


@dataclass
class TokenLaunchParams:
    """Parameters of a token launch on the launch platform."""

    name: str
    symbol: str
    total_supply: int
    liquidity: int  # seed liquidity in wei, sent as launch tx value
    description: str = ""
    image: str = ""
    website: str = ""
    twitter: str = ""
    telegram: str = ""
    category: str = ""
    salt: Optional[str] = None

    def canonical(self) -> tuple:
        """Ordered field values used for content-addressed derivations."""
        return (
            self.name,
            self.symbol,
            int(self.total_supply),
            self.description,
            self.image,
            self.website,
            self.twitter,
            self.telegram,
            self.category,
            int(self.liquidity),
        )


@dataclass
class BundleGasPlan:
    """Gas pricing plan for a launch bundle."""

    launch_gas_price: int
    buy_gas_price: int
    priority_fee: int
    total_gas_estimate: int
    total_gas_cost: int
    validator_tips: int
    strategy: str

    @property
    def total_cost(self) -> int:
        return self.total_gas_cost + self.validator_tips


@dataclass
class Bundle:
    """One launch transaction plus its wave of dependent buys."""

    launch_tx: Transaction
    buy_txs: List[Transaction]
    wallets: List[SignerRef]
    token_address: str
    salt: str
    id: str = field(default_factory=lambda: f"bundle_{uuid.uuid4().hex[:12]}")
    status: BundleStatus = BundleStatus.PENDING
    gas_plan: Optional[BundleGasPlan] = None
    launch_tx_hash: Optional[str] = None
    buy_tx_hashes: List[str] = field(default_factory=list)
    block_number: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class BundleResult:
    """Aggregate outcome of executing a bundle."""

    bundle_id: str
    status: BundleStatus
    launch_success: bool = False
    total_buys: int = 0
    successful_buys: int = 0
    failed_buys: int = 0
    total_gas_used: int = 0
    total_gas_price: int = 0
    total_profit: Decimal = Decimal("0")
    launch_tx_hash: Optional[str] = None
    buy_tx_hashes: List[str] = field(default_factory=list)
    block_number: Optional[int] = None
    execution_time: float = 0.0
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    @property
    def success(self) -> bool:
        return self.status == BundleStatus.COMPLETED

    @property
    def buy_success(self) -> bool:
        return self.successful_buys > 0

    def __str__(self) -> str:
        if self.success:
            return (
                f"Bundle {self.bundle_id}: SUCCESS "
                f"{self.successful_buys}/{self.total_buys} buys"
            )
        return f"Bundle {self.bundle_id}: FAILED ({self.error or 'no successful buys'})"
