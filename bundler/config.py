"""Configuration for the bundler core."""

import logging
import os
from dataclasses import dataclass, field, fields
from decimal import Decimal
from typing import Any, Optional

from dotenv import load_dotenv

from .errors import ConfigurationError
from .interfaces import ConfigLookup
from .models import GWEI, to_wei

load_dotenv()

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


def _env_bool(key: str, default: bool) -> bool:
    raw = os.getenv(key)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(key: str, default: int) -> int:
    return int(os.getenv(key, str(default)))


def _env_decimal(key: str, default: str) -> Decimal:
    return Decimal(os.getenv(key, default))


@dataclass
class BundlerConfig:
    """
    Runtime configuration for fee estimation, batching and bundling.

    Field values default from environment variables named after the
    upper-cased field (e.g. MAX_BATCH_SIZE). Gas prices are in gwei,
    timeouts and delays in milliseconds, amounts in ether.
    """

    # Master switch for dynamic fee pricing
    enabled: bool = field(default_factory=lambda: _env_bool("ENABLED", True))

    # Batch processing
    max_batch_size: int = field(default_factory=lambda: _env_int("MAX_BATCH_SIZE", 10))
    batch_timeout: int = field(default_factory=lambda: _env_int("BATCH_TIMEOUT", 300_000))
    parallel_batches: int = field(default_factory=lambda: _env_int("PARALLEL_BATCHES", 3))
    retry_attempts: int = field(default_factory=lambda: _env_int("RETRY_ATTEMPTS", 3))
    retry_delay: int = field(default_factory=lambda: _env_int("RETRY_DELAY", 1_000))
    gas_price_increment: Decimal = field(
        default_factory=lambda: _env_decimal("GAS_PRICE_INCREMENT", "1.1")
    )
    priority_fee_increment: Decimal = field(
        default_factory=lambda: _env_decimal("PRIORITY_FEE_INCREMENT", "1.1")
    )
    group_delay: int = field(default_factory=lambda: _env_int("GROUP_DELAY", 100))
    dispatch_interval: float = field(
        default_factory=lambda: float(os.getenv("DISPATCH_INTERVAL", "1.0"))
    )
    default_gas_limit: int = field(default_factory=lambda: _env_int("DEFAULT_GAS_LIMIT", 200_000))

    # Fee estimation
    gas_price_buffer: Decimal = field(default_factory=lambda: _env_decimal("GAS_PRICE_BUFFER", "1.1"))
    priority_fee_buffer: Decimal = field(
        default_factory=lambda: _env_decimal("PRIORITY_FEE_BUFFER", "1.2")
    )
    max_gas_price: Decimal = field(default_factory=lambda: _env_decimal("MAX_GAS_PRICE", "20"))
    min_gas_price: Decimal = field(default_factory=lambda: _env_decimal("MIN_GAS_PRICE", "1"))
    gas_price_history_size: int = field(
        default_factory=lambda: _env_int("GAS_PRICE_HISTORY_SIZE", 100)
    )
    validator_tips_enabled: bool = field(
        default_factory=lambda: _env_bool("VALIDATOR_TIPS_ENABLED", True)
    )
    validator_tip_amount: Decimal = field(
        default_factory=lambda: _env_decimal("VALIDATOR_TIP_AMOUNT", "0.001")
    )

    # Bundle construction
    launch_gas_limit: int = field(default_factory=lambda: _env_int("LAUNCH_GAS_LIMIT", 500_000))
    buy_gas_limit: int = field(default_factory=lambda: _env_int("BUY_GAS_LIMIT", 200_000))
    buy_amount: Decimal = field(default_factory=lambda: _env_decimal("BUY_AMOUNT", "0.01"))
    bundle_group_size: int = field(default_factory=lambda: _env_int("BUNDLE_GROUP_SIZE", 10))
    profit_estimate_rate: Decimal = field(
        default_factory=lambda: _env_decimal("PROFIT_ESTIMATE_RATE", "0.1")
    )

    @classmethod
    def from_lookup(cls, get: ConfigLookup) -> "BundlerConfig":
        """
        Build a config from a typed key lookup.

        Args:
            get: Callable taking (KEY, default) and returning the value

        Returns:
            BundlerConfig with every recognized key resolved through `get`
        """
        defaults = cls()
        values = {}
        for f in fields(cls):
            default = getattr(defaults, f.name)
            raw = get(f.name.upper(), default)
            values[f.name] = _coerce(raw, default)
        return cls(**values)

    @property
    def max_gas_price_wei(self) -> int:
        return to_wei(self.max_gas_price, GWEI)

    @property
    def min_gas_price_wei(self) -> int:
        return to_wei(self.min_gas_price, GWEI)

    @property
    def validator_tip_wei(self) -> int:
        return to_wei(self.validator_tip_amount)

    @property
    def buy_amount_wei(self) -> int:
        return to_wei(self.buy_amount)

    def validate(self) -> "BundlerConfig":
        """
        Check the configuration for values the core cannot run with.

        Raises:
            ConfigurationError: on the first invalid value found
        """
        if self.min_gas_price > self.max_gas_price:
            raise ConfigurationError(
                f"MIN_GAS_PRICE ({self.min_gas_price}) exceeds MAX_GAS_PRICE ({self.max_gas_price})"
            )
        if self.min_gas_price < 0:
            raise ConfigurationError("MIN_GAS_PRICE must not be negative")
        for name in (
            "max_batch_size",
            "parallel_batches",
            "gas_price_history_size",
            "bundle_group_size",
            "batch_timeout",
        ):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name.upper()} must be positive")
        for name in ("retry_attempts", "retry_delay", "group_delay"):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name.upper()} must not be negative")
        for name in ("gas_price_increment", "priority_fee_increment"):
            if getattr(self, name) < 1:
                raise ConfigurationError(f"{name.upper()} must be at least 1")
        return self


def _coerce(raw: Any, default: Any) -> Any:
    """Coerce a looked-up value to the type of its default."""
    if raw is None:
        return default
    if isinstance(default, bool):
        if isinstance(raw, str):
            return raw.strip().lower() in ("1", "true", "yes", "on")
        return bool(raw)
    if isinstance(default, Decimal):
        return Decimal(str(raw))
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return raw


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging in the project-wide format."""
    level = level or os.getenv("LOG_LEVEL", "INFO")
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
    )


# Default configuration
DEFAULT_CONFIG = BundlerConfig()
