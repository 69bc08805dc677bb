"""Fee Estimator - Congestion-aware gas price and priority fee recommendations."""

from collections import deque
from decimal import Decimal
from typing import List, Optional
import logging
import statistics

import backoff

from .config import BundlerConfig
from .interfaces import LedgerProvider
from .models import (
    BundleGasPlan,
    FeeSample,
    FeeTrend,
    GWEI,
    Priority,
    TxKind,
    from_wei,
)

logger = logging.getLogger(__name__)


# Conservative values used when the provider cannot be read
FALLBACK_CONGESTION = 0.5
FALLBACK_BASE_FEE = 5 * GWEI
FALLBACK_PRIORITY_FEE = 1 * GWEI
FALLBACK_URGENT_FEE = 10 * GWEI

# Samples needed before volatility is trusted as a congestion signal
CONGESTION_WINDOW = 10
TREND_WINDOW = 5
TREND_THRESHOLD = 0.05

# (congestion above, multiplier); checked in order, first match wins
BASE_FEE_BANDS = ((0.8, Decimal("1.5")), (0.6, Decimal("1.2")))
BASE_FEE_LOW = (0.3, Decimal("0.9"))
PRIORITY_FEE_BANDS = ((0.8, Decimal("2.0")), (0.6, Decimal("1.5")))
PRIORITY_FEE_LOW = (0.3, Decimal("0.8"))
URGENT_EXTRA_BANDS = ((0.8, Decimal("1.3")), (0.6, Decimal("1.1")))

URGENCY_MULTIPLIERS = {
    TxKind.LAUNCH: Decimal("1.5"),
    TxKind.BUY: Decimal("1.2"),
}

# (congestion above, gwei above, level)
RECOMMENDATION_THRESHOLDS = (
    (0.8, 20, Priority.CRITICAL),
    (0.6, 10, Priority.HIGH),
    (0.3, 5, Priority.MEDIUM),
)


def _band(congestion: float, bands: tuple, low: Optional[tuple] = None) -> Decimal:
    """Pick the multiplier for a congestion level."""
    for threshold, multiplier in bands:
        if congestion > threshold:
            return multiplier
    if low is not None and congestion < low[0]:
        return low[1]
    return Decimal("1.0")


def scale_wei(value: int, *multipliers: Decimal) -> int:
    """Multiply an integer wei amount by decimal factors, truncating."""
    result = Decimal(value)
    for multiplier in multipliers:
        result *= multiplier
    return int(result)


def classify(gas_price: int, congestion: float) -> Priority:
    """Classify network conditions into a fee recommendation level."""
    gwei = from_wei(gas_price, GWEI)
    for congestion_limit, gwei_limit, level in RECOMMENDATION_THRESHOLDS:
        if congestion > congestion_limit or gwei > gwei_limit:
            return level
    return Priority.LOW


class FeeEstimator:
    """
    Recommends gas prices and priority fees from network fee data.

    Keeps a bounded history of fee samples and derives a congestion
    score from gas price volatility over the most recent samples.
    Higher congestion = higher multipliers on the network price.

    Every public recommendation falls back to a fixed conservative
    value when the provider cannot be read.
    """

    def __init__(
        self,
        rpc_client: LedgerProvider,
        config: BundlerConfig = None,
    ):
        """
        Initialize fee estimator.

        Args:
            rpc_client: Ledger RPC provider
            config: Bundler configuration

        Raises:
            ConfigurationError: if the configuration is invalid
        """
        self.rpc = rpc_client
        self.config = (config or BundlerConfig()).validate()
        self._history: deque = deque(maxlen=self.config.gas_price_history_size)

    @backoff.on_exception(
        backoff.expo,
        Exception,
        max_tries=3,
        on_backoff=lambda details: logger.warning(
            f"Fee data unavailable, retrying... attempt {details['tries']}"
        ),
    )
    async def initialize(self) -> FeeSample:
        """
        Seed the history with one sample.

        Unlike sample_network(), read failures propagate after the
        last retry so startup fails loudly.
        """
        fee_data = await self.rpc.get_fee_data()
        sample = self._record(fee_data)
        logger.info(
            f"Fee estimator initialized: {from_wei(sample.gas_price, GWEI)} gwei "
            f"({sample.recommendation.name})"
        )
        return sample

    async def sample_network(self) -> FeeSample:
        """
        Read current fee data and append a sample to the history.

        Returns:
            The new FeeSample, or an unrecorded fallback sample if the
            provider read failed
        """
        try:
            fee_data = await self.rpc.get_fee_data()
        except Exception as e:
            logger.error(f"Failed to sample network fees: {e}")
            return FeeSample(
                gas_price=FALLBACK_BASE_FEE,
                priority_fee=FALLBACK_PRIORITY_FEE,
                max_fee_per_gas=FALLBACK_BASE_FEE,
                congestion=FALLBACK_CONGESTION,
                recommendation=classify(FALLBACK_BASE_FEE, FALLBACK_CONGESTION),
            )
        return self._record(fee_data)

    async def refresh(self) -> FeeSample:
        """Refresh the fee history with a new network sample."""
        return await self.sample_network()

    def _record(self, fee_data: dict) -> FeeSample:
        gas_price = int(fee_data.get("gasPrice") or 0)
        congestion = self.congestion()
        sample = FeeSample(
            gas_price=gas_price,
            priority_fee=int(fee_data.get("maxPriorityFeePerGas") or 0),
            max_fee_per_gas=int(fee_data.get("maxFeePerGas") or 0),
            congestion=congestion,
            recommendation=classify(gas_price, congestion),
        )
        # deque maxlen evicts the oldest sample
        self._history.append(sample)
        return sample

    def congestion(self) -> float:
        """
        Estimate network congestion from recent gas price volatility.

        Returns:
            Score in [0, 1]; 0.5 when fewer than 10 samples exist
        """
        window = min(CONGESTION_WINDOW, self.config.gas_price_history_size)
        if len(self._history) < CONGESTION_WINDOW:
            return FALLBACK_CONGESTION

        try:
            prices = [float(s.gas_price) for s in list(self._history)[-window:]]
            mean = statistics.fmean(prices)
            if mean <= 0:
                return FALLBACK_CONGESTION
            volatility = statistics.pstdev(prices) / mean
            return max(0.0, min(volatility * 2, 1.0))
        except (statistics.StatisticsError, ValueError) as e:
            logger.error(f"Failed to compute congestion: {e}")
            return FALLBACK_CONGESTION

    def _clamp(self, price: int) -> int:
        return max(self.config.min_gas_price_wei, min(price, self.config.max_gas_price_wei))

    def base_fee_for(self, gas_price: int, congestion: float) -> int:
        """Apply the congestion band, buffer and limits to a network gas price."""
        multiplier = _band(congestion, BASE_FEE_BANDS, BASE_FEE_LOW)
        return self._clamp(scale_wei(gas_price, multiplier, self.config.gas_price_buffer))

    def priority_fee_for(self, priority_fee: int, congestion: float) -> int:
        """Apply the (steeper) congestion band and buffer to a priority fee."""
        multiplier = _band(congestion, PRIORITY_FEE_BANDS, PRIORITY_FEE_LOW)
        return scale_wei(priority_fee, multiplier, self.config.priority_fee_buffer)

    def urgent_fee_for(self, base_fee: int, congestion: float, kind: TxKind) -> int:
        """Scale a base recommendation by transaction urgency and congestion."""
        urgency = URGENCY_MULTIPLIERS[kind]
        extra = _band(congestion, URGENT_EXTRA_BANDS)
        return self._clamp(scale_wei(base_fee, urgency * extra))

    async def recommend_base_fee(self) -> int:
        """
        Recommend a gas price for a regular transaction.

        Returns:
            Gas price in wei within [MIN_GAS_PRICE, MAX_GAS_PRICE]
        """
        try:
            fee_data = await self.rpc.get_fee_data()
            current = int(fee_data.get("gasPrice") or 0)
        except Exception as e:
            logger.error(f"Error getting network gas price: {e}")
            return self._clamp(FALLBACK_BASE_FEE)

        if not self.config.enabled:
            return self._clamp(current)

        fee = self.base_fee_for(current, self.congestion())
        logger.debug(f"Recommended gas price: {from_wei(fee, GWEI)} gwei")
        return fee

    async def recommend_priority_fee(self) -> int:
        """
        Recommend a priority fee (tip) per gas.

        Returns:
            Priority fee in wei (not clamped to gas price limits)
        """
        try:
            fee_data = await self.rpc.get_fee_data()
            current = int(fee_data.get("maxPriorityFeePerGas") or 0)
        except Exception as e:
            logger.error(f"Error getting network priority fee: {e}")
            return FALLBACK_PRIORITY_FEE

        if not self.config.enabled:
            return current

        return self.priority_fee_for(current, self.congestion())

    async def recommend_urgent_fee(self, kind: TxKind) -> int:
        """
        Recommend a gas price for a time-critical launch or buy.

        Args:
            kind: LAUNCH (1.5x) or BUY (1.2x)

        Returns:
            Gas price in wei within [MIN_GAS_PRICE, MAX_GAS_PRICE]
        """
        try:
            fee_data = await self.rpc.get_fee_data()
            current = int(fee_data.get("gasPrice") or 0)
        except Exception as e:
            logger.error(f"Error getting urgent gas price: {e}")
            return self._clamp(FALLBACK_URGENT_FEE)

        congestion = self.congestion()
        if not self.config.enabled:
            # Raw network price replaces the congestion-adjusted base
            return self.urgent_fee_for(current, congestion, kind)

        return self.urgent_fee_for(self.base_fee_for(current, congestion), congestion, kind)

    def trend(self) -> FeeTrend:
        """
        Compare the first and last three of the last five samples.

        Returns:
            INCREASING / DECREASING beyond a 5% change, else STABLE
        """
        if len(self._history) < TREND_WINDOW:
            return FeeTrend.STABLE

        recent = [s.gas_price for s in list(self._history)[-TREND_WINDOW:]]
        first_avg = statistics.fmean(recent[:3])
        second_avg = statistics.fmean(recent[2:])
        if first_avg <= 0:
            return FeeTrend.STABLE

        change = (second_avg - first_avg) / first_avg
        if change > TREND_THRESHOLD:
            return FeeTrend.INCREASING
        if change < -TREND_THRESHOLD:
            return FeeTrend.DECREASING
        return FeeTrend.STABLE

    async def optimize_bundle_gas(
        self,
        launch_gas_limit: int,
        buy_gas_limit: int,
        wallet_count: int,
    ) -> BundleGasPlan:
        """
        Price a launch bundle of one launch and `wallet_count` buys.

        Args:
            launch_gas_limit: Gas limit of the launch transaction
            buy_gas_limit: Gas limit of each buy transaction
            wallet_count: Number of buy transactions

        Returns:
            BundleGasPlan with per-kind prices, totals and validator tips
        """
        congestion = self.congestion()
        launch_gas_price = await self.recommend_urgent_fee(TxKind.LAUNCH)
        buy_gas_price = await self.recommend_urgent_fee(TxKind.BUY)
        priority_fee = await self.recommend_priority_fee()

        total_gas_estimate = launch_gas_limit + buy_gas_limit * wallet_count
        total_gas_cost = (
            launch_gas_price * launch_gas_limit
            + buy_gas_price * buy_gas_limit * wallet_count
        )

        # +1 for the launch tx
        validator_tips = (
            self.config.validator_tip_wei * (wallet_count + 1)
            if self.config.validator_tips_enabled
            else 0
        )

        plan = BundleGasPlan(
            launch_gas_price=launch_gas_price,
            buy_gas_price=buy_gas_price,
            priority_fee=priority_fee,
            total_gas_estimate=total_gas_estimate,
            total_gas_cost=total_gas_cost,
            validator_tips=validator_tips,
            strategy=self._strategy(congestion, wallet_count),
        )

        logger.info(
            f"Bundle gas planned: {wallet_count} wallets | "
            f"{from_wei(plan.total_cost)} total cost | {plan.strategy}"
        )
        return plan

    async def estimate_bundle_cost(
        self,
        launch_gas_limit: int,
        buy_gas_limit: int,
        wallet_count: int,
    ) -> int:
        """Total bundle cost in wei (gas plus validator tips), 0 on failure."""
        try:
            plan = await self.optimize_bundle_gas(launch_gas_limit, buy_gas_limit, wallet_count)
            return plan.total_cost
        except Exception as e:
            logger.error(f"Error estimating bundle cost: {e}")
            return 0

    @staticmethod
    def _strategy(congestion: float, wallet_count: int) -> str:
        if congestion > 0.8:
            return "HIGH_CONGESTION_BUNDLE"
        elif wallet_count > 50:
            return "LARGE_BUNDLE_OPTIMIZATION"
        elif wallet_count > 20:
            return "MEDIUM_BUNDLE_OPTIMIZATION"
        else:
            return "STANDARD_BUNDLE_OPTIMIZATION"

    def history(self) -> List[FeeSample]:
        """Copy of the fee sample history, oldest first."""
        return list(self._history)

    @property
    def latest(self) -> Optional[FeeSample]:
        return self._history[-1] if self._history else None
