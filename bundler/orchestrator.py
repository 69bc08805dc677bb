"""Bundle Orchestrator - Token launch followed by a wave of protected buys."""

from decimal import Decimal
from typing import Dict, List, Optional
import asyncio
import logging
import time

from .addressing import derive_salt
from .batch_executor import BatchExecutor
from .config import BundlerConfig
from .errors import BundleNotFoundError, BundlerError, ConfigurationError
from .events import BundleCompleted, EventBus
from .gas import FeeEstimator
from .interfaces import ProtectionService, TargetResolver
from .models import (
    Bundle,
    BundleResult,
    BundleStatus,
    ErrorKind,
    SignerRef,
    TokenLaunchParams,
    Transaction,
    TxKind,
    TxOutcome,
    TxStatus,
)

logger = logging.getLogger(__name__)


class BundleOrchestrator:
    """
    Launches a token and buys it from every configured wallet.

    Bundle lifecycle:
        PENDING → LAUNCHING → BUYING → COMPLETED | FAILED
        LAUNCHING → FAILED when the launch is not confirmed

    Buys are built before the launch against the predicted token
    address, and are only submitted once the launch is CONFIRMED.
    Every submission goes through the protection service; if it fails
    the unmodified transaction is sent.

    Usage:
        bundle_id = await orchestrator.create_bundle(params)
        result = await orchestrator.execute_bundle(bundle_id)
    """

    def __init__(
        self,
        fee_estimator: FeeEstimator,
        executor: BatchExecutor,
        protection: ProtectionService,
        target_resolver: TargetResolver,
        creator: SignerRef,
        wallets: List[SignerRef],
        events: EventBus = None,
        config: BundlerConfig = None,
    ):
        """
        Initialize the bundle orchestrator.

        Args:
            fee_estimator: Fee recommendations for launch and buy transactions
            executor: Submits transactions and awaits receipts
            protection: MEV-protection transform
            target_resolver: Launch platform bindings
            creator: Account that sends the launch transaction
            wallets: Accounts that each send one buy
            events: Event bus receiving BundleCompleted notifications
            config: Bundler configuration

        Raises:
            ConfigurationError: if a wallet address appears more than once
        """
        addresses = [w.address.lower() for w in wallets]
        duplicates = sorted({a for a in addresses if addresses.count(a) > 1})
        if duplicates:
            # Concurrent buys from one signer would share a nonce
            raise ConfigurationError(f"Duplicate buy wallets: {', '.join(duplicates)}")

        self.fees = fee_estimator
        self.executor = executor
        self.protection = protection
        self.resolver = target_resolver
        self.creator = creator
        self.wallets = list(wallets)
        self.events = events or EventBus()
        self.config = (config or BundlerConfig()).validate()

        self._bundles: Dict[str, Bundle] = {}
        self._results: Dict[str, BundleResult] = {}

    async def create_bundle(self, params: TokenLaunchParams) -> str:
        """
        Build a launch bundle and store it as PENDING.

        Args:
            params: Token launch parameters

        Returns:
            The new bundle id

        Raises:
            BundlerError: if the bundle cannot be built
        """
        logger.info(f"📦 Creating launch bundle for token: {params.symbol}")

        try:
            salt = params.salt or derive_salt(params)
            token_address = self.resolver.predict_token_address(params, salt)

            launch_gas_price = await self.fees.recommend_urgent_fee(TxKind.LAUNCH)
            buy_gas_price = await self.fees.recommend_urgent_fee(TxKind.BUY)
            priority_fee = await self.fees.recommend_priority_fee()

            launch_tx = Transaction(
                payload={
                    "to": self.resolver.launch_target(),
                    "value": params.liquidity,
                    "gas_limit": self.config.launch_gas_limit,
                    "data": self.resolver.encode_launch(params),
                },
                signer=self.creator,
                kind=TxKind.LAUNCH,
                gas_price=launch_gas_price,
                priority_fee=priority_fee,
            )

            buy_amount = self.config.buy_amount_wei
            buy_txs = [
                Transaction(
                    payload={
                        "to": token_address,
                        "value": buy_amount,
                        "gas_limit": self.config.buy_gas_limit,
                        "data": self.resolver.encode_buy(token_address, buy_amount),
                    },
                    signer=wallet,
                    kind=TxKind.BUY,
                    gas_price=buy_gas_price,
                    priority_fee=priority_fee,
                )
                for wallet in self.wallets
            ]

            gas_plan = await self.fees.optimize_bundle_gas(
                self.config.launch_gas_limit,
                self.config.buy_gas_limit,
                len(self.wallets),
            )
        except Exception as e:
            logger.error(f"❌ Error creating launch bundle: {e}")
            raise BundlerError(f"Failed to create bundle for {params.symbol}: {e}") from e

        bundle = Bundle(
            launch_tx=launch_tx,
            buy_txs=buy_txs,
            wallets=list(self.wallets),
            token_address=token_address,
            salt=salt,
            gas_plan=gas_plan,
        )
        self._bundles[bundle.id] = bundle

        logger.info(
            f"✅ Launch bundle {bundle.id} created: token {token_address} | "
            f"{len(buy_txs)} wallets"
        )
        return bundle.id

    async def execute_bundle(self, bundle_id: str) -> BundleResult:
        """
        Submit the launch, then the buys once the launch is confirmed.

        Args:
            bundle_id: Id returned by create_bundle()

        Returns:
            BundleResult; failures are reported, never raised
        """
        bundle = self._bundles.get(bundle_id)
        if bundle is None:
            error = BundleNotFoundError(bundle_id)
            logger.error(str(error))
            return BundleResult(
                bundle_id=bundle_id,
                status=BundleStatus.FAILED,
                error=str(error),
                error_kind=ErrorKind.NOT_FOUND,
            )

        if bundle.status != BundleStatus.PENDING:
            if bundle_id in self._results:
                return self._results[bundle_id]
            return BundleResult(
                bundle_id=bundle_id,
                status=bundle.status,
                error=f"Bundle {bundle_id} is already {bundle.status.value}",
                error_kind=ErrorKind.VALIDATION,
            )

        logger.info(f"🚀 Executing launch bundle {bundle_id}")
        started = time.monotonic()

        try:
            bundle.status = BundleStatus.LAUNCHING
            launch = await self.executor.submit_once(bundle.launch_tx, transform=self._protect)

            if not launch.success or bundle.launch_tx.status != TxStatus.CONFIRMED:
                bundle.status = BundleStatus.FAILED
                logger.warning(f"Launch transaction failed for bundle {bundle_id}: {launch.error}")
                result = BundleResult(
                    bundle_id=bundle_id,
                    status=BundleStatus.FAILED,
                    total_buys=len(bundle.buy_txs),
                    launch_tx_hash=launch.tx_hash,
                    execution_time=time.monotonic() - started,
                    error=f"Launch transaction failed: {launch.error}",
                    error_kind=launch.error_kind or ErrorKind.CONFIRMATION,
                )
                return await self._finish(bundle, result)

            bundle.status = BundleStatus.BUYING
            bundle.launch_tx_hash = launch.tx_hash
            bundle.block_number = launch.block_number

            outcomes = await self._execute_buys(bundle)

            successful = [o for o in outcomes if o.success]
            bundle.buy_tx_hashes = [o.tx_hash for o in outcomes if o.tx_hash]
            bundle.status = BundleStatus.COMPLETED if successful else BundleStatus.FAILED

            result = BundleResult(
                bundle_id=bundle_id,
                status=bundle.status,
                launch_success=True,
                total_buys=len(bundle.buy_txs),
                successful_buys=len(successful),
                failed_buys=len(outcomes) - len(successful),
                total_gas_used=launch.gas_used + sum(o.gas_used for o in successful),
                total_gas_price=launch.gas_price + sum(o.gas_price for o in successful),
                total_profit=self._estimate_profit(len(successful)),
                launch_tx_hash=launch.tx_hash,
                buy_tx_hashes=list(bundle.buy_tx_hashes),
                block_number=launch.block_number,
                execution_time=time.monotonic() - started,
                error=None if successful else "No buy transactions succeeded",
            )

            logger.info(
                f"✅ Bundle {bundle_id} executed: "
                f"{result.successful_buys}/{result.total_buys} buys successful"
            )
            return await self._finish(bundle, result)

        except Exception as e:
            logger.error(f"❌ Error executing bundle {bundle_id}: {e}")
            bundle.status = BundleStatus.FAILED
            result = BundleResult(
                bundle_id=bundle_id,
                status=BundleStatus.FAILED,
                execution_time=time.monotonic() - started,
                error=str(e),
                error_kind=ErrorKind.UNEXPECTED,
            )
            return await self._finish(bundle, result)

    async def _execute_buys(self, bundle: Bundle) -> List[TxOutcome]:
        """Submit buys in groups of BUNDLE_GROUP_SIZE with a pause between groups."""
        logger.info(f"🛒 Executing {len(bundle.buy_txs)} buy transactions...")

        group_size = self.config.bundle_group_size
        outcomes: List[TxOutcome] = []

        for start in range(0, len(bundle.buy_txs), group_size):
            group = bundle.buy_txs[start:start + group_size]
            results = await asyncio.gather(
                *(self.executor.submit_once(tx, transform=self._protect) for tx in group),
                return_exceptions=True,
            )

            for tx, result in zip(group, results):
                if isinstance(result, Exception):
                    logger.error(f"Error executing buy transaction {tx.id}: {result}")
                    tx.status = TxStatus.FAILED
                    result = TxOutcome(
                        success=False,
                        tx_hash=tx.tx_hash,
                        error=str(result),
                        error_kind=ErrorKind.UNEXPECTED,
                    )
                outcomes.append(result)

            if start + group_size < len(bundle.buy_txs):
                await asyncio.sleep(self.config.group_delay / 1000)

        return outcomes

    async def _protect(self, request: dict) -> dict:
        try:
            return await self.protection.protect(request)
        except Exception as e:
            logger.warning(f"MEV protection failed, sending unprotected: {e}")
            return request

    def _estimate_profit(self, successful_buys: int) -> Decimal:
        per_buy = self.config.buy_amount * self.config.profit_estimate_rate
        return per_buy * successful_buys

    async def _finish(self, bundle: Bundle, result: BundleResult) -> BundleResult:
        self._results[bundle.id] = result
        await self.events.emit(BundleCompleted(result))
        return result

    def status(self, bundle_id: str) -> Optional[BundleStatus]:
        bundle = self._bundles.get(bundle_id)
        return bundle.status if bundle else None

    def get_bundle(self, bundle_id: str) -> Optional[Bundle]:
        return self._bundles.get(bundle_id)

    def bundles(self) -> Dict[str, Bundle]:
        return dict(self._bundles)

    def results(self) -> Dict[str, BundleResult]:
        """Copy of the results of every executed bundle."""
        return dict(self._results)

