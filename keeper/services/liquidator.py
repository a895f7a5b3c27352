"""
Liquidation sweeps.

Every liquidator.interval_seconds: read the active positions and one shared
price/funding snapshot, evaluate each position against the maintenance
margin, and submit liquidatePosition() for those under water.
"""
import asyncio
from datetime import datetime, timezone
from enum import Enum
from typing import Tuple

from keeper.config.config import LiquidatorConfig
from keeper.domain.models import LiquidationAttempt, Position, SweepResult
from keeper.domain.protocols import ChainClient
from keeper.domain.risk import SolvencyAssessment, assess_position
from keeper.exceptions import DataError, InvalidPriceError, KeeperError, OperationalError
from keeper.monitoring.logger import get_logger
from keeper.runtime.lifecycle import Lifecycle
from keeper.services.gas import exceeds_ceiling, wei_to_gwei
from keeper.storage.repository import PositionStore

logger = get_logger(__name__)


class LiquidationOutcome(str, Enum):
    LIQUIDATED = "liquidated"
    FAILED = "failed"
    DEFERRED = "deferred"  # gas above ceiling


class Liquidator:
    """Fixed-interval solvency sweep."""

    def __init__(
        self,
        chain: ChainClient,
        store: PositionStore,
        config: LiquidatorConfig,
        lifecycle: Lifecycle,
    ):
        self.chain = chain
        self.store = store
        self.config = config
        self.lifecycle = lifecycle
        self.sweep_count = 0

    async def run(self) -> None:
        logger.info(
            "LIQUIDATOR_STARTING",
            interval_seconds=self.config.interval_seconds,
            max_gas_price_gwei=self.config.max_gas_price_gwei,
        )
        while not self.lifecycle.is_stopping:
            try:
                await self.sweep()
            except (OperationalError, DataError) as e:
                logger.warning("SWEEP_ABORTED", error=str(e), error_type=type(e).__name__)

            if not await self.lifecycle.sleep(self.config.interval_seconds):
                break
        logger.info("LIQUIDATOR_STOPPED", sweeps=self.sweep_count)

    async def _snapshot(self) -> Tuple[int, int]:
        """One shared (price, accumulated funding) for the whole sweep."""
        snapshot = await self.chain.get_current_price()
        if not snapshot.is_valid or snapshot.price <= 0:
            raise InvalidPriceError(f"Price source returned invalid price (price={snapshot.price}, valid={snapshot.is_valid})")
        accumulated_funding = await self.chain.get_accumulated_funding()
        return snapshot.price, accumulated_funding

    async def sweep(self) -> SweepResult:
        """
        Run one pass over all active positions.

        Raises:
            OperationalError: positions, price or funding could not be read
            InvalidPriceError: the price source flagged its price invalid
        """
        self.sweep_count += 1
        result = SweepResult()

        positions = await asyncio.to_thread(self.store.get_active_positions)
        if not positions:
            logger.debug("SWEEP_NO_ACTIVE_POSITIONS")
            return result

        price, accumulated_funding = await self._snapshot()
        logger.debug("SWEEP_STARTED", positions=len(positions), price=str(price), accumulated_funding=accumulated_funding)

        for position in positions:
            if self.lifecycle.is_stopping:
                logger.info("SWEEP_INTERRUPTED", remaining=len(positions) - result.checked - result.errors)
                break
            try:
                await self._process(position, price, accumulated_funding, result)
            except KeeperError as e:
                result.errors += 1
                logger.error("POSITION_EVALUATION_FAILED", token_id=str(position.token_id), error=str(e))
            except Exception as e:
                result.errors += 1
                logger.exception("POSITION_EVALUATION_CRASHED", token_id=str(position.token_id), error=str(e))

        logger.info(
            "SWEEP_COMPLETE",
            checked=result.checked,
            liquidatable=result.liquidatable,
            liquidated=result.liquidated,
            failed=result.failed,
            deferred=result.deferred,
            errors=result.errors,
        )
        return result

    async def _process(self, position: Position, price: int, accumulated_funding: int, result: SweepResult) -> None:
        assessment = assess_position(position, price, accumulated_funding)
        result.checked += 1

        if assessment.liquidatable:
            result.liquidatable += 1
            logger.warning(
                "POSITION_LIQUIDATABLE",
                token_id=str(position.token_id),
                side=position.side,
                leverage=position.leverage,
                **assessment.as_log_fields(),
            )
            outcome = await self._liquidate(position)
            if outcome is LiquidationOutcome.LIQUIDATED:
                result.liquidated += 1
            elif outcome is LiquidationOutcome.FAILED:
                result.failed += 1
            else:
                result.deferred += 1

        await asyncio.to_thread(self.store.touch_last_checked, position.token_id, datetime.now(timezone.utc))

    async def _liquidate(self, position: Position) -> LiquidationOutcome:
        token_id = position.token_id
        try:
            gas_price = await self.chain.get_gas_price()
            if exceeds_ceiling(gas_price, self.config.max_gas_price_gwei):
                logger.warning(
                    "LIQUIDATION_DEFERRED_GAS",
                    token_id=str(token_id),
                    gas_price_gwei=wei_to_gwei(gas_price),
                    max_gas_price_gwei=self.config.max_gas_price_gwei,
                )
                return LiquidationOutcome.DEFERRED

            receipt = await self.chain.liquidate_position(token_id, gas_price=gas_price)
        except OperationalError as e:
            await asyncio.to_thread(
                self.store.record_liquidation,
                LiquidationAttempt(
                    token_id=token_id,
                    timestamp=datetime.now(timezone.utc),
                    success=False,
                    tx_hash=getattr(e, "tx_hash", None),
                    error=str(e),
                ),
            )
            logger.error("LIQUIDATION_FAILED", token_id=str(token_id), error=str(e), error_type=type(e).__name__)
            return LiquidationOutcome.FAILED

        try:
            await asyncio.to_thread(self.store.mark_inactive, token_id)
        except OperationalError as e:
            logger.error("LIQUIDATED_POSITION_DEACTIVATE_FAILED", token_id=str(token_id), error=str(e))
        try:
            await asyncio.to_thread(
                self.store.record_liquidation,
                LiquidationAttempt(
                    token_id=token_id,
                    timestamp=datetime.now(timezone.utc),
                    success=True,
                    tx_hash=receipt.tx_hash,
                ),
            )
        except OperationalError as e:
            logger.error("LIQUIDATION_RECORD_FAILED", token_id=str(token_id), tx_hash=receipt.tx_hash, error=str(e))
        logger.info(
            "POSITION_LIQUIDATED",
            token_id=str(token_id),
            tx_hash=receipt.tx_hash,
            block_number=receipt.block_number,
            gas_used=receipt.gas_used,
        )
        return LiquidationOutcome.LIQUIDATED

    async def assess(self, token_id: int) -> Tuple[Position, SolvencyAssessment]:
        """Evaluate one stored position against the current snapshot. Submits nothing."""
        position = await asyncio.to_thread(self.store.get_position, token_id)
        if position is None:
            raise DataError(f"Position {token_id} is not in the store")
        price, accumulated_funding = await self._snapshot()
        return position, assess_position(position, price, accumulated_funding)
