"""
Funding-rate updater.

Calls updateFundingRate() every funding.interval_seconds, starting at
startup. A gas-ceiling breach or a failed submission schedules exactly one
delayed retry; a retry never schedules another.
"""
import asyncio
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from keeper.config.config import FundingConfig
from keeper.domain.models import FundingUpdateRecord, TxReceipt
from keeper.domain.protocols import ChainClient
from keeper.exceptions import OperationalError
from keeper.monitoring.logger import get_logger
from keeper.runtime.lifecycle import Lifecycle
from keeper.services.gas import exceeds_ceiling, wei_to_gwei
from keeper.storage.repository import PositionStore

logger = get_logger(__name__)


class FundingUpdater:
    """Fixed-interval funding-rate submission with a cooldown guard."""

    def __init__(
        self,
        chain: ChainClient,
        store: PositionStore,
        config: FundingConfig,
        lifecycle: Lifecycle,
        *,
        gas_ceiling_gwei: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.chain = chain
        self.store = store
        self.config = config
        self.lifecycle = lifecycle
        self.gas_ceiling_gwei = gas_ceiling_gwei
        self._clock = clock
        self._last_attempt: Optional[float] = None
        self._retry_task: Optional[asyncio.Task] = None
        self._retry_submitting = False

    @property
    def retry_pending(self) -> bool:
        return self._retry_task is not None and not self._retry_task.done()

    async def run(self) -> None:
        logger.info(
            "FUNDING_UPDATER_STARTING",
            interval_seconds=self.config.interval_seconds,
            max_gas_price_gwei=self.gas_ceiling_gwei,
        )
        try:
            while not self.lifecycle.is_stopping:
                await self.update_funding_rate()
                if not await self.lifecycle.sleep(self.config.interval_seconds):
                    break
        finally:
            await self.settle_pending_retry()
        logger.info("FUNDING_UPDATER_STOPPED")

    async def update_funding_rate(self, *, allow_retry: bool = True) -> Optional[TxReceipt]:
        """
        Submit one funding-rate update.

        Returns the receipt on success; None when skipped by the cooldown,
        deferred by gas, or failed.
        """
        now = self._clock()
        if self._last_attempt is not None and now - self._last_attempt < self.config.cooldown_seconds:
            logger.info(
                "FUNDING_UPDATE_SKIPPED_COOLDOWN",
                seconds_since_last=round(now - self._last_attempt, 1),
                cooldown_seconds=self.config.cooldown_seconds,
            )
            return None
        self._last_attempt = now

        try:
            gas_price = await self.chain.get_gas_price()
            if exceeds_ceiling(gas_price, self.gas_ceiling_gwei):
                logger.warning(
                    "FUNDING_UPDATE_DEFERRED_GAS",
                    gas_price_gwei=wei_to_gwei(gas_price),
                    max_gas_price_gwei=self.gas_ceiling_gwei,
                    is_retry=not allow_retry,
                )
                if allow_retry:
                    self._schedule_retry("gas_price")
                return None

            receipt = await self.chain.update_funding_rate(gas_price=gas_price)
        except OperationalError as e:
            logger.error(
                "FUNDING_UPDATE_FAILED",
                error=str(e),
                error_type=type(e).__name__,
                is_retry=not allow_retry,
            )
            if allow_retry:
                self._schedule_retry("failure")
            return None

        funding_rate: Optional[int] = None
        try:
            funding_rate = await self.chain.get_current_funding_rate()
        except OperationalError as e:
            logger.warning("FUNDING_RATE_READBACK_FAILED", tx_hash=receipt.tx_hash, error=str(e))

        record = FundingUpdateRecord(
            block_number=receipt.block_number,
            timestamp=datetime.now(timezone.utc),
            tx_hash=receipt.tx_hash,
            funding_rate=funding_rate,
        )
        try:
            await asyncio.to_thread(self.store.record_funding_update, record)
        except OperationalError as e:
            logger.error("FUNDING_UPDATE_RECORD_FAILED", tx_hash=receipt.tx_hash, error=str(e))

        logger.info(
            "FUNDING_RATE_UPDATED",
            tx_hash=receipt.tx_hash,
            block_number=receipt.block_number,
            funding_rate=funding_rate,
            funding_rate_pct=str(record.funding_rate_pct) if funding_rate is not None else None,
        )
        return receipt

    def _schedule_retry(self, reason: str) -> None:
        if self.retry_pending:
            return
        logger.info("FUNDING_RETRY_SCHEDULED", reason=reason, delay_seconds=self.config.retry_delay_seconds)
        self._retry_task = asyncio.create_task(self._retry_after_delay(), name="funding-retry")

    async def _retry_after_delay(self) -> None:
        if not await self.lifecycle.sleep(self.config.retry_delay_seconds):
            return
        self._retry_submitting = True
        try:
            await self.update_funding_rate(allow_retry=False)
        except Exception as e:
            logger.exception("FUNDING_RETRY_CRASHED", error=str(e))
        finally:
            self._retry_submitting = False

    async def settle_pending_retry(self) -> None:
        """
        Cancel a retry still waiting out its delay.

        A retry already submitting is awaited instead, so a sent transaction
        still gets its receipt and audit record.
        """
        task, self._retry_task = self._retry_task, None
        if task is None or task.done():
            return
        if self._retry_submitting:
            logger.info("FUNDING_RETRY_FINISHING")
            await asyncio.gather(task, return_exceptions=True)
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        logger.info("FUNDING_RETRY_CANCELLED")
