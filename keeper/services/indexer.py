"""
Position indexer.

Keeps the PositionStore a mirror of on-chain position lifecycle events.

Modes (indexer.start_block):
    latest      live events from head+1 only, no replay
    checkpoint  replay from the stored checkpoint in bounded batches,
                then switch to the live subscription

Every handler is idempotent, so replaying a block range or receiving the
same event from both the replay and the live stream is harmless.
"""
import asyncio
from datetime import datetime
from typing import Dict, Optional

from keeper.config.config import IndexerConfig
from keeper.domain.models import ChainEvent, EventType, Position
from keeper.domain.protocols import ChainClient
from keeper.exceptions import (
    DataError,
    EventStreamLostError,
    InvalidPriceError,
    KeeperError,
    OperationalError,
)
from keeper.monitoring.logger import get_logger
from keeper.runtime.lifecycle import Lifecycle
from keeper.storage.repository import PositionStore
from keeper.utils.retry import retry_on_transient_errors

logger = get_logger(__name__)

_BLOCK_TIME_CACHE_SIZE = 1024


class Indexer:
    """Backfill-then-live event indexer."""

    def __init__(
        self,
        chain: ChainClient,
        store: PositionStore,
        config: IndexerConfig,
        lifecycle: Lifecycle,
        *,
        live_retry_base_delay: float = 1.0,
    ):
        self.chain = chain
        self.store = store
        self.config = config
        self.lifecycle = lifecycle

        # Live events at or below this block were already covered
        self._live_floor: int = 0
        self._last_backfilled_block: Optional[int] = None
        self._block_times: Dict[int, datetime] = {}

        self._handle_live_event = retry_on_transient_errors(
            max_retries=config.live_event_retries,
            base_delay=live_retry_base_delay,
            max_backoff=10.0,
        )(self.handle_event)

    @property
    def last_backfilled_block(self) -> Optional[int]:
        return self._last_backfilled_block

    async def run(self) -> None:
        """Index until stopped. Raises EventStreamLostError if the live stream drops."""
        logger.info("INDEXER_STARTING", mode=self.config.start_block, live_events=self.chain.supports_live_events)

        head = await self._get_head()
        if head is None:
            return

        if self.config.start_block == "checkpoint":
            start = await self._resolve_start_block(head)
            await self.backfill(start, head)
            if self.lifecycle.is_stopping:
                return
            self._live_floor = head
        else:
            self._live_floor = head
            logger.info("INDEXER_LIVE_ONLY", from_block=head + 1)

        if not self.chain.supports_live_events:
            logger.warning("INDEXER_LIVE_DISABLED", reason="no RPC WebSocket URL configured")
            return

        await self._run_live()

    # ------------------------------------------------------------------
    # Backfill
    # ------------------------------------------------------------------

    async def _get_head(self) -> Optional[int]:
        """Current block number, retried until it succeeds or a stop is requested."""
        while not self.lifecycle.is_stopping:
            try:
                return await self.chain.get_block_number()
            except OperationalError as e:
                logger.warning("INDEXER_HEAD_READ_FAILED", error=str(e), retry_in=self.config.retry_delay_seconds)
                await self.lifecycle.sleep(self.config.retry_delay_seconds)
        return None

    async def _resolve_start_block(self, head: int) -> int:
        checkpoint = await asyncio.to_thread(self.store.get_checkpoint)
        if checkpoint.is_set:
            logger.info("INDEXER_RESUMING", checkpoint=checkpoint.last_processed_block, head=head)
            return checkpoint.last_processed_block + 1

        if self.config.genesis_block is not None:
            logger.info("INDEXER_FROM_GENESIS", genesis_block=self.config.genesis_block, head=head)
            return self.config.genesis_block

        # No history requested: anchor the checkpoint at the current head
        await asyncio.to_thread(self.store.advance_checkpoint, head)
        logger.info("INDEXER_CHECKPOINT_INITIALIZED", block=head)
        return head + 1

    async def backfill(self, from_block: int, to_block: int) -> Optional[int]:
        """
        Replay [from_block, to_block] in batches of indexer.batch_size.

        The checkpoint advances only after a whole batch is handled; a failed
        batch is retried from its first block after retry_delay_seconds.

        Returns:
            The last block fully processed, or None if nothing was.
        """
        if from_block > to_block:
            return self._last_backfilled_block

        logger.info("BACKFILL_STARTED", from_block=from_block, to_block=to_block, batch_size=self.config.batch_size)
        start = from_block
        events_total = 0

        while start <= to_block and not self.lifecycle.is_stopping:
            end = min(start + self.config.batch_size - 1, to_block)
            try:
                events = await self.chain.get_events(start, end)
                for event in events:
                    await self._handle_replayed_event(event)
                await asyncio.to_thread(self.store.advance_checkpoint, end)
            except OperationalError as e:
                logger.warning(
                    "BACKFILL_BATCH_FAILED",
                    from_block=start,
                    to_block=end,
                    error=str(e),
                    retry_in=self.config.retry_delay_seconds,
                )
                await self.lifecycle.sleep(self.config.retry_delay_seconds)
                continue

            events_total += len(events)
            self._last_backfilled_block = end
            logger.debug("BACKFILL_BATCH_DONE", from_block=start, to_block=end, events=len(events))
            start = end + 1

        logger.info(
            "BACKFILL_FINISHED" if start > to_block else "BACKFILL_INTERRUPTED",
            last_block=self._last_backfilled_block,
            events=events_total,
        )
        return self._last_backfilled_block

    async def _handle_replayed_event(self, event: ChainEvent) -> None:
        try:
            await self.handle_event(event)
        except DataError as e:
            logger.error(
                "EVENT_SKIPPED",
                event_type=event.event_type.value,
                block_number=event.block_number,
                log_index=event.log_index,
                error=str(e),
            )

    # ------------------------------------------------------------------
    # Live
    # ------------------------------------------------------------------

    async def _run_live(self) -> None:
        queue: asyncio.Queue = asyncio.Queue()
        pump = asyncio.create_task(self._pump(queue), name="event-pump")
        logger.info("INDEXER_LIVE_STARTED", from_block=self._live_floor + 1)

        try:
            if self.config.start_block == "checkpoint":
                await self._catch_up()

            while not self.lifecycle.is_stopping:
                item = await self.lifecycle.interruptible(queue.get())
                if item is None:
                    break
                if isinstance(item, BaseException):
                    raise item
                await self._on_live_event(item)
        finally:
            pump.cancel()
            await asyncio.gather(pump, return_exceptions=True)

        logger.info("INDEXER_STOPPED", last_backfilled_block=self._last_backfilled_block)

    async def _catch_up(self) -> None:
        """Cover blocks mined between the first backfill and the subscription."""
        head = await self._get_head()
        if head is None:
            return
        await self.backfill(self._live_floor + 1, head)
        self._live_floor = max(self._live_floor, self._last_backfilled_block or 0)

    async def _pump(self, queue: asyncio.Queue) -> None:
        try:
            async for event in self.chain.stream_events():
                await queue.put(event)
        except EventStreamLostError as e:
            await queue.put(e)
        except Exception as e:
            await queue.put(EventStreamLostError(f"Event stream failed: {type(e).__name__}: {e}"))
        else:
            await queue.put(EventStreamLostError("Event stream ended"))

    async def _on_live_event(self, event: ChainEvent) -> None:
        if event.block_number <= self._live_floor:
            logger.debug("LIVE_EVENT_IGNORED", block_number=event.block_number, floor=self._live_floor)
            return
        try:
            await self._handle_live_event(event)
        except KeeperError as e:
            logger.error(
                "LIVE_EVENT_SKIPPED",
                event_type=event.event_type.value,
                token_id=str(event.args.get("tokenId")),
                block_number=event.block_number,
                error=str(e),
            )

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def handle_event(self, event: ChainEvent) -> None:
        """Apply one lifecycle event to the store. Idempotent."""
        if event.event_type == EventType.POSITION_OPENED:
            await self._on_opened(event)
        elif event.event_type in (EventType.POSITION_CLOSED, EventType.POSITION_LIQUIDATED):
            await self._on_closed(event)

    async def _on_opened(self, event: ChainEvent) -> None:
        args = event.args
        token_id = event.token_id
        entry_price = int(args.get("entryPrice") or 0)

        if entry_price == 0:
            data = await self.chain.get_position_data(token_id)
            entry_price = data.entry_price
            if entry_price == 0:
                raise InvalidPriceError(f"Position {token_id} has zero entry price on-chain")

        position = Position(
            token_id=token_id,
            owner=str(args["owner"]),
            collateral=int(args["collateral"]),
            leverage=int(args["leverage"]),
            entry_price=entry_price,
            entry_funding_rate=int(args["entryFundingRate"]),
            is_long=bool(args["isLong"]),
            block_number=event.block_number,
            timestamp=await self._block_timestamp(event.block_number),
        )
        await asyncio.to_thread(self.store.upsert_position, position)
        logger.info(
            "POSITION_OPENED",
            token_id=str(token_id),
            owner=position.owner,
            side=position.side,
            leverage=position.leverage,
            block_number=event.block_number,
        )

    async def _on_closed(self, event: ChainEvent) -> None:
        flipped = await asyncio.to_thread(self.store.mark_inactive, event.token_id)
        logger.info(
            "POSITION_DEACTIVATED" if flipped else "POSITION_ALREADY_INACTIVE",
            event_type=event.event_type.value,
            token_id=str(event.token_id),
            block_number=event.block_number,
            tx_hash=event.tx_hash,
        )

    async def _block_timestamp(self, block_number: int) -> datetime:
        cached = self._block_times.get(block_number)
        if cached is not None:
            return cached
        ts = await self.chain.get_block_timestamp(block_number)
        if len(self._block_times) >= _BLOCK_TIME_CACHE_SIZE:
            self._block_times.clear()
        self._block_times[block_number] = ts
        return ts
