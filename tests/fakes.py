"""
In-memory ChainClient and factories for keeper tests.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional

from keeper.domain.models import (
    WAD,
    ChainEvent,
    EventType,
    Position,
    PositionData,
    PriceSnapshot,
    TxReceipt,
)
from keeper.exceptions import RpcError
from keeper.services.gas import gwei_to_wei

KEEPER_ADDRESS = "0x" + "ab" * 20
OWNER = "0x" + "cd" * 20
GENESIS_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def wad(value) -> int:
    return int(Decimal(str(value)) * WAD)


def opened_event(
    token_id: int,
    block_number: int,
    *,
    log_index: int = 0,
    collateral=1000,
    leverage: int = 10,
    entry_price=100,
    entry_funding_rate: int = 0,
    is_long: bool = True,
    owner: str = OWNER,
) -> ChainEvent:
    return ChainEvent(
        event_type=EventType.POSITION_OPENED,
        args={
            "tokenId": token_id,
            "owner": owner,
            "collateral": wad(collateral),
            "leverage": leverage,
            "entryPrice": wad(entry_price),
            "entryFundingRate": entry_funding_rate,
            "isLong": is_long,
        },
        block_number=block_number,
        log_index=log_index,
        tx_hash=f"0x{block_number:064x}",
    )


def closed_event(token_id: int, block_number: int, *, log_index: int = 0, liquidated: bool = False) -> ChainEvent:
    args = {"tokenId": token_id, "owner": OWNER}
    if not liquidated:
        args.update(pnl=0, fundingPayment=0, fees=0)
    return ChainEvent(
        event_type=EventType.POSITION_LIQUIDATED if liquidated else EventType.POSITION_CLOSED,
        args=args,
        block_number=block_number,
        log_index=log_index,
    )


def make_position(token_id: int = 1, **overrides) -> Position:
    fields = dict(
        token_id=token_id,
        owner=OWNER,
        collateral=wad(1000),
        leverage=10,
        entry_price=wad(100),
        entry_funding_rate=0,
        is_long=True,
        block_number=token_id,
        timestamp=GENESIS_TIME,
    )
    fields.update(overrides)
    return Position(**fields)


class FakeChainClient:
    """In-memory ChainClient. Knobs are plain attributes; calls are recorded."""

    def __init__(self):
        self.address = KEEPER_ADDRESS
        self.supports_live_events = False

        self.price = PriceSnapshot(price=wad(100), is_valid=True)
        self.accumulated_funding = 0
        self.funding_rate = 125
        self.gas_price = gwei_to_wei(10)
        self.head = 100
        self.events: List[ChainEvent] = []
        self.position_data: Dict[int, PositionData] = {}
        self.live: asyncio.Queue = asyncio.Queue()

        # Failure injection
        self.price_error: Optional[Exception] = None
        self.get_events_failures = 0
        self.block_timestamp_failures = 0
        self.liquidation_error: Optional[Exception] = None
        self.funding_error: Optional[Exception] = None
        self.funding_rate_error: Optional[Exception] = None

        # Call records
        self.get_events_calls: List[tuple] = []
        self.liquidate_calls: List[tuple] = []
        self.funding_calls: List[int] = []
        self.price_reads = 0
        self.closed = False
        self._next_block = 1000

    async def get_current_price(self) -> PriceSnapshot:
        self.price_reads += 1
        if self.price_error:
            raise self.price_error
        return self.price

    async def get_accumulated_funding(self) -> int:
        return self.accumulated_funding

    async def get_current_funding_rate(self) -> int:
        if self.funding_rate_error:
            raise self.funding_rate_error
        return self.funding_rate

    async def get_position_data(self, token_id: int) -> PositionData:
        if token_id not in self.position_data:
            raise RpcError(f"getPositionData({token_id}) reverted")
        return self.position_data[token_id]

    async def get_gas_price(self) -> int:
        return self.gas_price

    async def get_block_number(self) -> int:
        return self.head

    async def get_block_timestamp(self, block_number: int) -> datetime:
        if self.block_timestamp_failures > 0:
            self.block_timestamp_failures -= 1
            raise RpcError("get_block timed out")
        return GENESIS_TIME + timedelta(seconds=12 * block_number)

    async def get_events(self, from_block: int, to_block: int) -> List[ChainEvent]:
        self.get_events_calls.append((from_block, to_block))
        if self.get_events_failures > 0:
            self.get_events_failures -= 1
            raise RpcError("get_logs failed: 503")
        matching = [e for e in self.events if from_block <= e.block_number <= to_block]
        return sorted(matching, key=lambda e: e.sort_key)

    async def stream_events(self):
        while True:
            item = await self.live.get()
            if isinstance(item, BaseException):
                raise item
            yield item

    async def liquidate_position(self, token_id: int, *, gas_price: int) -> TxReceipt:
        self.liquidate_calls.append((token_id, gas_price))
        if self.liquidation_error:
            raise self.liquidation_error
        return self._receipt()

    async def update_funding_rate(self, *, gas_price: int) -> TxReceipt:
        self.funding_calls.append(gas_price)
        if self.funding_error:
            raise self.funding_error
        return self._receipt()

    def _receipt(self) -> TxReceipt:
        self._next_block += 1
        return TxReceipt(
            tx_hash=f"0x{self._next_block:064x}",
            status=1,
            block_number=self._next_block,
            gas_used=90_000,
        )

    async def close(self) -> None:
        self.closed = True


