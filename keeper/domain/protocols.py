"""
Domain protocols (interfaces) for dependency inversion.

The services depend on this capability interface rather than on web3
contract handles, so every chain call they make is statically defined.
Implemented by keeper.chain.client.Web3ChainClient in production and by
in-memory fakes in tests.
"""
from datetime import datetime
from typing import AsyncIterator, List, Protocol, runtime_checkable

from keeper.domain.models import ChainEvent, PositionData, PriceSnapshot, TxReceipt


@runtime_checkable
class ChainClient(Protocol):
    """Typed read/write access to the keeper's contracts."""

    @property
    def address(self) -> str: ...

    @property
    def supports_live_events(self) -> bool: ...

    # Reads
    async def get_current_price(self) -> PriceSnapshot: ...

    async def get_accumulated_funding(self) -> int: ...

    async def get_current_funding_rate(self) -> int: ...

    async def get_position_data(self, token_id: int) -> PositionData: ...

    async def get_gas_price(self) -> int: ...

    async def get_block_number(self) -> int: ...

    async def get_block_timestamp(self, block_number: int) -> datetime: ...

    # Events
    async def get_events(self, from_block: int, to_block: int) -> List[ChainEvent]: ...

    def stream_events(self) -> AsyncIterator[ChainEvent]: ...

    # Writes
    async def liquidate_position(self, token_id: int, *, gas_price: int) -> TxReceipt: ...

    async def update_funding_rate(self, *, gas_price: int) -> TxReceipt: ...

    async def close(self) -> None: ...
