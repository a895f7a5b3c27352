"""
Domain models for the keeper.

These are the core business objects used throughout the application.
On-chain quantities are plain ints in their native fixed-point units
(wad = 18 decimals). All timestamps use UTC timezone-aware datetimes.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

WAD = 10 ** 18
FUNDING_RATE_SCALE = 10_000  # 10,000 = 100%


def from_wad(value: int) -> Decimal:
    """Convert an 18-decimal fixed-point integer to a Decimal."""
    return Decimal(value) / Decimal(WAD)


def utc_from_timestamp(ts: int | float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


class EventType(str, Enum):
    """Position lifecycle events emitted by the position manager."""
    POSITION_OPENED = "PositionOpened"
    POSITION_CLOSED = "PositionClosed"
    POSITION_LIQUIDATED = "PositionLiquidated"


@dataclass
class Position:
    """
    Local mirror of an on-chain position.

    is_active only ever moves from True to False; positions are never deleted.
    """
    token_id: int
    owner: str
    collateral: int           # wad
    leverage: int
    entry_price: int          # wad
    entry_funding_rate: int   # accumulated-funding units at open
    is_long: bool
    is_active: bool = True
    block_number: int = 0
    timestamp: Optional[datetime] = None
    last_checked: Optional[datetime] = None

    @property
    def size(self) -> int:
        """Notional size = collateral x leverage (wad)."""
        return self.collateral * self.leverage

    @property
    def side(self) -> str:
        return "long" if self.is_long else "short"


@dataclass(frozen=True)
class PositionData:
    """Per-token position data read directly from the position registry."""
    collateral: int
    leverage: int
    entry_price: int
    entry_funding_rate: int
    is_long: bool


@dataclass(frozen=True)
class IndexerCheckpoint:
    """Singleton backfill checkpoint."""
    last_processed_block: int = 0
    last_update_time: Optional[datetime] = None

    @property
    def is_set(self) -> bool:
        return self.last_processed_block > 0


@dataclass(frozen=True)
class LiquidationAttempt:
    """Append-only audit record of one liquidation try."""
    token_id: int
    timestamp: datetime
    success: bool
    tx_hash: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class FundingUpdateRecord:
    """Append-only audit record of a confirmed funding-rate update."""
    block_number: int
    timestamp: datetime
    tx_hash: str
    funding_rate: Optional[int] = None  # raw on-chain rate, 10,000 = 100%

    @property
    def funding_rate_pct(self) -> Optional[Decimal]:
        if self.funding_rate is None:
            return None
        return Decimal(self.funding_rate) * 100 / FUNDING_RATE_SCALE


@dataclass(frozen=True)
class PriceSnapshot:
    """Current price from the price source."""
    price: int  # wad
    is_valid: bool


@dataclass(frozen=True)
class ChainEvent:
    """A decoded position-manager log."""
    event_type: EventType
    args: Dict[str, Any]
    block_number: int
    log_index: int
    tx_hash: str = ""

    @property
    def token_id(self) -> int:
        return int(self.args["tokenId"])

    @property
    def sort_key(self) -> tuple:
        return (self.block_number, self.log_index)


@dataclass(frozen=True)
class TxReceipt:
    """Outcome of a mined transaction."""
    tx_hash: str
    status: int
    block_number: int
    gas_used: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == 1


@dataclass
class SweepResult:
    """Counters from one liquidation sweep."""
    checked: int = 0
    liquidatable: int = 0
    liquidated: int = 0
    failed: int = 0
    deferred: int = 0
    errors: int = 0
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
