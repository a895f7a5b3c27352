"""
Persistence for the keeper's position mirror and audit trails.

Provides repository pattern for clean data access. All methods are
synchronous and open one transaction each; async callers offload them
with asyncio.to_thread.
"""
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    and_,
    func,
    not_,
    or_,
    update,
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from keeper.domain.models import (
    FundingUpdateRecord,
    IndexerCheckpoint,
    LiquidationAttempt,
    Position,
)
from keeper.monitoring.logger import get_logger
from keeper.storage.db import Base, Database

logger = get_logger(__name__)

_CHECKPOINT_ID = 1
# uint256 as base-10 text
_UINT256 = String(78)


def _to_db(dt: Optional[datetime]) -> Optional[datetime]:
    """Store naive UTC."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _from_db(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    return dt.replace(tzinfo=timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ORM Models
class PositionModel(Base):
    """ORM model for mirrored positions. Rows are never deleted."""
    __tablename__ = "positions"
    __table_args__ = (
        Index("idx_position_active", "is_active"),
        Index("idx_position_owner", "owner"),
        Index("idx_position_last_checked", "last_checked"),
    )

    token_id = Column(_UINT256, primary_key=True)
    owner = Column(String(42), nullable=False)
    collateral = Column(_UINT256, nullable=False)
    leverage = Column(Integer, nullable=False)
    entry_price = Column(_UINT256, nullable=False)
    entry_funding_rate = Column(BigInteger, nullable=False)
    is_long = Column(Boolean, nullable=False)
    size = Column(_UINT256, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    block_number = Column(BigInteger, nullable=False)
    timestamp = Column(DateTime, nullable=True)
    last_checked = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=False)


class IndexerCheckpointModel(Base):
    """ORM model for the singleton backfill checkpoint."""
    __tablename__ = "indexer_checkpoint"

    id = Column(Integer, primary_key=True)
    last_processed_block = Column(BigInteger, nullable=False)
    last_update_time = Column(DateTime, nullable=False)


class LiquidationAttemptModel(Base):
    """ORM model for liquidation attempts (append-only audit trail)."""
    __tablename__ = "liquidation_attempts"
    __table_args__ = (
        Index("idx_liquidation_token_time", "token_id", "timestamp"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    token_id = Column(_UINT256, nullable=False)
    timestamp = Column(DateTime, nullable=False)
    success = Column(Boolean, nullable=False)
    tx_hash = Column(String(66), nullable=True)
    error = Column(Text, nullable=True)


class FundingUpdateModel(Base):
    """ORM model for confirmed funding-rate updates (append-only audit trail)."""
    __tablename__ = "funding_updates"
    __table_args__ = (
        Index("idx_funding_block", "block_number"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    block_number = Column(BigInteger, nullable=False)
    timestamp = Column(DateTime, nullable=False)
    funding_rate = Column(BigInteger, nullable=True)
    tx_hash = Column(String(66), nullable=False)


def _position_from_model(pm: PositionModel) -> Position:
    return Position(
        token_id=int(pm.token_id),
        owner=pm.owner,
        collateral=int(pm.collateral),
        leverage=pm.leverage,
        entry_price=int(pm.entry_price),
        entry_funding_rate=pm.entry_funding_rate,
        is_long=bool(pm.is_long),
        is_active=bool(pm.is_active),
        block_number=pm.block_number,
        timestamp=_from_db(pm.timestamp),
        last_checked=_from_db(pm.last_checked),
    )


class PositionStore:
    """Durable mirror of positions, the indexer checkpoint and audit trails."""

    def __init__(self, db: Database):
        self.db = db

    def _insert(self, model):
        return pg_insert(model) if self.db.is_postgres else sqlite_insert(model)

    # ------------------------------------------------------------------
    # Indexer checkpoint
    # ------------------------------------------------------------------

    def get_checkpoint(self) -> IndexerCheckpoint:
        """Return the stored checkpoint, or an unset one (block 0)."""
        with self.db.get_session() as session:
            row = session.get(IndexerCheckpointModel, _CHECKPOINT_ID)
            if row is None:
                return IndexerCheckpoint()
            return IndexerCheckpoint(
                last_processed_block=row.last_processed_block,
                last_update_time=_from_db(row.last_update_time),
            )

    def advance_checkpoint(self, block_number: int) -> IndexerCheckpoint:
        """
        Move the checkpoint to block_number in one transaction.

        Never moves it backwards.
        """
        now = _utcnow()
        with self.db.get_session() as session:
            row = (
                session.query(IndexerCheckpointModel)
                .filter(IndexerCheckpointModel.id == _CHECKPOINT_ID)
                .with_for_update()
                .first()
            )
            if row is None:
                row = IndexerCheckpointModel(
                    id=_CHECKPOINT_ID,
                    last_processed_block=block_number,
                    last_update_time=_to_db(now),
                )
                session.add(row)
            elif block_number > row.last_processed_block:
                row.last_processed_block = block_number
                row.last_update_time = _to_db(now)
            return IndexerCheckpoint(
                last_processed_block=row.last_processed_block,
                last_update_time=_from_db(row.last_update_time),
            )

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    def upsert_position(self, position: Position) -> None:
        """
        Insert or fully replace a position by token_id.

        Exceptions to the full replace: an inactive row stays inactive, and
        last_checked is left untouched. A replay that changes nothing leaves
        the row as it was, updated_at included.
        """
        values = {
            "token_id": str(position.token_id),
            "owner": position.owner,
            "collateral": str(position.collateral),
            "leverage": position.leverage,
            "entry_price": str(position.entry_price),
            "entry_funding_rate": position.entry_funding_rate,
            "is_long": position.is_long,
            "size": str(position.size),
            "is_active": position.is_active,
            "block_number": position.block_number,
            "timestamp": _to_db(position.timestamp),
            "updated_at": _to_db(_utcnow()),
        }
        stmt = self._insert(PositionModel).values(**values)
        replaced = {
            key: getattr(stmt.excluded, key)
            for key in values
            if key not in ("token_id", "is_active")
        }
        # Monotone flag: true -> false only
        replaced["is_active"] = and_(PositionModel.is_active, stmt.excluded.is_active)
        changed = or_(
            *(
                getattr(PositionModel, key).is_distinct_from(getattr(stmt.excluded, key))
                for key in values
                if key not in ("token_id", "is_active", "updated_at")
            ),
            and_(PositionModel.is_active, not_(stmt.excluded.is_active)),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[PositionModel.token_id], set_=replaced, where=changed
        )

        with self.db.get_session() as session:
            session.execute(stmt)

    def get_position(self, token_id: int) -> Optional[Position]:
        with self.db.get_session() as session:
            pm = session.get(PositionModel, str(token_id))
            return _position_from_model(pm) if pm else None

    def get_active_positions(self) -> List[Position]:
        """Retrieve all active positions, oldest first."""
        with self.db.get_session() as session:
            rows = (
                session.query(PositionModel)
                .filter(PositionModel.is_active.is_(True))
                .order_by(PositionModel.block_number, PositionModel.token_id)
                .all()
            )
            return [_position_from_model(pm) for pm in rows]

    def mark_inactive(self, token_id: int) -> bool:
        """
        Flag a position inactive. Idempotent.

        Returns True if this call flipped the flag.
        """
        with self.db.get_session() as session:
            result = session.execute(
                update(PositionModel)
                .where(PositionModel.token_id == str(token_id), PositionModel.is_active.is_(True))
                .values(is_active=False, updated_at=_to_db(_utcnow()))
            )
            return result.rowcount > 0

    def touch_last_checked(self, token_id: int, checked_at: Optional[datetime] = None) -> None:
        """Stamp the time of the last solvency evaluation."""
        checked_at = checked_at or _utcnow()
        with self.db.get_session() as session:
            session.execute(
                update(PositionModel)
                .where(PositionModel.token_id == str(token_id))
                .values(last_checked=_to_db(checked_at))
            )

    def count_positions(self) -> Dict[str, int]:
        with self.db.get_session() as session:
            rows = (
                session.query(PositionModel.is_active, func.count())
                .group_by(PositionModel.is_active)
                .all()
            )
        counts = {"active": 0, "inactive": 0}
        for is_active, n in rows:
            counts["active" if is_active else "inactive"] = n
        return counts

    # ------------------------------------------------------------------
    # Audit trails (append-only)
    # ------------------------------------------------------------------

    def record_liquidation(self, attempt: LiquidationAttempt) -> None:
        with self.db.get_session() as session:
            session.add(
                LiquidationAttemptModel(
                    token_id=str(attempt.token_id),
                    timestamp=_to_db(attempt.timestamp),
                    success=attempt.success,
                    tx_hash=attempt.tx_hash,
                    error=attempt.error,
                )
            )

    def get_liquidation_attempts(self, token_id: Optional[int] = None, limit: int = 50) -> List[LiquidationAttempt]:
        """Most recent attempts first."""
        with self.db.get_session() as session:
            query = session.query(LiquidationAttemptModel)
            if token_id is not None:
                query = query.filter(LiquidationAttemptModel.token_id == str(token_id))
            rows = query.order_by(LiquidationAttemptModel.id.desc()).limit(limit).all()
            return [
                LiquidationAttempt(
                    token_id=int(r.token_id),
                    timestamp=_from_db(r.timestamp),
                    success=bool(r.success),
                    tx_hash=r.tx_hash,
                    error=r.error,
                )
                for r in rows
            ]

    def record_funding_update(self, record: FundingUpdateRecord) -> None:
        with self.db.get_session() as session:
            session.add(
                FundingUpdateModel(
                    block_number=record.block_number,
                    timestamp=_to_db(record.timestamp),
                    funding_rate=record.funding_rate,
                    tx_hash=record.tx_hash,
                )
            )

    def get_funding_updates(self, limit: int = 20) -> List[FundingUpdateRecord]:
        """Most recent updates first."""
        with self.db.get_session() as session:
            rows = (
                session.query(FundingUpdateModel)
                .order_by(FundingUpdateModel.id.desc())
                .limit(limit)
                .all()
            )
            return [
                FundingUpdateRecord(
                    block_number=r.block_number,
                    timestamp=_from_db(r.timestamp),
                    tx_hash=r.tx_hash,
                    funding_rate=r.funding_rate,
                )
                for r in rows
            ]
