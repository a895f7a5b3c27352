"""
Solvency model for leveraged positions.

Pure functions only: liquidatability depends on the position's entry terms
and one market snapshot, nothing else. Arithmetic is done in Decimal so the
threshold comparison is exact for fixed-point inputs.
"""
from dataclasses import dataclass
from decimal import Decimal

from keeper.domain.models import FUNDING_RATE_SCALE, Position, from_wad
from keeper.exceptions import InvalidPriceError

MAINTENANCE_MARGIN_RATIO = Decimal("0.05")


@dataclass(frozen=True)
class SolvencyAssessment:
    """Result of evaluating one position. Monetary fields are in collateral units."""
    collateral: Decimal
    price_change: Decimal
    pnl: Decimal
    funding_payment: Decimal
    remaining_value: Decimal
    maintenance_margin: Decimal

    @property
    def liquidatable(self) -> bool:
        return self.remaining_value <= self.maintenance_margin

    def as_log_fields(self) -> dict:
        return {
            "collateral": str(self.collateral),
            "price_change_pct": str((self.price_change * 100).quantize(Decimal("0.01"))),
            "pnl": str(self.pnl),
            "funding_payment": str(self.funding_payment),
            "remaining_value": str(self.remaining_value),
            "maintenance_margin": str(self.maintenance_margin),
        }


def assess_solvency(
    *,
    collateral: int,
    leverage: int,
    entry_price: int,
    entry_funding_rate: int,
    is_long: bool,
    current_price: int,
    accumulated_funding: int,
) -> SolvencyAssessment:
    """
    Evaluate a position against the maintenance margin.

    collateral, entry_price and current_price are wad integers; the funding
    values are accumulated-funding units where 10,000 = 100%. Longs pay
    positive funding, shorts receive it.
    """
    if entry_price <= 0:
        raise InvalidPriceError(f"Entry price must be positive (got {entry_price})")

    collateral_d = from_wad(collateral)
    price_factor = Decimal(current_price) / Decimal(entry_price)
    price_change = price_factor - 1 if is_long else 1 - price_factor

    pnl = collateral_d * leverage * price_change

    funding_delta = accumulated_funding - entry_funding_rate
    funding_payment = collateral_d * funding_delta / FUNDING_RATE_SCALE
    if is_long:
        funding_payment = -funding_payment

    return SolvencyAssessment(
        collateral=collateral_d,
        price_change=price_change,
        pnl=pnl,
        funding_payment=funding_payment,
        remaining_value=collateral_d + pnl + funding_payment,
        maintenance_margin=collateral_d * MAINTENANCE_MARGIN_RATIO,
    )


def assess_position(position: Position, current_price: int, accumulated_funding: int) -> SolvencyAssessment:
    """assess_solvency() for a stored Position."""
    return assess_solvency(
        collateral=position.collateral,
        leverage=position.leverage,
        entry_price=position.entry_price,
        entry_funding_rate=position.entry_funding_rate,
        is_long=position.is_long,
        current_price=current_price,
        accumulated_funding=accumulated_funding,
    )
