"""Gas-price ceiling shared by the liquidator and the funding updater."""
from decimal import Decimal

from web3 import Web3


def gwei_to_wei(gwei: float) -> int:
    return int(Web3.to_wei(Decimal(str(gwei)), "gwei"))


def wei_to_gwei(wei: int) -> str:
    return str(Web3.from_wei(wei, "gwei"))


def exceeds_ceiling(gas_price_wei: int, ceiling_gwei: float) -> bool:
    """True if the current gas price is strictly above the ceiling."""
    return gas_price_wei > gwei_to_wei(ceiling_gwei)
