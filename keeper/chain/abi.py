"""
Minimal ABIs for the contracts the keeper talks to.

Only the functions and events the keeper calls or decodes are listed.
"""
from typing import Dict, List


def _input(name: str, type_: str, indexed: bool = False) -> Dict:
    return {"name": name, "type": type_, "indexed": indexed}


def _fn(name: str, inputs: List[Dict], outputs: List[Dict], mutability: str = "view") -> Dict:
    return {
        "type": "function",
        "name": name,
        "inputs": [{"name": i["name"], "type": i["type"]} for i in inputs],
        "outputs": [{"name": o["name"], "type": o["type"]} for o in outputs],
        "stateMutability": mutability,
    }


def _event(name: str, inputs: List[Dict]) -> Dict:
    return {"type": "event", "name": name, "anonymous": False, "inputs": inputs}


POSITION_OPENED_EVENT = _event(
    "PositionOpened",
    [
        _input("tokenId", "uint256", indexed=True),
        _input("owner", "address", indexed=True),
        _input("collateral", "uint256"),
        _input("leverage", "uint8"),
        _input("entryPrice", "uint256"),
        _input("entryFundingRate", "int256"),
        _input("isLong", "bool"),
    ],
)

POSITION_CLOSED_EVENT = _event(
    "PositionClosed",
    [
        _input("tokenId", "uint256", indexed=True),
        _input("owner", "address", indexed=True),
        _input("pnl", "int256"),
        _input("fundingPayment", "int256"),
        _input("fees", "uint256"),
    ],
)

POSITION_LIQUIDATED_EVENT = _event(
    "PositionLiquidated",
    [
        _input("tokenId", "uint256", indexed=True),
        _input("owner", "address", indexed=True),
    ],
)

POSITION_MANAGER_ABI = [
    POSITION_OPENED_EVENT,
    POSITION_CLOSED_EVENT,
    POSITION_LIQUIDATED_EVENT,
    _fn("liquidatePosition", [_input("tokenId", "uint256")], [], mutability="nonpayable"),
    _fn("updateFundingRate", [], [], mutability="nonpayable"),
    _fn("fundingRateAccumulated", [], [_input("", "int256")]),
    _fn("getCurrentFundingRate", [], [_input("", "int256")]),
]

PRICE_SOURCE_ABI = [
    _fn("getCurrentPrice", [], [_input("price", "uint256"), _input("isValid", "bool")]),
]

POSITION_REGISTRY_ABI = [
    _fn(
        "getPositionData",
        [_input("tokenId", "uint256")],
        [
            _input("collateral", "uint256"),
            _input("leverage", "uint8"),
            _input("entryPrice", "uint256"),
            _input("entryFundingRate", "int256"),
            _input("isLong", "bool"),
        ],
    ),
]

LIFECYCLE_EVENTS = (POSITION_OPENED_EVENT, POSITION_CLOSED_EVENT, POSITION_LIQUIDATED_EVENT)


def event_signature(event_abi: Dict) -> str:
    """Canonical signature, e.g. PositionLiquidated(uint256,address)."""
    return f"{event_abi['name']}({','.join(i['type'] for i in event_abi['inputs'])})"
