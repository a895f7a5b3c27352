"""
Web3ChainClient tests: log decoding and the transaction pipeline.

No node is contacted; web3 calls are replaced with AsyncMocks.
"""
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from eth_abi import encode
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted

from keeper.chain.abi import POSITION_LIQUIDATED_EVENT, POSITION_OPENED_EVENT, event_signature
from keeper.chain.client import Web3ChainClient, apply_gas_buffer
from keeper.domain.models import EventType, TxReceipt
from keeper.exceptions import RpcError, TransactionFailedError

MANAGER = "0x" + "22" * 20
OWNER = Web3.to_checksum_address("0x" + "cd" * 20)


@pytest.fixture
def client():
    return Web3ChainClient(
        rpc_http_url="http://127.0.0.1:8545",
        chain_id=11155111,
        private_key="0x" + "11" * 32,
        position_manager=MANAGER,
        price_source="0x" + "33" * 20,
        position_registry="0x" + "44" * 20,
    )


def _topic(event_abi) -> str:
    return Web3.to_hex(Web3.keccak(text=event_signature(event_abi)))


def _word(value: int) -> bytes:
    return value.to_bytes(32, "big")


def _log(event_abi, token_id: int, data: bytes, block_number: int, log_index: int) -> dict:
    return {
        "address": MANAGER,
        "topics": [
            HexBytes(_topic(event_abi)),
            HexBytes(_word(token_id)),
            HexBytes(b"\x00" * 12 + bytes.fromhex(OWNER[2:])),
        ],
        "data": HexBytes(data),
        "blockNumber": block_number,
        "blockHash": HexBytes(b"\x01" * 32),
        "logIndex": log_index,
        "transactionIndex": 0,
        "transactionHash": HexBytes(b"\x02" * 32),
    }


def _opened_log(token_id=7, block_number=10, log_index=0):
    data = encode(
        ["uint256", "uint8", "uint256", "int256", "bool"],
        [10 ** 21, 5, 2 * 10 ** 21, -3, True],
    )
    return _log(POSITION_OPENED_EVENT, token_id, data, block_number, log_index)


def test_gas_buffer_is_twenty_percent():
    assert apply_gas_buffer(100_000) == 120_000
    assert apply_gas_buffer(21_001) == 25_201


def test_event_signatures():
    assert event_signature(POSITION_LIQUIDATED_EVENT) == "PositionLiquidated(uint256,address)"
    assert event_signature(POSITION_OPENED_EVENT) == (
        "PositionOpened(uint256,address,uint256,uint8,uint256,int256,bool)"
    )


def test_decode_position_opened(client):
    event = client.decode_log(_opened_log())

    assert event.event_type == EventType.POSITION_OPENED
    assert event.token_id == 7
    assert event.args["owner"] == OWNER
    assert event.args["collateral"] == 10 ** 21
    assert event.args["leverage"] == 5
    assert event.args["entryFundingRate"] == -3
    assert event.args["isLong"] is True
    assert event.tx_hash == "0x" + "02" * 32


def test_decode_position_liquidated_from_raw_hex(client):
    raw = _log(POSITION_LIQUIDATED_EVENT, 99, b"", 12, 3)
    raw = dict(
        raw,
        topics=[Web3.to_hex(t) for t in raw["topics"]],
        data="0x",
        blockNumber=hex(12),
        logIndex=hex(3),
    )

    event = client.decode_log(raw)

    assert event.event_type == EventType.POSITION_LIQUIDATED
    assert event.token_id == 99
    assert event.sort_key == (12, 3)


def test_unknown_topic_is_ignored(client):
    log = _opened_log()
    log["topics"][0] = HexBytes(Web3.keccak(text="Transfer(address,address,uint256)"))
    assert client.decode_log(log) is None


@pytest.mark.asyncio
async def test_get_events_orders_by_block_and_log_index(client):
    client.w3 = MagicMock()
    client.w3.eth.get_logs = AsyncMock(
        return_value=[_opened_log(1, 20, 0), _opened_log(2, 10, 5), _opened_log(3, 10, 1)]
    )

    events = await client.get_events(1, 50)

    assert [e.token_id for e in events] == [3, 2, 1]
    params = client.w3.eth.get_logs.call_args[0][0]
    assert params["fromBlock"] == 1
    assert params["toBlock"] == 50
    assert len(params["topics"][0]) == 3


@pytest.mark.asyncio
async def test_rpc_failures_become_rpc_error(client):
    client.w3 = MagicMock()
    client.w3.eth.get_logs = AsyncMock(side_effect=TimeoutError("read timed out"))

    with pytest.raises(RpcError):
        await client.get_events(1, 2)


def _mock_transact(client, receipt_status=1):
    client.w3 = MagicMock()
    client.w3.eth.get_transaction_count = AsyncMock(return_value=7)
    client.w3.eth.send_raw_transaction = AsyncMock(return_value=HexBytes(b"\xaa" * 32))
    client.w3.eth.wait_for_transaction_receipt = AsyncMock(
        return_value={"status": receipt_status, "blockNumber": 321, "gasUsed": 88_000}
    )
    client._account = MagicMock(address="0x" + "ab" * 20)
    client._account.sign_transaction.return_value = SimpleNamespace(raw_transaction=b"signed")

    fn = MagicMock()
    fn.estimate_gas = AsyncMock(return_value=100_000)
    fn.build_transaction = AsyncMock(side_effect=lambda tx: dict(tx, to=MANAGER, data="0x"))
    return fn


@pytest.mark.asyncio
async def test_transact_buffers_gas_and_returns_receipt(client):
    fn = _mock_transact(client)

    receipt = await client._transact("liquidatePosition(1)", fn, gas_price=5_000_000_000)

    assert receipt == TxReceipt(tx_hash="0x" + "aa" * 32, status=1, block_number=321, gas_used=88_000)
    tx = fn.build_transaction.call_args[0][0]
    assert tx["gas"] == 120_000
    assert tx["nonce"] == 7
    assert tx["gasPrice"] == 5_000_000_000
    assert tx["chainId"] == 11155111
    client.w3.eth.send_raw_transaction.assert_awaited_once_with(b"signed")


@pytest.mark.asyncio
async def test_reverted_receipt_raises(client):
    fn = _mock_transact(client, receipt_status=0)

    with pytest.raises(TransactionFailedError) as exc_info:
        await client._transact("updateFundingRate()", fn, gas_price=1)

    assert exc_info.value.tx_hash == "0x" + "aa" * 32


@pytest.mark.asyncio
async def test_reverting_estimate_is_not_sent(client):
    fn = _mock_transact(client)
    fn.estimate_gas = AsyncMock(side_effect=ContractLogicError("execution reverted: position healthy"))

    with pytest.raises(RpcError, match="reverted"):
        await client._transact("liquidatePosition(1)", fn, gas_price=1)

    client.w3.eth.send_raw_transaction.assert_not_awaited()


@pytest.mark.asyncio
async def test_receipt_timeout_carries_sent_tx_hash(client):
    fn = _mock_transact(client)
    client.w3.eth.wait_for_transaction_receipt = AsyncMock(side_effect=TimeExhausted("not mined"))

    with pytest.raises(RpcError, match="not mined") as exc_info:
        await client._transact("liquidatePosition(1)", fn, gas_price=1)

    assert exc_info.value.tx_hash == "0x" + "aa" * 32


@pytest.mark.asyncio
async def test_stream_requires_websocket_url(client):
    from keeper.exceptions import ConfigurationError

    assert client.supports_live_events is False
    with pytest.raises(ConfigurationError):
        async for _ in client.stream_events():
            pass
