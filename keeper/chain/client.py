"""
web3.py adapter implementing the ChainClient protocol.

Reads and writes go over HTTP (AsyncHTTPProvider); live events come from a
separate WebSocket subscription. Every web3/aiohttp failure is translated
into the keeper's exception hierarchy at this boundary.
"""
import asyncio
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional

import aiohttp
from eth_account import Account
from hexbytes import HexBytes
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3, WebSocketProvider
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from keeper.chain.abi import (
    LIFECYCLE_EVENTS,
    POSITION_MANAGER_ABI,
    POSITION_REGISTRY_ABI,
    PRICE_SOURCE_ABI,
    event_signature,
)
from keeper.config.config import Config
from keeper.domain.models import (
    ChainEvent,
    EventType,
    PositionData,
    PriceSnapshot,
    TxReceipt,
    utc_from_timestamp,
)
from keeper.exceptions import (
    ConfigurationError,
    DataError,
    EventStreamLostError,
    RpcError,
    TransactionFailedError,
)
from keeper.monitoring.logger import get_logger

logger = get_logger(__name__)

GAS_LIMIT_BUFFER_PCT = 120  # +20% over the node's estimate
_TRANSPORT_ERRORS = (Web3Exception, aiohttp.ClientError, asyncio.TimeoutError, ValueError, OSError)


def apply_gas_buffer(estimate: int) -> int:
    return estimate * GAS_LIMIT_BUFFER_PCT // 100


def _hex(value: Any) -> str:
    if isinstance(value, str):
        return value.lower()
    return Web3.to_hex(value)


def _as_int(value: Any) -> int:
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)


def _normalize_log(log: Mapping[str, Any]) -> Dict[str, Any]:
    """Coerce a raw or formatted log into the shape web3's decoder expects."""
    return {
        "address": Web3.to_checksum_address(log["address"]),
        "topics": [HexBytes(t) for t in log["topics"]],
        "data": HexBytes(log.get("data") or b""),
        "blockNumber": _as_int(log["blockNumber"]),
        "blockHash": HexBytes(log.get("blockHash") or b""),
        "logIndex": _as_int(log["logIndex"]),
        "transactionIndex": _as_int(log.get("transactionIndex") or 0),
        "transactionHash": HexBytes(log.get("transactionHash") or b""),
        "removed": bool(log.get("removed", False)),
    }


class Web3ChainClient:
    """
    The keeper's single chain adapter.

    Construct with connect(), which fails fast when the node is unreachable
    or serves a different chain than configured.
    """

    def __init__(
        self,
        *,
        rpc_http_url: str,
        chain_id: int,
        private_key: str,
        position_manager: str,
        price_source: str,
        position_registry: str,
        rpc_ws_url: Optional[str] = None,
        request_timeout_seconds: float = 30.0,
        tx_receipt_timeout_seconds: float = 120.0,
    ):
        self.rpc_ws_url = rpc_ws_url
        self.chain_id = chain_id
        self.tx_receipt_timeout_seconds = tx_receipt_timeout_seconds

        self.w3 = AsyncWeb3(
            AsyncHTTPProvider(
                rpc_http_url,
                request_kwargs={"timeout": aiohttp.ClientTimeout(total=request_timeout_seconds)},
            )
        )
        self._account = Account.from_key(private_key)

        self._position_manager_address = Web3.to_checksum_address(position_manager)
        self._position_manager = self.w3.eth.contract(address=self._position_manager_address, abi=POSITION_MANAGER_ABI)
        self._price_source = self.w3.eth.contract(
            address=Web3.to_checksum_address(price_source), abi=PRICE_SOURCE_ABI
        )
        self._position_registry = self.w3.eth.contract(
            address=Web3.to_checksum_address(position_registry), abi=POSITION_REGISTRY_ABI
        )

        self._topics: Dict[str, EventType] = {
            Web3.to_hex(Web3.keccak(text=event_signature(abi))): EventType(abi["name"])
            for abi in LIFECYCLE_EVENTS
        }

        # One signing key: serialize nonce allocation across services
        self._tx_lock = asyncio.Lock()

    @classmethod
    async def connect(cls, config: Config) -> "Web3ChainClient":
        """Build from config and verify the node before any loop starts."""
        client = cls(
            rpc_http_url=config.chain.rpc_http_url,
            rpc_ws_url=config.chain.rpc_ws_url,
            chain_id=config.chain.chain_id,
            private_key=config.chain.private_key.get_secret_value(),
            position_manager=config.contracts.position_manager,
            price_source=config.contracts.price_source,
            position_registry=config.contracts.position_registry,
            request_timeout_seconds=config.chain.request_timeout_seconds,
            tx_receipt_timeout_seconds=config.chain.tx_receipt_timeout_seconds,
        )
        try:
            await client.verify()
        except Exception:
            await client.close()
            raise
        return client

    async def verify(self) -> None:
        connected = await self._rpc("is_connected", self.w3.is_connected())
        if not connected:
            raise RpcError("RPC endpoint is not reachable")
        node_chain_id = await self._rpc("chain_id", self.w3.eth.chain_id)
        if node_chain_id != self.chain_id:
            raise ConfigurationError(
                f"RPC serves chain {node_chain_id}, configured chain_id is {self.chain_id}"
            )
        logger.info(
            "CHAIN_CLIENT_CONNECTED",
            chain_id=self.chain_id,
            keeper_address=self.address,
            position_manager=self._position_manager_address,
            live_events=self.supports_live_events,
        )

    @property
    def address(self) -> str:
        return self._account.address

    @property
    def supports_live_events(self) -> bool:
        return bool(self.rpc_ws_url)

    async def _rpc(self, label: str, awaitable):
        try:
            return await awaitable
        except ContractLogicError as e:
            raise RpcError(f"{label} reverted: {e}") from e
        except _TRANSPORT_ERRORS as e:
            raise RpcError(f"{label} failed: {type(e).__name__}: {e}") from e

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_current_price(self) -> PriceSnapshot:
        price, is_valid = await self._rpc(
            "getCurrentPrice", self._price_source.functions.getCurrentPrice().call()
        )
        return PriceSnapshot(price=int(price), is_valid=bool(is_valid))

    async def get_accumulated_funding(self) -> int:
        value = await self._rpc(
            "fundingRateAccumulated", self._position_manager.functions.fundingRateAccumulated().call()
        )
        return int(value)

    async def get_current_funding_rate(self) -> int:
        value = await self._rpc(
            "getCurrentFundingRate", self._position_manager.functions.getCurrentFundingRate().call()
        )
        return int(value)

    async def get_position_data(self, token_id: int) -> PositionData:
        collateral, leverage, entry_price, entry_funding_rate, is_long = await self._rpc(
            "getPositionData", self._position_registry.functions.getPositionData(token_id).call()
        )
        return PositionData(
            collateral=int(collateral),
            leverage=int(leverage),
            entry_price=int(entry_price),
            entry_funding_rate=int(entry_funding_rate),
            is_long=bool(is_long),
        )

    async def get_gas_price(self) -> int:
        return int(await self._rpc("gas_price", self.w3.eth.gas_price))

    async def get_block_number(self) -> int:
        return int(await self._rpc("block_number", self.w3.eth.block_number))

    async def get_block_timestamp(self, block_number: int) -> datetime:
        block = await self._rpc("get_block", self.w3.eth.get_block(block_number))
        return utc_from_timestamp(block["timestamp"])

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _log_filter(self) -> Dict[str, Any]:
        return {"address": self._position_manager_address, "topics": [list(self._topics)]}

    def decode_log(self, log: Mapping[str, Any]) -> Optional[ChainEvent]:
        """Decode one position-manager log; None for unknown topics."""
        normalized = _normalize_log(log)
        if not normalized["topics"]:
            return None
        event_type = self._topics.get(_hex(normalized["topics"][0]))
        if event_type is None:
            return None
        try:
            decoded = getattr(self._position_manager.events, event_type.value)().process_log(normalized)
        except (Web3Exception, ValueError, TypeError) as e:
            raise DataError(f"Undecodable {event_type.value} log: {e}") from e
        return ChainEvent(
            event_type=event_type,
            args=dict(decoded["args"]),
            block_number=normalized["blockNumber"],
            log_index=normalized["logIndex"],
            tx_hash=_hex(normalized["transactionHash"]),
        )

    async def get_events(self, from_block: int, to_block: int) -> List[ChainEvent]:
        """Lifecycle events in [from_block, to_block], in chain order."""
        params = dict(self._log_filter(), fromBlock=from_block, toBlock=to_block)
        logs = await self._rpc("get_logs", self.w3.eth.get_logs(params))
        events = [e for e in (self.decode_log(log) for log in logs) if e is not None]
        events.sort(key=lambda e: e.sort_key)
        return events

    async def stream_events(self) -> AsyncIterator[ChainEvent]:
        """
        Yield live lifecycle events from the WebSocket subscription.

        Any loss of the stream raises EventStreamLostError; it is never
        reconnected here.
        """
        if not self.rpc_ws_url:
            raise ConfigurationError("No RPC WebSocket URL configured; live events are disabled")

        try:
            async with AsyncWeb3(WebSocketProvider(self.rpc_ws_url)) as ws:
                subscription_id = await ws.eth.subscribe("logs", self._log_filter())
                logger.info("EVENT_SUBSCRIPTION_ACTIVE", subscription_id=str(subscription_id))
                async for message in ws.socket.process_subscriptions():
                    log = message["result"]
                    if log.get("removed"):
                        logger.warning("EVENT_REMOVED_BY_REORG", block_number=_as_int(log["blockNumber"]))
                        continue
                    try:
                        event = self.decode_log(log)
                    except DataError as e:
                        logger.error("EVENT_DECODE_FAILED", error=str(e))
                        continue
                    if event is not None:
                        yield event
        except Exception as e:
            raise EventStreamLostError(f"Event stream lost: {type(e).__name__}: {e}") from e
        raise EventStreamLostError("Event stream closed by the node")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def liquidate_position(self, token_id: int, *, gas_price: int) -> TxReceipt:
        return await self._transact(
            f"liquidatePosition({token_id})",
            self._position_manager.functions.liquidatePosition(token_id),
            gas_price=gas_price,
        )

    async def update_funding_rate(self, *, gas_price: int) -> TxReceipt:
        return await self._transact(
            "updateFundingRate()",
            self._position_manager.functions.updateFundingRate(),
            gas_price=gas_price,
        )

    async def _transact(self, label: str, fn, *, gas_price: int) -> TxReceipt:
        """Estimate (+20%), sign, send and wait for the receipt."""
        async with self._tx_lock:
            estimate = await self._rpc(f"{label} estimate_gas", fn.estimate_gas({"from": self.address}))
            nonce = await self._rpc(
                "get_transaction_count", self.w3.eth.get_transaction_count(self.address, "pending")
            )
            tx = await self._rpc(
                f"{label} build_transaction",
                fn.build_transaction(
                    {
                        "from": self.address,
                        "nonce": nonce,
                        "gas": apply_gas_buffer(estimate),
                        "gasPrice": gas_price,
                        "chainId": self.chain_id,
                    }
                ),
            )
            signed = self._account.sign_transaction(tx)
            tx_hash = _hex(await self._rpc(f"{label} send", self.w3.eth.send_raw_transaction(signed.raw_transaction)))

        logger.info("TX_SENT", call=label, tx_hash=tx_hash, gas_limit=tx["gas"], gas_price_gwei=str(Web3.from_wei(gas_price, "gwei")))

        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.tx_receipt_timeout_seconds)
        except TimeExhausted as e:
            raise RpcError(
                f"{label} not mined within {self.tx_receipt_timeout_seconds}s (tx {tx_hash})", tx_hash=tx_hash
            ) from e
        except _TRANSPORT_ERRORS as e:
            raise RpcError(f"{label} receipt failed (tx {tx_hash}): {e}", tx_hash=tx_hash) from e

        result = TxReceipt(
            tx_hash=tx_hash,
            status=int(receipt["status"]),
            block_number=int(receipt["blockNumber"]),
            gas_used=int(receipt.get("gasUsed", 0)),
        )
        if not result.succeeded:
            raise TransactionFailedError(f"{label} reverted on-chain (tx {tx_hash})", tx_hash=tx_hash)
        return result

    async def close(self) -> None:
        disconnect = getattr(self.w3.provider, "disconnect", None)
        if disconnect is not None:
            try:
                await disconnect()
            except _TRANSPORT_ERRORS as e:
                logger.warning("CHAIN_CLIENT_CLOSE_FAILED", error=str(e))
