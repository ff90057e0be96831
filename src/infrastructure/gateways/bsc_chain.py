import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import websockets
from eth_abi.abi import decode as abi_decode
from web3 import Web3

from src.core.entities.raw_event import RawCurveEvent, RawSwapEvent
from src.core.exceptions import BackfillQueryFailure, UpstreamConnectionLost
from src.core.interfaces.datasource import IEventConnection, IEventSource, ILogArchive

logger = logging.getLogger(__name__)

SWAP_SIGNATURE = "Swap(address,uint256,uint256,uint256,uint256,address)"
BOUGHT_SIGNATURE = "Bought(address,uint256,uint256)"
SOLD_SIGNATURE = "Sold(address,uint256,uint256)"

SWAP_TOPIC = Web3.to_hex(Web3.keccak(text=SWAP_SIGNATURE))
BOUGHT_TOPIC = Web3.to_hex(Web3.keccak(text=BOUGHT_SIGNATURE))
SOLD_TOPIC = Web3.to_hex(Web3.keccak(text=SOLD_SIGNATURE))

SUBSCRIPTION_TIMEOUT = 10.0
WS_PING_INTERVAL = 20.0
WS_PING_TIMEOUT = 20.0


# --- Log parsing ---

def _to_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        return bytes.fromhex(value[2:] if value.startswith("0x") else value)
    raise TypeError(f"Cannot read {type(value).__name__} as bytes")


def _to_hex(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return Web3.to_hex(bytes(value))
    return str(value)


def _to_int(value: Any) -> int:
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value or 0)


def _topic_address(topic: Any) -> str:
    # Indexed addresses are left-padded to 32 bytes
    return Web3.to_checksum_address("0x" + _to_bytes(topic)[-20:].hex())


def parse_swap_log(log: Dict[str, Any]) -> RawSwapEvent:
    """
    Swap(address indexed sender, uint amount0In, uint amount1In,
         uint amount0Out, uint amount1Out, address indexed to)
    """
    topics = log.get("topics", [])
    if len(topics) < 3:
        raise ValueError(f"Swap log has {len(topics)} topics, expected 3")
    amount0_in, amount1_in, amount0_out, amount1_out = abi_decode(
        ["uint256", "uint256", "uint256", "uint256"], _to_bytes(log.get("data", "0x"))
    )
    return RawSwapEvent(
        sender=_topic_address(topics[1]),
        amount0_in=amount0_in,
        amount1_in=amount1_in,
        amount0_out=amount0_out,
        amount1_out=amount1_out,
        to=_topic_address(topics[2]),
        tx_hash=_to_hex(log.get("transactionHash")),
        block_number=_to_int(log.get("blockNumber")),
        transaction_index=_to_int(log.get("transactionIndex")),
        log_index=_to_int(log.get("logIndex")),
    )


def parse_curve_log(log: Dict[str, Any], curve_address: str) -> RawCurveEvent:
    """
    Bought(address indexed buyer, uint256 ethIn, uint256 tokensOut)
    Sold(address indexed seller, uint256 tokensIn, uint256 ethOut)
    """
    topics = log.get("topics", [])
    topic0 = _to_hex(topics[0]).lower() if topics else None
    first, second = abi_decode(["uint256", "uint256"], _to_bytes(log.get("data", "0x")))
    if topic0 == BOUGHT_TOPIC:
        name, eth_amount, token_amount = "Bought", first, second
    elif topic0 == SOLD_TOPIC:
        name, token_amount, eth_amount = "Sold", first, second
    else:
        raise ValueError(f"Unexpected curve topic {topic0}")
    return RawCurveEvent(
        name=name,
        curve_address=curve_address,
        trader=_topic_address(topics[1]) if len(topics) > 1 else None,
        eth_amount=eth_amount,
        token_amount=token_amount,
        tx_hash=_to_hex(log.get("transactionHash")),
        block_number=_to_int(log.get("blockNumber")),
        transaction_index=_to_int(log.get("transactionIndex")),
        log_index=_to_int(log.get("logIndex")),
    )


def build_subscription_params(pair_address: str) -> Dict[str, Any]:
    return {
        "jsonrpc": "2.0",
        "id": 1,
        "method": "eth_subscribe",
        "params": [
            "logs",
            {
                "address": Web3.to_checksum_address(pair_address),
                "topics": [SWAP_TOPIC],
            },
        ],
    }


# --- Live subscription (node websocket) ---

class BscSwapConnection(IEventConnection):
    def __init__(self, ws, subscription_id: str):
        self.ws = ws
        self.subscription_id = subscription_id

    async def events(self) -> AsyncIterator[RawSwapEvent]:
        try:
            async for raw_message in self.ws:
                try:
                    message = json.loads(raw_message)
                except json.JSONDecodeError as e:
                    logger.warning(f"Invalid JSON from node: {e}")
                    continue

                # eth_subscribe notifications have method "eth_subscription"
                if message.get("method") != "eth_subscription":
                    continue
                log_data = message.get("params", {}).get("result")
                if not log_data:
                    continue
                if log_data.get("removed"):
                    # Reorged out
                    continue
                try:
                    yield parse_swap_log(log_data)
                except Exception as e:
                    logger.warning(f"Skipping undecodable Swap log: {e}")
        except websockets.exceptions.ConnectionClosed as e:
            raise UpstreamConnectionLost(f"Node websocket closed: {e}") from e

    async def close(self) -> None:
        await self.ws.close()


class BscSwapSource(IEventSource):
    """
    Live Swap logs for one pair via eth_subscribe on a node websocket.
    """

    def __init__(self, ws_url: str, pair_address: str):
        self.ws_url = ws_url
        self.pair_address = pair_address

    async def connect(self) -> BscSwapConnection:
        logger.info(f"Connecting to node websocket for pair {self.pair_address}")
        ws = await websockets.connect(
            self.ws_url,
            ping_interval=WS_PING_INTERVAL,
            ping_timeout=WS_PING_TIMEOUT,
            max_size=10 * 1024 * 1024,
        )
        try:
            await ws.send(json.dumps(build_subscription_params(self.pair_address)))
            response = json.loads(await asyncio.wait_for(ws.recv(), timeout=SUBSCRIPTION_TIMEOUT))
        except Exception as e:
            await ws.close()
            raise UpstreamConnectionLost(f"Subscription handshake failed: {e}") from e

        if "error" in response:
            await ws.close()
            raise UpstreamConnectionLost(f"Subscription error: {response['error']}")

        subscription_id = response.get("result", "unknown")
        logger.info(f"Subscribed to Swap logs. Subscription ID: {subscription_id}")
        return BscSwapConnection(ws, subscription_id)


# --- Historical queries (node HTTP RPC) ---

class BscLogArchive(ILogArchive):
    """
    Range queries over eth_getLogs. web3's HTTP provider is synchronous, so
    every call runs in a worker thread.
    """

    def __init__(self, rpc_url: str, pair_address: Optional[str] = None):
        self.rpc_url = rpc_url
        self.pair_address = pair_address
        self.w3 = Web3(Web3.HTTPProvider(rpc_url))

    async def get_block_number(self) -> int:
        try:
            return await asyncio.to_thread(lambda: self.w3.eth.block_number)
        except Exception as e:
            raise BackfillQueryFailure(f"Failed to read block number: {e}") from e

    async def _get_logs(self, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        try:
            return await asyncio.to_thread(self.w3.eth.get_logs, params)
        except Exception as e:
            raise BackfillQueryFailure(f"eth_getLogs failed: {e}") from e

    async def get_swap_logs(self, from_block: int, to_block: int) -> List[RawSwapEvent]:
        if not self.pair_address:
            raise BackfillQueryFailure("No pair address configured")
        logs = await self._get_logs({
            "address": Web3.to_checksum_address(self.pair_address),
            "fromBlock": from_block,
            "toBlock": to_block,
            "topics": [SWAP_TOPIC],
        })
        events = []
        for log in logs:
            try:
                events.append(parse_swap_log(dict(log)))
            except Exception as e:
                logger.warning(f"Skipping malformed Swap log: {e}")
        return events

    async def get_curve_logs(self, curve_address: str, from_block: int, to_block: int) -> List[RawCurveEvent]:
        logs = await self._get_logs({
            "address": Web3.to_checksum_address(curve_address),
            "fromBlock": from_block,
            "toBlock": to_block,
            "topics": [[BOUGHT_TOPIC, SOLD_TOPIC]],
        })
        events = []
        for log in logs:
            try:
                events.append(parse_curve_log(dict(log), curve_address))
            except Exception as e:
                logger.warning(f"Skipping malformed curve log: {e}")
        return events
