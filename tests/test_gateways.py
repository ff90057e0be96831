"""
Tests for the chain and partner-stream gateways, using canned frames and
fake clients instead of live sockets.
"""
import json

import pytest
from eth_abi import encode
from web3 import Web3
from websockets.exceptions import ConnectionClosedError

from src.core.exceptions import UpstreamConnectionLost
from src.infrastructure.gateways.bsc_chain import (
    BOUGHT_TOPIC,
    SOLD_TOPIC,
    SWAP_TOPIC,
    BscSwapConnection,
    build_subscription_params,
    parse_curve_log,
    parse_swap_log,
)
from src.infrastructure.gateways.external_stream import (
    NEW_TRANSACTION_EVENT,
    ExternalTransactionSource,
    split_namespace,
)

SENDER = "0x10ED43C718714eb63d5aA57B78B54704E256024E"
RECIPIENT = "0x000000000000000000000000000000000000dEaD"


def topic_for(address: str) -> str:
    return "0x" + "00" * 12 + address[2:].lower()


def swap_log(amounts=(3 * 10**15, 0, 0, 120_500_000), removed=False) -> dict:
    return {
        "address": "0x1df65d3a75aecd000a9c17c97e99993af01dbcd1",
        "topics": [SWAP_TOPIC, topic_for(SENDER), topic_for(RECIPIENT)],
        "data": "0x" + encode(["uint256"] * 4, list(amounts)).hex(),
        "blockNumber": "0x1f4",
        "transactionIndex": "0x3",
        "logIndex": "0x7",
        "transactionHash": "0x" + "ab" * 32,
        "removed": removed,
    }


def notification(log: dict) -> str:
    return json.dumps({"jsonrpc": "2.0", "method": "eth_subscription", "params": {"subscription": "0x1", "result": log}})


class FakeWebSocket:
    def __init__(self, frames, error: Exception = None):
        self.frames = list(frames)
        self.error = error
        self.closed = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for frame in self.frames:
            yield frame
        if self.error is not None:
            raise self.error

    async def close(self):
        self.closed = True


def test_parse_swap_log_reads_topics_and_data():
    raw = parse_swap_log(swap_log())

    assert raw.sender == SENDER
    assert raw.to == RECIPIENT
    assert raw.amount0_in == 3 * 10**15
    assert raw.amount1_out == 120_500_000
    assert (raw.block_number, raw.transaction_index, raw.log_index) == (500, 3, 7)
    assert raw.tx_hash == "0x" + "ab" * 32


def test_parse_swap_log_accepts_bytes_fields():
    log = swap_log()
    log["topics"] = [bytes.fromhex(t[2:]) for t in log["topics"]]
    log["data"] = bytes.fromhex(log["data"][2:])
    log["transactionHash"] = bytes.fromhex("cd" * 32)
    log["blockNumber"] = 42

    raw = parse_swap_log(log)

    assert raw.sender == SENDER
    assert raw.tx_hash == "0x" + "cd" * 32
    assert raw.block_number == 42


def test_parse_swap_log_rejects_missing_topics():
    log = swap_log()
    log["topics"] = [SWAP_TOPIC]
    with pytest.raises(ValueError):
        parse_swap_log(log)


def test_parse_curve_logs():
    bought = {
        "topics": [BOUGHT_TOPIC, topic_for(SENDER)],
        "data": "0x" + encode(["uint256", "uint256"], [10**17, 25 * 10**18]).hex(),
        "blockNumber": 10,
    }
    sold = {
        "topics": [SOLD_TOPIC, topic_for(SENDER)],
        "data": "0x" + encode(["uint256", "uint256"], [12 * 10**18, 5 * 10**16]).hex(),
        "blockNumber": 11,
    }

    b = parse_curve_log(bought, "0xCurve")
    s = parse_curve_log(sold, "0xCurve")

    assert (b.name, b.eth_amount, b.token_amount) == ("Bought", 10**17, 25 * 10**18)
    assert (s.name, s.eth_amount, s.token_amount) == ("Sold", 5 * 10**16, 12 * 10**18)
    assert b.trader == SENDER


def test_subscription_filters_on_pair_and_swap_topic():
    params = build_subscription_params("0x1df65d3a75aecd000a9c17c97e99993af01dbcd1")

    assert params["method"] == "eth_subscribe"
    kind, log_filter = params["params"]
    assert kind == "logs"
    assert log_filter["address"].lower() == "0x1df65d3a75aecd000a9c17c97e99993af01dbcd1"
    assert Web3.is_checksum_address(log_filter["address"])
    assert log_filter["topics"] == [SWAP_TOPIC]


@pytest.mark.asyncio
async def test_swap_connection_yields_only_valid_notifications():
    bad = swap_log()
    bad["data"] = "0x1234"
    ws = FakeWebSocket([
        json.dumps({"jsonrpc": "2.0", "id": 1, "result": "0x1"}),
        "{broken",
        notification(bad),
        notification(swap_log(removed=True)),
        notification(swap_log()),
    ])

    events = [e async for e in BscSwapConnection(ws, "0x1").events()]

    assert len(events) == 1
    assert events[0].amount1_out == 120_500_000


@pytest.mark.asyncio
async def test_swap_connection_drop_raises_connection_lost():
    ws = FakeWebSocket([notification(swap_log())], error=ConnectionClosedError(None, None))
    connection = BscSwapConnection(ws, "0x1")

    received = []
    with pytest.raises(UpstreamConnectionLost):
        async for event in connection.events():
            received.append(event)

    assert len(received) == 1
    await connection.close()
    assert ws.closed



class FakeSocketIOClient:
    """Stands in for socketio.AsyncClient; tests fire server events by hand."""

    def __init__(self, fail_connect: bool = False):
        self.fail_connect = fail_connect
        self.handlers = {}
        self.connected_to = None
        self.disconnected = False

    def on(self, event, handler=None, namespace=None):
        self.handlers[(namespace, event)] = handler

    async def connect(self, url, namespaces=None, transports=None):
        if self.fail_connect:
            raise ConnectionError("refused")
        self.connected_to = (url, namespaces, transports)
        await self.handlers[(namespaces[0], "connect")]()

    async def fire(self, namespace, event, *args):
        await self.handlers[(namespace, event)](*args)

    async def disconnect(self):
        self.disconnected = True


def test_split_namespace():
    assert split_namespace("https://partner.example/events") == ("https://partner.example", "/events")
    assert split_namespace("https://partner.example") == ("https://partner.example", "/")


@pytest.mark.asyncio
async def test_external_stream_joins_the_namespace_over_websocket():
    client = FakeSocketIOClient()
    source = ExternalTransactionSource("https://partner.example/events", client_factory=lambda: client)

    await source.connect()

    assert client.connected_to == ("https://partner.example", ["/events"], ["websocket"])
    assert ("/events", NEW_TRANSACTION_EVENT) in client.handlers


@pytest.mark.asyncio
async def test_external_stream_yields_transactions_until_disconnect():
    tx = {"hash": "0xext", "amountInToken": 5, "amountInChainCurrency": 0.1}
    client = FakeSocketIOClient()
    connection = await ExternalTransactionSource(
        "https://partner.example/events", client_factory=lambda: client
    ).connect()

    await client.fire("/events", NEW_TRANSACTION_EVENT, tx)
    await client.fire("/events", NEW_TRANSACTION_EVENT, [1, 2, 3])
    await client.fire("/events", NEW_TRANSACTION_EVENT, tx)
    await client.fire("/events", "disconnect", "transport close")

    received = []
    with pytest.raises(UpstreamConnectionLost):
        async for event in connection.events():
            received.append(event)

    assert received == [tx, tx]
    await connection.close()
    assert client.disconnected


@pytest.mark.asyncio
async def test_external_stream_connect_failure_is_connection_lost():
    source = ExternalTransactionSource(
        "https://partner.example/events", client_factory=lambda: FakeSocketIOClient(fail_connect=True)
    )

    with pytest.raises(UpstreamConnectionLost):
        await source.connect()
