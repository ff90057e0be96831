import asyncio
import random
from typing import AsyncIterator, List

from src.core.entities.raw_event import RawCurveEvent, RawSwapEvent
from src.core.interfaces.datasource import IEventConnection, IEventSource, ILogArchive

MOCK_SENDER = "0x000000000000000000000000000000000000dEaD"
MOCK_POOL = "0x1df65d3a75aecd000a9c17c97e99993af01dbcd1"


def mock_swap(block_number: int, index: int, buy: bool = True) -> RawSwapEvent:
    token = random.randint(1, 5_000) * 10**6
    base = random.randint(1, 1_000) * 10**15
    return RawSwapEvent(
        sender=MOCK_SENDER,
        amount0_in=base if buy else 0,
        amount1_in=0 if buy else token,
        amount0_out=0 if buy else base,
        amount1_out=token if buy else 0,
        to=MOCK_POOL,
        tx_hash=f"0x{block_number:032x}{index:032x}",
        block_number=block_number,
        transaction_index=index,
        log_index=index,
    )


class LocalMockConnection(IEventConnection):
    def __init__(self, interval: float, max_events: int, start_block: int):
        self.interval = interval
        self.max_events = max_events
        self.block = start_block
        self.closed = False

    async def events(self) -> AsyncIterator[RawSwapEvent]:
        for i in range(self.max_events):
            if self.closed:
                return
            await asyncio.sleep(self.interval)
            self.block += 1
            yield mock_swap(self.block, i, buy=random.random() < 0.5)

    async def close(self) -> None:
        self.closed = True


class LocalMockEventSource(IEventSource, ILogArchive):
    """
    Synthetic Swap feed for running the service without a node.
    Each connection emits `events_per_connection` swaps then closes,
    which exercises the reconnect path.
    """

    def __init__(self, interval: float = 2.0, events_per_connection: int = 50, head_block: int = 1_000_000):
        self.interval = interval
        self.events_per_connection = events_per_connection
        self.head_block = head_block

    async def connect(self) -> LocalMockConnection:
        return LocalMockConnection(self.interval, self.events_per_connection, self.head_block)

    async def get_block_number(self) -> int:
        return self.head_block

    async def get_swap_logs(self, from_block: int, to_block: int) -> List[RawSwapEvent]:
        return [mock_swap(block, 0, buy=block % 2 == 0) for block in range(max(from_block, to_block - 40), to_block + 1)]

    async def get_curve_logs(self, curve_address: str, from_block: int, to_block: int) -> List[RawCurveEvent]:
        return [
            RawCurveEvent(name="Bought", curve_address=curve_address, trader=MOCK_SENDER,
                          eth_amount=10**17, token_amount=25 * 10**18, tx_hash="0xmockbought",
                          block_number=to_block),
            RawCurveEvent(name="Sold", curve_address=curve_address, trader=MOCK_SENDER,
                          eth_amount=5 * 10**16, token_amount=12 * 10**18, tx_hash="0xmocksold",
                          block_number=to_block),
        ]
