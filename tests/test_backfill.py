"""
Tests for the cold-start history backfill.
"""
from typing import List

import pytest

from src.core.entities.raw_event import RawCurveEvent, RawSwapEvent
from src.core.exceptions import BackfillQueryFailure, SubscriberRejected
from src.core.interfaces.datasource import ILogArchive
from src.core.services import TradeFeedService
from src.core.use_cases.backfill import Backfill
from src.core.use_cases.broadcaster import HISTORY_EVENT, Broadcaster, SubscriberRegistry
from src.core.use_cases.trade_history import TradeHistory
from tests.factories import make_swap, make_trade


class FakeArchive(ILogArchive):
    def __init__(self, logs: List[RawSwapEvent], head: int = 1000, fail: bool = False):
        self.logs = logs
        self.head = head
        self.fail = fail
        self.ranges = []
        self.head_reads = 0

    async def get_block_number(self) -> int:
        self.head_reads += 1
        return self.head

    async def get_swap_logs(self, from_block: int, to_block: int) -> List[RawSwapEvent]:
        self.ranges.append((from_block, to_block))
        if self.fail:
            raise BackfillQueryFailure("rpc timeout")
        return self.logs

    async def get_curve_logs(self, curve_address: str, from_block: int, to_block: int) -> List[RawCurveEvent]:
        return []


@pytest.mark.asyncio
async def test_backfill_orders_most_recent_first():
    logs = [
        make_swap(tx_hash="0xb1t0", block_number=901, transaction_index=0),
        make_swap(tx_hash="0xb3t1", block_number=903, transaction_index=1),
        make_swap(tx_hash="0xb3t4", block_number=903, transaction_index=4),
        make_swap(tx_hash="0xb2t9", block_number=902, transaction_index=9),
    ]
    history = TradeHistory(capacity=30)
    archive = FakeArchive(logs)

    added = await Backfill(archive, history, lookback_blocks=500).run()

    assert added == 4
    assert archive.ranges == [(500, 1000)]
    assert [t.hash for t in history.snapshot()] == ["0xb3t4", "0xb3t1", "0xb2t9", "0xb1t0"]


@pytest.mark.asyncio
async def test_backfill_skips_rejected_and_truncates():
    logs = [make_swap(tx_hash=f"0x{i}", block_number=i) for i in range(10)]
    logs.append(make_swap(tx_hash="0xnoise", block_number=99, amount1_out=0, amount1_in=0))
    history = TradeHistory(capacity=3)

    await Backfill(FakeArchive(logs), history).run()

    assert [t.hash for t in history.snapshot()] == ["0x9", "0x8", "0x7"]


@pytest.mark.asyncio
async def test_backfill_failure_leaves_history_unchanged():
    history = TradeHistory(capacity=30)
    existing = make_trade()
    history.insert(existing)

    added = await Backfill(FakeArchive([], fail=True), history).run()

    assert added == 0
    assert history.snapshot() == (existing,)


@pytest.mark.asyncio
async def test_run_if_empty_skips_populated_history():
    history = TradeHistory(capacity=30)
    history.insert(make_trade())
    archive = FakeArchive([make_swap()])

    assert await Backfill(archive, history).run_if_empty() == 0
    assert archive.ranges == []


@pytest.mark.asyncio
async def test_lookback_is_clamped_at_genesis():
    archive = FakeArchive([], head=120)
    await Backfill(archive, TradeHistory(), lookback_blocks=500).run()
    assert archive.ranges == [(0, 120)]


@pytest.mark.asyncio
async def test_feed_backfills_only_when_empty():
    history = TradeHistory(capacity=30)
    archive = FakeArchive([make_swap(tx_hash="0xhist")])
    feed = TradeFeedService(history, Broadcaster(), backfill=Backfill(archive, history))

    assert await feed.ensure_backfilled() == 1
    assert await feed.ensure_backfilled() == 0
    assert len(archive.ranges) == 1


@pytest.mark.asyncio
async def test_backfill_is_not_broadcast():
    history = TradeHistory(capacity=30)
    feed = TradeFeedService(history, Broadcaster(), backfill=Backfill(FakeArchive([make_swap()]), history))
    channel = feed.attach("10.0.0.1")

    await feed.ensure_backfilled()

    assert channel.pending() == 1  # only the (empty) snapshot


@pytest.mark.asyncio
async def test_first_subscriber_gets_backfilled_snapshot():
    history = TradeHistory(capacity=30)
    archive = FakeArchive([make_swap(tx_hash="0xhist")])
    feed = TradeFeedService(
        history, Broadcaster(SubscriberRegistry(min_interval=0)), backfill=Backfill(archive, history)
    )

    channel = await feed.subscribe("10.0.0.1")

    message = await channel.receive()
    assert message["event"] == HISTORY_EVENT
    assert [t["hash"] for t in message["data"]] == ["0xhist"]


@pytest.mark.asyncio
async def test_throttled_subscriber_does_not_trigger_backfill():
    history = TradeHistory(capacity=30)
    archive = FakeArchive([make_swap()])
    feed = TradeFeedService(
        history, Broadcaster(SubscriberRegistry(min_interval=60)), backfill=Backfill(archive, history)
    )
    feed.broadcaster.admit("1.2.3.4")

    for _ in range(5):
        with pytest.raises(SubscriberRejected):
            await feed.subscribe("1.2.3.4")

    assert archive.head_reads == 0
    assert archive.ranges == []
    assert history.is_empty()
