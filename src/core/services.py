import asyncio
import logging
import threading
from typing import Any, Callable, List, Optional

from src.core.entities.trade import Trade, TradeSource
from src.core.interfaces.datasource import ISnapshotStore
from src.core.use_cases.backfill import Backfill
from src.core.use_cases.broadcaster import Broadcaster, SubscriberChannel
from src.core.use_cases.event_decoder import DecodeResult
from src.core.use_cases.trade_history import TradeHistory
from src.core.use_cases.upstream_subscription import UpstreamSubscription

logger = logging.getLogger(__name__)


class TradeFeedService:
    """
    Owns the shared trade history and the broadcaster, and is the only way
    either gets mutated.

    One gate covers insert+publish and snapshot+attach, so a trade racing
    with a new subscriber lands in exactly one of its snapshot or its first
    live message.
    """

    def __init__(
        self,
        history: TradeHistory,
        broadcaster: Broadcaster,
        snapshot_store: Optional[ISnapshotStore] = None,
        backfill: Optional[Backfill] = None,
    ):
        self.history = history
        self.broadcaster = broadcaster
        self.snapshot_store = snapshot_store
        self.backfill = backfill
        self.subscriptions: List[UpstreamSubscription] = []
        self._gate = threading.RLock()
        self._persist_lock = asyncio.Lock()

    # --- Ingestion ---

    async def ingest(self, trade: Trade) -> bool:
        with self._gate:
            if not self.history.insert(trade):
                logger.debug(f"Duplicate trade {trade.hash} from {trade.source.value} ignored")
                return False
            self.broadcaster.publish(trade)
        await self.persist()
        return True

    def handler_for(self, decode: Callable[[Any], DecodeResult], source: TradeSource):
        """
        Builds the per-event callback an UpstreamSubscription runs in LIVE.
        """
        async def handle(raw: Any) -> None:
            result = decode(raw)
            if isinstance(result, Trade):
                await self.ingest(result)
            else:
                logger.warning(f"Skipping {source.value} event {result.tx_hash}: {result.reason}")

        return handle

    def add_subscription(self, subscription: UpstreamSubscription) -> UpstreamSubscription:
        self.subscriptions.append(subscription)
        return subscription

    # --- Serving ---

    def attach(self, origin: str) -> SubscriberChannel:
        """Raises SubscriberRejected when `origin` is inside its debounce window."""
        with self._gate:
            return self.broadcaster.attach(origin, self.history.snapshot())

    async def subscribe(self, origin: str) -> SubscriberChannel:
        """
        attach() for the real-time endpoint: a first subscriber on an empty
        history triggers the backfill, but only once the origin is admitted.
        """
        self.broadcaster.admit(origin)
        await self.ensure_backfilled()
        with self._gate:
            return self.broadcaster.register(origin, self.history.snapshot())

    def detach(self, channel: SubscriberChannel) -> None:
        self.broadcaster.detach(channel)

    async def ensure_backfilled(self) -> int:
        if self.backfill is None:
            return 0
        added = await self.backfill.run_if_empty()
        if added:
            await self.persist()
        return added

    def snapshot(self):
        return self.history.snapshot()

    # --- Durability ---

    def restore(self) -> int:
        if self.snapshot_store is None:
            return 0
        try:
            trades = self.snapshot_store.load()
        except Exception as e:
            logger.error(f"Failed to load trade snapshot: {e}")
            return 0
        self.history.load_from(trades)
        logger.info(f"Restored {len(self.history)} trades from snapshot")
        return len(self.history)

    async def persist(self) -> None:
        if self.snapshot_store is None:
            return
        # One write at a time, so an older snapshot never lands after a newer one
        async with self._persist_lock:
            try:
                await asyncio.to_thread(self.history.persist_to, self.snapshot_store)
            except Exception as e:
                logger.error(f"Failed to persist trade snapshot: {e}")
