"""
Fan-out of trades to attached real-time subscribers.

Each subscriber owns a bounded asyncio.Queue. Publishing only ever does
put_nowait, so one slow consumer can never stall the others: when its
queue is full it gets dropped.
"""
import asyncio
import itertools
import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Sequence

from src.core.entities.trade import Trade
from src.core.exceptions import SubscriberDeliveryFailure, SubscriberRejected

logger = logging.getLogger(__name__)

HISTORY_EVENT = "trades:history"
TRADE_EVENT = "trades:new"

DEFAULT_DEBOUNCE_SECONDS = 5.0
DEFAULT_QUEUE_SIZE = 100

_channel_ids = itertools.count(1)


class SubscriberChannel:
    """
    One attached consumer. Messages are dicts ready for send_json.
    """

    def __init__(self, origin: str, queue_size: int = DEFAULT_QUEUE_SIZE):
        self.id = next(_channel_ids)
        self.origin = origin
        self.closed = False
        self.close_reason: Optional[str] = None
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)

    def offer(self, message: dict) -> None:
        if self.closed:
            return
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            raise SubscriberDeliveryFailure(f"Subscriber {self.id} ({self.origin}) queue is full")

    async def receive(self) -> Optional[dict]:
        """
        Next message, or None once the channel is closed and drained.
        """
        if self.closed and self._queue.empty():
            return None
        message = await self._queue.get()
        return message

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self, reason: str = "detached") -> None:
        if self.closed:
            return
        self.closed = True
        self.close_reason = reason
        # Wake a pump blocked in receive(); a full queue is discarded anyway
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            self._drain()
            self._queue.put_nowait(None)

    def _drain(self) -> None:
        while not self._queue.empty():
            self._queue.get_nowait()


class SubscriberRegistry:
    """
    Attached channels plus a per-origin debounce on new attaches.
    """

    def __init__(self, min_interval: float = DEFAULT_DEBOUNCE_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.min_interval = min_interval
        self._clock = clock
        self._last_attach: Dict[str, float] = {}
        self._channels: Dict[int, SubscriberChannel] = {}
        self._lock = threading.Lock()

    def admit(self, origin: str) -> None:
        """
        Records an attach from `origin`, or raises SubscriberRejected if the
        previous accepted attach from it is younger than min_interval.
        """
        now = self._clock()
        with self._lock:
            last = self._last_attach.get(origin)
            if last is not None and now - last < self.min_interval:
                raise SubscriberRejected(origin, self.min_interval - (now - last))
            self._last_attach[origin] = now

    def add(self, channel: SubscriberChannel) -> None:
        with self._lock:
            self._channels[channel.id] = channel

    def remove(self, channel: SubscriberChannel) -> bool:
        with self._lock:
            return self._channels.pop(channel.id, None) is not None

    def channels(self) -> List[SubscriberChannel]:
        with self._lock:
            return list(self._channels.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._channels)


class Broadcaster:
    def __init__(self, registry: Optional[SubscriberRegistry] = None, queue_size: int = DEFAULT_QUEUE_SIZE):
        self.registry = registry if registry is not None else SubscriberRegistry()
        self.queue_size = queue_size

    def admit(self, origin: str) -> None:
        self.registry.admit(origin)

    def attach(self, origin: str, snapshot: Sequence[Trade]) -> SubscriberChannel:
        self.admit(origin)
        return self.register(origin, snapshot)

    def register(self, origin: str, snapshot: Sequence[Trade]) -> SubscriberChannel:
        """
        Registers a new channel whose first message is `snapshot`, for an
        origin that already passed admit().
        The caller must hold the feed gate so no publish slips in between
        taking the snapshot and registering the channel.
        """
        channel = SubscriberChannel(origin, queue_size=self.queue_size)
        channel.offer({"event": HISTORY_EVENT, "data": [t.to_wire() for t in snapshot]})
        self.registry.add(channel)
        logger.info(f"Subscriber {channel.id} attached from {origin} ({len(snapshot)} trades in snapshot)")
        return channel

    def publish(self, trade: Trade) -> int:
        """
        Queues `trade` for every attached channel. Returns the number reached.
        """
        message = {"event": TRADE_EVENT, "data": trade.to_wire()}
        delivered = 0
        for channel in self.registry.channels():
            if channel.closed:
                self.detach(channel)
                continue
            try:
                channel.offer(message)
                delivered += 1
            except SubscriberDeliveryFailure as e:
                logger.warning(f"Dropping slow subscriber: {e}")
                self.detach(channel, reason="slow consumer")
        return delivered

    def detach(self, channel: SubscriberChannel, reason: str = "detached") -> None:
        if self.registry.remove(channel):
            logger.info(f"Subscriber {channel.id} detached ({reason})")
        channel.close(reason)

    def __len__(self) -> int:
        return len(self.registry)
