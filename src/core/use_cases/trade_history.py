import logging
import threading
from collections import deque
from typing import Iterable, Sequence, Tuple

from src.core.entities.trade import Trade
from src.core.interfaces.datasource import ISnapshotStore

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 30


class TradeHistory:
    """
    Bounded most-recent-first buffer of trades.

    Inserts go to the front; once over capacity the oldest entries fall
    off the tail. Existing entries are never reordered. Every operation
    runs under one lock so readers always see a whole state.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._trades: deque = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def insert(self, trade: Trade) -> bool:
        """
        Prepends `trade`. Returns False when the same trade is already held.
        """
        with self._lock:
            if self._contains(trade):
                return False
            # deque(maxlen) drops from the right on appendleft
            self._trades.appendleft(trade)
            return True

    def snapshot(self) -> Tuple[Trade, ...]:
        with self._lock:
            return tuple(self._trades)

    def is_empty(self) -> bool:
        with self._lock:
            return not self._trades

    def __len__(self) -> int:
        with self._lock:
            return len(self._trades)

    def load_from(self, trades: Iterable[Trade]) -> None:
        """Whole-buffer replace. `trades` must already be most-recent-first."""
        incoming = list(trades)[: self.capacity]
        with self._lock:
            self._trades = deque(incoming, maxlen=self.capacity)

    def merge_backfill(self, trades: Sequence[Trade]) -> int:
        """
        Appends historical trades behind whatever is already held, skipping
        duplicates, in one step. Returns how many were added.
        """
        with self._lock:
            added = 0
            for trade in trades:
                if len(self._trades) >= self.capacity:
                    break
                if self._contains(trade):
                    continue
                self._trades.append(trade)
                added += 1
            return added

    def persist_to(self, sink: ISnapshotStore) -> None:
        sink.save(self.snapshot())

    def _contains(self, trade: Trade) -> bool:
        key = trade.identity()
        if key is None:
            return False
        return any(t.identity() == key for t in self._trades)
