import redis
import json
import logging
from typing import List, Optional, Sequence

from pydantic import TypeAdapter

from src.core.entities.trade import Trade
from src.core.interfaces.datasource import ISnapshotStore

logger = logging.getLogger(__name__)

DEFAULT_KEY = "swapfeed:trades"

_trades_adapter = TypeAdapter(List[Trade])


class RedisSnapshotStore(ISnapshotStore):
    """
    Keeps the whole history as one JSON array under a single key, so a
    save is an atomic SET.
    """

    def __init__(self, redis_url: str, key: str = DEFAULT_KEY, client: Optional[redis.Redis] = None):
        self.key = key
        self.client = client or redis.from_url(redis_url, decode_responses=True)
        try:
            # Test connection
            self.client.ping()
            logger.info("Connected to Redis for trade snapshots.")
        except Exception as e:
            logger.warning(f"Failed to reach Redis: {e}. Snapshots will be retried on each save.")

    def load(self) -> List[Trade]:
        data = self.client.get(self.key)
        if not data:
            return []
        return _trades_adapter.validate_python(json.loads(data))

    def save(self, trades: Sequence[Trade]) -> None:
        self.client.set(self.key, json.dumps([t.to_record() for t in trades]))
