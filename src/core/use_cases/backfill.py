import asyncio
import logging
from typing import Callable, List

from src.core.entities.raw_event import RawSwapEvent
from src.core.entities.trade import Trade
from src.core.interfaces.datasource import ILogArchive
from src.core.use_cases.event_decoder import DecodeResult, decode_swap
from src.core.use_cases.trade_history import TradeHistory

logger = logging.getLogger(__name__)

DEFAULT_LOOKBACK_BLOCKS = 500


class Backfill:
    """
    Pre-populates an empty history from the last `lookback_blocks` blocks.
    Failures are logged and leave the history untouched.
    """

    def __init__(
        self,
        archive: ILogArchive,
        history: TradeHistory,
        decode: Callable[[RawSwapEvent], DecodeResult] = decode_swap,
        lookback_blocks: int = DEFAULT_LOOKBACK_BLOCKS,
    ):
        self.archive = archive
        self.history = history
        self.decode = decode
        self.lookback_blocks = lookback_blocks
        self._lock = asyncio.Lock()

    async def run(self) -> int:
        async with self._lock:
            try:
                trades = await self._fetch()
            except Exception as e:
                logger.error(f"Failed to fetch initial trades: {e}")
                return 0
            added = self.history.merge_backfill(trades)
            logger.info(f"Backfill wrote {added} trades from the last {self.lookback_blocks} blocks")
            return added

    async def run_if_empty(self) -> int:
        if not self.history.is_empty():
            return 0
        return await self.run()

    async def _fetch(self) -> List[Trade]:
        current_block = await self.archive.get_block_number()
        from_block = max(current_block - self.lookback_blocks, 0)
        logs = await self.archive.get_swap_logs(from_block, current_block)

        # Most recent first: later block, then later position within the block
        ordered = sorted(
            logs,
            key=lambda e: (e.block_number, e.transaction_index, e.log_index),
            reverse=True,
        )

        trades: List[Trade] = []
        for raw in ordered:
            result = self.decode(raw)
            if isinstance(result, Trade):
                trades.append(result)
                if len(trades) >= self.history.capacity:
                    break
            else:
                logger.debug(f"Backfill skipped {raw.tx_hash}: {result.reason}")
        return trades
