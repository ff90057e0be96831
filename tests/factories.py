from decimal import Decimal
from itertools import count

from src.core.entities.raw_event import RawSwapEvent
from src.core.entities.trade import Trade, TradeAction, TradeSource

_hashes = count(1)


def make_trade(
    hash: str = None,
    token_amount: str = "120.5",
    base_amount: str = "0.003",
    action: TradeAction = TradeAction.BUY,
    source: TradeSource = TradeSource.PAIR,
) -> Trade:
    return Trade(
        hash=hash or f"0x{next(_hashes):064x}",
        buyer="0xbuyer",
        seller="0xseller",
        token_amount=Decimal(token_amount),
        base_amount=Decimal(base_amount),
        action=action,
        source=source,
    )


def make_swap(**overrides) -> RawSwapEvent:
    fields = dict(
        sender="0xSender",
        amount0_in=3 * 10**15,  # 0.003 at 18 decimals
        amount1_in=0,
        amount0_out=0,
        amount1_out=120_500_000,  # 120.5 at 6 decimals
        to="0xRecipient",
        tx_hash="0xabc",
        block_number=100,
        transaction_index=0,
        log_index=0,
    )
    fields.update(overrides)
    return RawSwapEvent(**fields)
