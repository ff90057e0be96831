"""
Pure decoding of raw upstream records into Trade.

Nothing here raises past the public functions: a record that cannot be
turned into a valid trade yields a DecodeRejection instead.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Optional, Union

from src.core.entities.raw_event import ExternalTransaction, RawCurveEvent, RawSwapEvent
from src.core.entities.trade import UNKNOWN_HASH, Trade, TradeAction, TradeSource


TOKEN_DECIMALS = 6
BASE_DECIMALS = 18
CURVE_DECIMALS = 18

FALLBACK_TICKER = "UNKNOWN"
FALLBACK_IMAGE = ""
UNKNOWN_WALLET = "unknown"


@dataclass(frozen=True)
class DecodeRejection:
    reason: str
    tx_hash: Optional[str] = None


DecodeResult = Union[Trade, DecodeRejection]
Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_int(value: Any) -> int:
    """
    Converts a raw chain amount to int without going through float.
    Accepts ints, hex strings ("0x...") and decimal strings.
    """
    if isinstance(value, bool):
        raise TypeError("bool is not an amount")
    if isinstance(value, int):
        return value
    if isinstance(value, (bytes, bytearray)):
        return int.from_bytes(value, "big")
    if isinstance(value, str):
        text = value.strip()
        if text.lower().startswith("0x"):
            return int(text, 16)
        return int(text)
    raise TypeError(f"Unsupported amount type: {type(value).__name__}")


def scale(raw: int, decimals: int) -> Decimal:
    # scaleb is exact: it only moves the exponent
    return Decimal(raw).scaleb(-decimals).normalize()


def decode_swap(
    raw: RawSwapEvent,
    source: TradeSource = TradeSource.PAIR,
    token_decimals: int = TOKEN_DECIMALS,
    base_decimals: int = BASE_DECIMALS,
    asset_ticker: Optional[str] = None,
    asset_image: Optional[str] = None,
    clock: Clock = _utcnow,
) -> DecodeResult:
    """
    Classifies a pair Swap log as a buy or sell of the tracked token (leg 1)
    against the base asset (leg 0).

    Leg 1 out > 0 means the pair paid out the token: a buy, paid with leg 0 in.
    Leg 1 in > 0 means the pair received the token: a sell, paid with leg 0 out.
    """
    try:
        amount0_in = to_int(raw.amount0_in)
        amount1_in = to_int(raw.amount1_in)
        amount0_out = to_int(raw.amount0_out)
        amount1_out = to_int(raw.amount1_out)

        if amount1_out > 0:
            action = TradeAction.BUY
            token_raw, base_raw = amount1_out, amount0_in
        elif amount1_in > 0:
            action = TradeAction.SELL
            token_raw, base_raw = amount1_in, amount0_out
        else:
            return DecodeRejection("no movement of the tracked token", raw.tx_hash)

        token_amount = scale(token_raw, token_decimals)
        base_amount = scale(base_raw, base_decimals)
        if token_amount == 0 or base_amount == 0:
            return DecodeRejection("zero amount leg", raw.tx_hash)

        return Trade(
            hash=raw.tx_hash or UNKNOWN_HASH,
            timestamp=clock(),
            buyer=raw.sender,
            seller=raw.to,
            token_amount=token_amount,
            base_amount=base_amount,
            action=action,
            source=source,
            asset_ticker=asset_ticker,
            asset_image=asset_image,
        )
    except Exception as e:
        return DecodeRejection(f"malformed swap event: {e}", raw.tx_hash)


def decode_curve_event(raw: RawCurveEvent, clock: Clock = _utcnow) -> DecodeResult:
    """
    Bought -> buy from the curve, Sold -> sell into the curve.
    The curve contract itself is the counterparty.
    """
    try:
        if raw.name == "Bought":
            action = TradeAction.BUY
            buyer, seller = raw.trader, raw.curve_address
        elif raw.name == "Sold":
            action = TradeAction.SELL
            buyer, seller = raw.curve_address, raw.trader
        else:
            return DecodeRejection(f"unknown curve event {raw.name}", raw.tx_hash)

        token_amount = scale(to_int(raw.token_amount), CURVE_DECIMALS)
        base_amount = scale(to_int(raw.eth_amount), CURVE_DECIMALS)
        if token_amount == 0 or base_amount == 0:
            return DecodeRejection("zero amount leg", raw.tx_hash)

        return Trade(
            hash=raw.tx_hash or UNKNOWN_HASH,
            timestamp=clock(),
            buyer=buyer,
            seller=seller,
            token_amount=token_amount,
            base_amount=base_amount,
            action=action,
            source=TradeSource.CURVE,
        )
    except Exception as e:
        return DecodeRejection(f"malformed curve event: {e}", raw.tx_hash)


def map_external_transaction(payload: Any, clock: Clock = _utcnow) -> DecodeResult:
    """
    Maps a partner stream record onto Trade, filling the documented defaults.
    Amounts are already human-scaled by the partner.
    """
    tx_hash = payload.get("hash") if isinstance(payload, dict) else None
    try:
        tx = payload if isinstance(payload, ExternalTransaction) else ExternalTransaction.model_validate(payload)
        tx_hash = tx.hash

        wallet = tx.wallet or UNKNOWN_WALLET
        action = TradeAction.SELL if (tx.type or "").lower() == "sell" else TradeAction.BUY
        token_amount = tx.amount_in_token if tx.amount_in_token is not None else Decimal(0)
        base_amount = tx.amount_in_chain_currency if tx.amount_in_chain_currency is not None else Decimal(0)
        if token_amount <= 0 or base_amount <= 0:
            return DecodeRejection("zero amount leg", tx_hash)

        details = tx.token_details
        return Trade(
            hash=tx.hash or UNKNOWN_HASH,
            timestamp=clock(),
            buyer=wallet if action == TradeAction.BUY else None,
            seller=wallet if action == TradeAction.SELL else None,
            token_amount=token_amount,
            base_amount=base_amount,
            action=action,
            source=TradeSource.EXTERNAL,
            asset_ticker=(details.ticker if details else None) or FALLBACK_TICKER,
            asset_image=(details.image if details else None) or FALLBACK_IMAGE,
        )
    except Exception as e:
        return DecodeRejection(f"malformed external transaction: {e}", tx_hash)
