from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, SerializationInfo, field_serializer
from pydantic.alias_generators import to_camel

UNKNOWN_HASH = "unknown"

# Serialization context flag: keep amounts as exact decimal strings
EXACT_AMOUNTS = "exact_amounts"


class TradeAction(str, Enum):
    BUY = "buy"
    SELL = "sell"


class TradeSource(str, Enum):
    PAIR = "pair"  # DEX pair Swap logs
    EXTERNAL = "external"  # partner transaction stream
    CURVE = "curve"  # bonding-curve Bought/Sold logs


class Trade(BaseModel):
    """
    Canonical trade record shared by every upstream source.
    Immutable once constructed; amounts are strictly positive.
    """
    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
    )

    hash: str = UNKNOWN_HASH
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    buyer: Optional[str] = None
    seller: Optional[str] = None
    token_amount: Decimal = Field(gt=0)
    base_amount: Decimal = Field(gt=0)
    action: TradeAction
    source: TradeSource
    asset_ticker: Optional[str] = None
    asset_image: Optional[str] = None

    @field_serializer("token_amount", "base_amount", when_used="json")
    def _amount_as_number(self, value: Decimal, info: SerializationInfo):
        if info.context and info.context.get(EXACT_AMOUNTS):
            return str(value)
        # Display-only: clients expect plain JSON numbers
        return float(value)

    def identity(self) -> Optional[tuple]:
        """Key used to merge the same trade arriving twice. None if unidentifiable."""
        if self.hash == UNKNOWN_HASH:
            return None
        return (self.source, self.hash, self.action, self.token_amount, self.base_amount)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)

    def to_record(self) -> dict:
        """Lossless JSON form for snapshots; amounts stay decimal strings."""
        return self.model_dump(mode="json", by_alias=True, context={EXACT_AMOUNTS: True})
