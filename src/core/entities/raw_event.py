"""
Raw upstream records, before normalisation into Trade.

Amount fields are kept as delivered (int or hex/decimal string); the
decoder owns the conversion to integers.
"""
from decimal import Decimal
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field

RawAmount = Union[int, str]


class RawSwapEvent(BaseModel):
    """
    Positional layout of a DEX pair Swap log:
    Swap(sender, amount0In, amount1In, amount0Out, amount1Out, to)
    """
    model_config = ConfigDict(frozen=True)

    sender: Optional[str] = None
    amount0_in: RawAmount = 0
    amount1_in: RawAmount = 0
    amount0_out: RawAmount = 0
    amount1_out: RawAmount = 0
    to: Optional[str] = None
    tx_hash: Optional[str] = None
    block_number: int = 0
    transaction_index: int = 0
    log_index: int = 0


class RawCurveEvent(BaseModel):
    """
    Bonding-curve log, either Bought(buyer, ethIn, tokensOut)
    or Sold(seller, tokensIn, ethOut).
    """
    model_config = ConfigDict(frozen=True)

    name: str  # "Bought" | "Sold"
    curve_address: str
    trader: Optional[str] = None
    eth_amount: RawAmount = 0
    token_amount: RawAmount = 0
    tx_hash: Optional[str] = None
    block_number: int = 0
    transaction_index: int = 0
    log_index: int = 0


class TokenDetails(BaseModel):
    ticker: Optional[str] = None
    image: Optional[str] = None


class ExternalTransaction(BaseModel):
    """
    Push record from the partner transaction stream. Every field may be missing.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    hash: Optional[str] = None
    wallet: Optional[str] = None
    amount_in_token: Optional[Decimal] = Field(default=None, alias="amountInToken")
    amount_in_chain_currency: Optional[Decimal] = Field(default=None, alias="amountInChainCurrency")
    type: Optional[str] = None
    token_details: Optional[TokenDetails] = Field(default=None, alias="tokenDetails")
