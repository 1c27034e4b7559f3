from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from xlama.configuration.config import settings
from xlama.core.structures.orders import DCAFrequency, OrderCondition


class TokenRef(BaseModel):
    """Token as selected by the client."""
    address: str = Field(..., min_length=1, description="Contract address, or the chain's native placeholder.")
    symbol: str = Field(..., min_length=1)
    decimals: int = Field(18, ge=0, le=36)
    name: Optional[str] = None


class QuoteBody(BaseModel):
    chain_index: str = Field(..., description="Source chain index.")
    from_token: TokenRef
    to_token: TokenRef
    amount: str = Field(..., description="Human amount of the source token.")
    slippage_percent: float = Field(settings.DEFAULT_SLIPPAGE_PERCENT, gt=0, le=50)
    auto_slippage: bool = False
    user_address: Optional[str] = None
    to_chain_index: Optional[str] = Field(None, description="Destination chain index for bridge quotes.")


class BridgeExecuteBody(QuoteBody):
    """Bridge to quote and execute with the server-side signer of the source chain."""
    to_chain_index: str = Field(..., min_length=1, description="Destination chain index.")


class LimitOrderBody(BaseModel):
    user_address: str = Field(..., min_length=1)
    chain_index: str
    from_token: TokenRef
    to_token: TokenRef
    amount: str
    target_price: float = Field(..., gt=0, description="USD price of the source token that triggers the order.")
    condition: OrderCondition
    take_profit_price: Optional[float] = Field(None, gt=0)
    stop_loss_price: Optional[float] = Field(None, gt=0)
    slippage: float = Field(settings.DEFAULT_SLIPPAGE_PERCENT, gt=0, le=50)
    expires_at: Optional[datetime] = None


class DCAOrderBody(BaseModel):
    user_address: str = Field(..., min_length=1)
    chain_index: str
    from_token: TokenRef
    to_token: TokenRef
    amount_per_interval: str
    frequency: DCAFrequency
    execution_hour: Optional[int] = Field(settings.DCA_DEFAULT_EXECUTION_HOUR, ge=0, le=23)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    total_intervals: Optional[int] = Field(None, gt=0)
    slippage: float = Field(settings.DEFAULT_SLIPPAGE_PERCENT, gt=0, le=50)


class OrderActionBody(BaseModel):
    user_address: str = Field(..., min_length=1)


class WebsocketInboundMessage(BaseModel):
    type: str
    user_address: Optional[str] = None
