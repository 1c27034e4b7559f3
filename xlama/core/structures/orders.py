from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from xlama.core.utils.date_utils import utc_now


class OrderCondition(Enum):
    ABOVE = "above"
    BELOW = "below"


class LimitOrderStatus(Enum):
    ACTIVE = "active"
    TRIGGERED = "triggered"
    EXECUTED = "executed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (LimitOrderStatus.EXECUTED, LimitOrderStatus.CANCELLED, LimitOrderStatus.EXPIRED,
                        LimitOrderStatus.FAILED)


class DCAStatus(Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (DCAStatus.COMPLETED, DCAStatus.CANCELLED)


class DCAFrequency(Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"


class OrderKind(Enum):
    LIMIT = "limit"
    DCA = "dca"


@dataclass(frozen=True)
class LimitOrder:
    """
    Conditional swap owned by a wallet.

    `target_price`, `take_profit_price` and `stop_loss_price` are USD prices of the source
    token. `amount` is a human amount of the source token.
    """
    id: str
    user_address: str
    chain_index: str
    from_token_address: str
    from_token_symbol: str
    to_token_address: str
    to_token_symbol: str
    amount: str
    target_price: float
    condition: OrderCondition
    from_token_decimals: int = 18
    to_token_decimals: int = 18
    take_profit_price: Optional[float] = None
    stop_loss_price: Optional[float] = None
    slippage: float = 0.5
    status: LimitOrderStatus = LimitOrderStatus.ACTIVE
    created_at: datetime = field(default_factory=utc_now)
    expires_at: Optional[datetime] = None
    triggered_at: Optional[datetime] = None
    trigger_expires_at: Optional[datetime] = None
    tp_triggered_at: Optional[datetime] = None
    sl_triggered_at: Optional[datetime] = None
    executed_at: Optional[datetime] = None
    execution_tx_hash: Optional[str] = None
    execution_error: Optional[str] = None
    execution_attempts: int = 0


@dataclass(frozen=True)
class DCAOrder:
    """
    Recurring swap of `amount_per_interval` (human units of the source token).

    `average_price` is the source amount spent per destination unit received.
    """
    id: str
    user_address: str
    chain_index: str
    from_token_address: str
    from_token_symbol: str
    to_token_address: str
    to_token_symbol: str
    amount_per_interval: str
    frequency: DCAFrequency
    from_token_decimals: int = 18
    to_token_decimals: int = 18
    execution_hour: Optional[int] = None
    start_date: datetime = field(default_factory=utc_now)
    end_date: Optional[datetime] = None
    total_intervals: Optional[int] = None
    completed_intervals: int = 0
    total_spent: float = 0.0
    total_received: float = 0.0
    average_price: Optional[float] = None
    status: DCAStatus = DCAStatus.ACTIVE
    next_execution: Optional[datetime] = None
    slippage: float = 0.5
    created_at: datetime = field(default_factory=utc_now)
    last_execution_at: Optional[datetime] = None
    last_execution_tx_hash: Optional[str] = None
    last_execution_error: Optional[str] = None

    def __post_init__(self) -> None:
        if self.next_execution is None:
            object.__setattr__(self, "next_execution", self.start_date)


@dataclass(frozen=True)
class PriceTick:
    """USD price observation for one token."""
    chain_index: str
    token_address: str
    price: float
    observed_at: datetime = field(default_factory=utc_now)

    @property
    def key(self) -> str:
        return price_key(self.chain_index, self.token_address)


def price_key(chain_index: str, token_address: str) -> str:
    return f"{chain_index}:{token_address.lower()}"


class OrderEventType(Enum):
    CREATED = "created"
    TRIGGERED = "triggered"
    TAKE_PROFIT = "take_profit"
    STOP_LOSS = "stop_loss"
    EXECUTED = "executed"
    EXECUTION_FAILED = "execution_failed"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    PAUSED = "paused"
    RESUMED = "resumed"
    INTERVAL_EXECUTED = "interval_executed"
    INTERVAL_FAILED = "interval_failed"
    COMPLETED = "completed"


@dataclass(frozen=True)
class OrderStatusEvent:
    order_id: str
    order_kind: OrderKind
    event_type: OrderEventType
    status: str
    user_address: str
    occurred_at: datetime
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    price: Optional[float] = None

    def to_payload(self) -> Dict[str, object]:
        return {
            "type": "order_status",
            "order_id": self.order_id,
            "order_kind": self.order_kind.value,
            "event": self.event_type.value,
            "status": self.status,
            "user_address": self.user_address,
            "occurred_at": self.occurred_at.isoformat(),
            "tx_hash": self.tx_hash,
            "error": self.error,
            "price": self.price,
        }


@dataclass(frozen=True)
class ExecutionOutcome:
    """Result of executing one order swap. Amounts are human units."""
    success: bool
    tx_hash: Optional[str] = None
    amount_in: float = 0.0
    amount_out: float = 0.0
    error: Optional[str] = None
