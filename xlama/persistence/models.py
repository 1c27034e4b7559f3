from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Enum as SqlAlchemyEnum, Float, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from xlama.core.structures.orders import DCAFrequency, DCAStatus, LimitOrderStatus, OrderCondition
from xlama.core.utils.date_utils import utc_now
from xlama.persistence.db import Base


def _enum_values(enum_class) -> list:
    return [member.value for member in enum_class]


class LimitOrderRow(Base):
    """
    Conditional swaps waiting for a price crossing, with their trigger and execution bookkeeping.
    """
    __tablename__ = "limit_orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_address: Mapped[str] = mapped_column(String(128), index=True, nullable=False)
    chain_index: Mapped[str] = mapped_column(String(16), nullable=False)
    from_token_address: Mapped[str] = mapped_column(String(128), nullable=False)
    from_token_symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    from_token_decimals: Mapped[int] = mapped_column(Integer, nullable=False, default=18)
    to_token_address: Mapped[str] = mapped_column(String(128), nullable=False)
    to_token_symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    to_token_decimals: Mapped[int] = mapped_column(Integer, nullable=False, default=18)
    amount: Mapped[str] = mapped_column(String(64), nullable=False)
    target_price: Mapped[float] = mapped_column(Float, nullable=False)
    condition: Mapped[OrderCondition] = mapped_column(
        SqlAlchemyEnum(OrderCondition, values_callable=_enum_values), nullable=False)
    take_profit_price: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    stop_loss_price: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    slippage: Mapped[float] = mapped_column(Float, nullable=False, default=0.5)
    status: Mapped[LimitOrderStatus] = mapped_column(
        SqlAlchemyEnum(LimitOrderStatus, values_callable=_enum_values), index=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now,
                                                 nullable=False)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    triggered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    trigger_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    tp_triggered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    sl_triggered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    executed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    execution_tx_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    execution_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    execution_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<LimitOrder {self.id} {self.from_token_symbol}->{self.to_token_symbol} {self.status}>"


class DCAOrderRow(Base):
    """
    Recurring swaps with their schedule and running totals.
    """
    __tablename__ = "dca_orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_address: Mapped[str] = mapped_column(String(128), index=True, nullable=False)
    chain_index: Mapped[str] = mapped_column(String(16), nullable=False)
    from_token_address: Mapped[str] = mapped_column(String(128), nullable=False)
    from_token_symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    from_token_decimals: Mapped[int] = mapped_column(Integer, nullable=False, default=18)
    to_token_address: Mapped[str] = mapped_column(String(128), nullable=False)
    to_token_symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    to_token_decimals: Mapped[int] = mapped_column(Integer, nullable=False, default=18)
    amount_per_interval: Mapped[str] = mapped_column(String(64), nullable=False)
    frequency: Mapped[DCAFrequency] = mapped_column(
        SqlAlchemyEnum(DCAFrequency, values_callable=_enum_values), nullable=False)
    execution_hour: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    total_intervals: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    completed_intervals: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_spent: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    total_received: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    average_price: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    status: Mapped[DCAStatus] = mapped_column(
        SqlAlchemyEnum(DCAStatus, values_callable=_enum_values), index=True, nullable=False)
    next_execution: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), index=True, nullable=True)
    slippage: Mapped[float] = mapped_column(Float, nullable=False, default=0.5)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now,
                                                 nullable=False)
    last_execution_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_execution_tx_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    last_execution_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return (f"<DCAOrder {self.id} {self.amount_per_interval} {self.from_token_symbol}->{self.to_token_symbol} "
                f"{self.frequency} {self.status}>")


class DexTransaction(Base):
    """
    Swap and bridge history per wallet. A transaction hash appears once per wallet.
    """
    __tablename__ = "dex_transactions"
    __table_args__ = (UniqueConstraint("tx_hash", "user_address", name="uq_dex_transactions_hash_user"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tx_hash: Mapped[str] = mapped_column(String(128), index=True, nullable=False)
    user_address: Mapped[str] = mapped_column(String(128), index=True, nullable=False)
    chain_index: Mapped[str] = mapped_column(String(16), nullable=False)
    chain_name: Mapped[str] = mapped_column(String(64), nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False, default="swap")
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    from_token_symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    from_token_address: Mapped[str] = mapped_column(String(128), nullable=False)
    from_token_amount: Mapped[str] = mapped_column(String(64), nullable=False)
    from_token_price: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    from_token_logo: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    from_amount_usd: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    to_token_symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    to_token_address: Mapped[str] = mapped_column(String(128), nullable=False)
    to_token_amount: Mapped[str] = mapped_column(String(64), nullable=False)
    to_token_price: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    to_token_logo: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    to_amount_usd: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    explorer_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)

    def __repr__(self) -> str:
        return f"<DexTransaction {self.tx_hash[:10]} {self.from_token_symbol}->{self.to_token_symbol} {self.status}>"
