from __future__ import annotations

import csv
import io
from dataclasses import fields
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, Optional, TypedDict

from xlama.core.structures.orders import DCAOrder, LimitOrder
from xlama.core.utils.date_utils import ensure_utc
from xlama.logging.logger import get_logger
from xlama.persistence.models import DCAOrderRow, DexTransaction, LimitOrderRow

log = get_logger(__name__)

CSV_COLUMNS = [
    "kind",
    "id",
    "status",
    "chain_index",
    "from_token_symbol",
    "to_token_symbol",
    "amount",
    "condition",
    "target_price",
    "frequency",
    "completed_intervals",
    "total_intervals",
    "total_spent",
    "total_received",
    "average_price",
    "tx_hash",
    "error",
    "created_at",
]


def _iso(dt: Optional[datetime]) -> Optional[str]:
    """ISO 8601 string in UTC, None when the input is None."""
    if dt is None:
        return None
    return ensure_utc(dt).isoformat()


def _plain(value: object) -> object:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return _iso(value)
    return value


class TransactionPayload(TypedDict, total=False):
    tx_hash: str
    user_address: str
    chain_index: str
    chain_name: str
    type: str
    status: str
    from_token_symbol: str
    from_token_address: str
    from_token_amount: str
    from_token_price: Optional[float]
    from_token_logo: Optional[str]
    from_amount_usd: Optional[float]
    to_token_symbol: str
    to_token_address: str
    to_token_amount: str
    to_token_price: Optional[float]
    to_token_logo: Optional[str]
    to_amount_usd: Optional[float]
    explorer_url: Optional[str]
    created_at: str


def limit_order_from_row(row: LimitOrderRow) -> LimitOrder:
    values = {}
    for column in fields(LimitOrder):
        value = getattr(row, column.name)
        values[column.name] = ensure_utc(value) if isinstance(value, datetime) else value
    return LimitOrder(**values)


def dca_order_from_row(row: DCAOrderRow) -> DCAOrder:
    values = {}
    for column in fields(DCAOrder):
        value = getattr(row, column.name)
        values[column.name] = ensure_utc(value) if isinstance(value, datetime) else value
    return DCAOrder(**values)


def copy_order_to_row(order: LimitOrder | DCAOrder, row: LimitOrderRow | DCAOrderRow) -> None:
    """Write every order field onto the ORM row (the row keeps its own `updated_at`)."""
    for column in fields(order):
        setattr(row, column.name, getattr(order, column.name))


def serialize_limit_order(order: LimitOrder) -> Dict[str, object]:
    return {column.name: _plain(getattr(order, column.name)) for column in fields(order)}


def serialize_dca_order(order: DCAOrder) -> Dict[str, object]:
    return {column.name: _plain(getattr(order, column.name)) for column in fields(order)}


def serialize_transaction(row: DexTransaction) -> TransactionPayload:
    return {
        "tx_hash": row.tx_hash,
        "user_address": row.user_address,
        "chain_index": row.chain_index,
        "chain_name": row.chain_name,
        "type": row.type,
        "status": row.status,
        "from_token_symbol": row.from_token_symbol,
        "from_token_address": row.from_token_address,
        "from_token_amount": row.from_token_amount,
        "from_token_price": row.from_token_price,
        "from_token_logo": row.from_token_logo,
        "from_amount_usd": row.from_amount_usd,
        "to_token_symbol": row.to_token_symbol,
        "to_token_address": row.to_token_address,
        "to_token_amount": row.to_token_amount,
        "to_token_price": row.to_token_price,
        "to_token_logo": row.to_token_logo,
        "to_amount_usd": row.to_amount_usd,
        "explorer_url": row.explorer_url,
        "created_at": _iso(row.created_at) or "",
    }


def _limit_csv_row(order: LimitOrder) -> Dict[str, object]:
    return {
        "kind": "limit",
        "id": order.id,
        "status": order.status.value,
        "chain_index": order.chain_index,
        "from_token_symbol": order.from_token_symbol,
        "to_token_symbol": order.to_token_symbol,
        "amount": order.amount,
        "condition": order.condition.value,
        "target_price": order.target_price,
        "tx_hash": order.execution_tx_hash or "",
        "error": order.execution_error or "",
        "created_at": _iso(order.created_at),
    }


def _dca_csv_row(order: DCAOrder) -> Dict[str, object]:
    return {
        "kind": "dca",
        "id": order.id,
        "status": order.status.value,
        "chain_index": order.chain_index,
        "from_token_symbol": order.from_token_symbol,
        "to_token_symbol": order.to_token_symbol,
        "amount": order.amount_per_interval,
        "frequency": order.frequency.value,
        "completed_intervals": order.completed_intervals,
        "total_intervals": order.total_intervals if order.total_intervals is not None else "",
        "total_spent": order.total_spent,
        "total_received": order.total_received,
        "average_price": order.average_price if order.average_price is not None else "",
        "tx_hash": order.last_execution_tx_hash or "",
        "error": order.last_execution_error or "",
        "created_at": _iso(order.created_at),
    }


def orders_to_csv(limit_orders: Iterable[LimitOrder], dca_orders: Iterable[DCAOrder]) -> str:
    """
    Render a wallet's orders as CSV, limit orders first.

    Columns that do not apply to an order kind are left empty.
    """
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=CSV_COLUMNS, restval="", lineterminator="\n")
    writer.writeheader()
    rows: List[Dict[str, object]] = [_limit_csv_row(order) for order in limit_orders]
    rows.extend(_dca_csv_row(order) for order in dca_orders)
    writer.writerows(rows)
    log.debug("[SERIALIZER][ORDERS][CSV] rows=%d", len(rows))
    return buffer.getvalue()
