from __future__ import annotations

from typing import Iterable, List, Optional

from sqlalchemy import desc, select, text

from xlama.core.structures.orders import DCAOrder, DCAStatus, LimitOrder, LimitOrderStatus
from xlama.logging.logger import get_logger
from xlama.persistence.db import SessionFactory, SessionLocal, session_scope
from xlama.persistence.models import DCAOrderRow, LimitOrderRow
from xlama.persistence.serializers import copy_order_to_row, dca_order_from_row, limit_order_from_row

log = get_logger(__name__)


class SqlOrderStore:
    """
    Limit and DCA orders persisted through SQLAlchemy.

    Every call opens its own session; orders cross the boundary as frozen dataclasses so
    callers never hold ORM instances.
    """

    def __init__(self, session_factory: SessionFactory = SessionLocal) -> None:
        self._session_factory = session_factory

    def ping(self) -> None:
        """Round-trip to the database; raises when it is unreachable."""
        with session_scope(self._session_factory) as session:
            session.execute(text("SELECT 1"))

    def add_limit_order(self, order: LimitOrder) -> LimitOrder:
        with session_scope(self._session_factory) as session:
            row = LimitOrderRow()
            copy_order_to_row(order, row)
            session.add(row)
        log.info("[STORE][LIMIT][ADD] id=%s user=%s %s %s@%s", order.id, order.user_address,
                 order.condition.value, order.from_token_symbol, order.target_price)
        return order

    def get_limit_order(self, order_id: str) -> Optional[LimitOrder]:
        with session_scope(self._session_factory) as session:
            row = session.get(LimitOrderRow, order_id)
            return limit_order_from_row(row) if row is not None else None

    def save_limit_order(self, order: LimitOrder) -> LimitOrder:
        with session_scope(self._session_factory) as session:
            row = session.get(LimitOrderRow, order.id)
            if row is None:
                raise KeyError(f"Unknown limit order {order.id}")
            copy_order_to_row(order, row)
        log.debug("[STORE][LIMIT][SAVE] id=%s status=%s", order.id, order.status.value)
        return order

    def list_limit_orders(
            self,
            user_address: Optional[str] = None,
            statuses: Optional[Iterable[LimitOrderStatus]] = None,
    ) -> List[LimitOrder]:
        """Orders newest first, optionally scoped to a wallet and/or statuses."""
        statement = select(LimitOrderRow)
        if user_address is not None:
            statement = statement.where(LimitOrderRow.user_address == user_address)
        if statuses is not None:
            statement = statement.where(LimitOrderRow.status.in_(list(statuses)))
        statement = statement.order_by(desc(LimitOrderRow.created_at), desc(LimitOrderRow.id))
        with session_scope(self._session_factory) as session:
            return [limit_order_from_row(row) for row in session.execute(statement).scalars().all()]

    def add_dca_order(self, order: DCAOrder) -> DCAOrder:
        with session_scope(self._session_factory) as session:
            row = DCAOrderRow()
            copy_order_to_row(order, row)
            session.add(row)
        log.info("[STORE][DCA][ADD] id=%s user=%s %s %s %s", order.id, order.user_address,
                 order.amount_per_interval, order.from_token_symbol, order.frequency.value)
        return order

    def get_dca_order(self, order_id: str) -> Optional[DCAOrder]:
        with session_scope(self._session_factory) as session:
            row = session.get(DCAOrderRow, order_id)
            return dca_order_from_row(row) if row is not None else None

    def save_dca_order(self, order: DCAOrder) -> DCAOrder:
        with session_scope(self._session_factory) as session:
            row = session.get(DCAOrderRow, order.id)
            if row is None:
                raise KeyError(f"Unknown DCA order {order.id}")
            copy_order_to_row(order, row)
        log.debug("[STORE][DCA][SAVE] id=%s status=%s completed=%d", order.id, order.status.value,
                  order.completed_intervals)
        return order

    def list_dca_orders(
            self,
            user_address: Optional[str] = None,
            statuses: Optional[Iterable[DCAStatus]] = None,
    ) -> List[DCAOrder]:
        statement = select(DCAOrderRow)
        if user_address is not None:
            statement = statement.where(DCAOrderRow.user_address == user_address)
        if statuses is not None:
            statement = statement.where(DCAOrderRow.status.in_(list(statuses)))
        statement = statement.order_by(desc(DCAOrderRow.created_at), desc(DCAOrderRow.id))
        with session_scope(self._session_factory) as session:
            return [dca_order_from_row(row) for row in session.execute(statement).scalars().all()]
