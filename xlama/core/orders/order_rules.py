from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, FrozenSet, List, Optional, Tuple

from xlama.core.errors.error_taxonomy import InvalidOrderTransition
from xlama.core.structures.orders import (
    DCAFrequency,
    DCAOrder,
    DCAStatus,
    ExecutionOutcome,
    LimitOrder,
    LimitOrderStatus,
    OrderCondition,
    OrderEventType,
)
from xlama.core.utils.date_utils import add_months, at_hour

LIMIT_TRANSITIONS: Dict[LimitOrderStatus, FrozenSet[LimitOrderStatus]] = {
    LimitOrderStatus.ACTIVE: frozenset({
        LimitOrderStatus.TRIGGERED,
        LimitOrderStatus.CANCELLED,
        LimitOrderStatus.EXPIRED,
    }),
    LimitOrderStatus.TRIGGERED: frozenset({
        LimitOrderStatus.EXECUTED,
        LimitOrderStatus.ACTIVE,
        LimitOrderStatus.FAILED,
        LimitOrderStatus.EXPIRED,
    }),
}

DCA_TRANSITIONS: Dict[DCAStatus, FrozenSet[DCAStatus]] = {
    DCAStatus.ACTIVE: frozenset({DCAStatus.PAUSED, DCAStatus.CANCELLED, DCAStatus.COMPLETED}),
    DCAStatus.PAUSED: frozenset({DCAStatus.ACTIVE, DCAStatus.CANCELLED}),
}


def trigger_window_expired_message(window: timedelta) -> str:
    return f"Trigger window expired ({int(window.total_seconds() // 3600)} hours)"


def ensure_limit_transition(order: LimitOrder, target: LimitOrderStatus) -> None:
    if target not in LIMIT_TRANSITIONS.get(order.status, frozenset()):
        raise InvalidOrderTransition(
            f"Limit order {order.id} cannot move from {order.status.value} to {target.value}"
        )


def ensure_dca_transition(order: DCAOrder, target: DCAStatus) -> None:
    if target not in DCA_TRANSITIONS.get(order.status, frozenset()):
        raise InvalidOrderTransition(f"DCA order {order.id} cannot move from {order.status.value} to {target.value}")


def is_condition_met(condition: OrderCondition, price: float, target: float) -> bool:
    if condition is OrderCondition.ABOVE:
        return price >= target
    return price <= target


def evaluate_limit_price(
        order: LimitOrder,
        price: float,
        now: datetime,
        trigger_window: timedelta,
) -> Tuple[LimitOrder, List[OrderEventType]]:
    """
    Apply one price observation to a limit order.

    The base condition moves an active order to `triggered` and opens the execution window.
    Take-profit and stop-loss are independent watchers: each stamps its own timestamp the
    first time it is hit and leaves the base status alone.
    """
    if order.status.is_terminal or price <= 0:
        return order, []
    if order.expires_at is not None and now >= order.expires_at:
        return order, []

    events: List[OrderEventType] = []
    changes: Dict[str, object] = {}

    if order.status is LimitOrderStatus.ACTIVE and is_condition_met(order.condition, price, order.target_price):
        changes.update(
            status=LimitOrderStatus.TRIGGERED,
            triggered_at=now,
            trigger_expires_at=now + trigger_window,
        )
        events.append(OrderEventType.TRIGGERED)

    if order.take_profit_price and order.tp_triggered_at is None and price >= order.take_profit_price:
        changes["tp_triggered_at"] = now
        events.append(OrderEventType.TAKE_PROFIT)

    if order.stop_loss_price and order.sl_triggered_at is None and price <= order.stop_loss_price:
        changes["sl_triggered_at"] = now
        events.append(OrderEventType.STOP_LOSS)

    if not changes:
        return order, []
    return replace(order, **changes), events


def expire_limit_order(order: LimitOrder, now: datetime, trigger_window: timedelta) -> Optional[LimitOrder]:
    """Expired copy of the order when its lifetime or trigger window has passed, else None."""
    if order.status is LimitOrderStatus.ACTIVE and order.expires_at is not None and now >= order.expires_at:
        return replace(order, status=LimitOrderStatus.EXPIRED)
    if (
            order.status is LimitOrderStatus.TRIGGERED
            and order.trigger_expires_at is not None
            and now >= order.trigger_expires_at
    ):
        return replace(
            order,
            status=LimitOrderStatus.EXPIRED,
            execution_error=trigger_window_expired_message(trigger_window),
        )
    return None


def apply_limit_execution(
        order: LimitOrder,
        outcome: ExecutionOutcome,
        now: datetime,
        max_attempts: int,
) -> LimitOrder:
    """
    Record an execution attempt of a triggered order.

    A failed attempt sends the order back to `active` so the next crossing can trigger it
    again; once `max_attempts` failures accumulated the order is `failed`.
    """
    attempts = order.execution_attempts + 1
    if outcome.success:
        ensure_limit_transition(order, LimitOrderStatus.EXECUTED)
        return replace(
            order,
            status=LimitOrderStatus.EXECUTED,
            executed_at=now,
            execution_tx_hash=outcome.tx_hash,
            execution_error=None,
            execution_attempts=attempts,
        )

    target = LimitOrderStatus.FAILED if attempts >= max_attempts else LimitOrderStatus.ACTIVE
    ensure_limit_transition(order, target)
    return replace(
        order,
        status=target,
        execution_error=outcome.error or "Execution failed",
        execution_attempts=attempts,
        triggered_at=None if target is LimitOrderStatus.ACTIVE else order.triggered_at,
        trigger_expires_at=None if target is LimitOrderStatus.ACTIVE else order.trigger_expires_at,
    )


def is_dca_due(order: DCAOrder, now: datetime) -> bool:
    if order.status is not DCAStatus.ACTIVE or order.next_execution is None:
        return False
    if order.next_execution > now:
        return False
    return order.execution_hour is None or now.hour == order.execution_hour


def next_execution_after(now: datetime, frequency: DCAFrequency, execution_hour: Optional[int]) -> datetime:
    if frequency is DCAFrequency.DAILY:
        upcoming = now + timedelta(days=1)
    elif frequency is DCAFrequency.WEEKLY:
        upcoming = now + timedelta(days=7)
    elif frequency is DCAFrequency.BIWEEKLY:
        upcoming = now + timedelta(days=14)
    else:
        upcoming = add_months(now, 1)
    return at_hour(upcoming, execution_hour) if execution_hour is not None else upcoming


def apply_dca_success(order: DCAOrder, outcome: ExecutionOutcome, now: datetime) -> DCAOrder:
    total_spent = order.total_spent + outcome.amount_in
    total_received = order.total_received + outcome.amount_out
    # Nothing received yet: keep the previous average
    average_price = total_spent / total_received if total_received > 0 else order.average_price
    completed = order.completed_intervals + 1
    next_execution = next_execution_after(now, order.frequency, order.execution_hour)

    finished = order.total_intervals is not None and completed >= order.total_intervals
    if order.end_date is not None and next_execution > order.end_date:
        finished = True

    return replace(
        order,
        completed_intervals=completed,
        total_spent=total_spent,
        total_received=total_received,
        average_price=average_price,
        next_execution=next_execution,
        last_execution_at=now,
        last_execution_tx_hash=outcome.tx_hash,
        last_execution_error=None,
        status=DCAStatus.COMPLETED if finished else order.status,
        end_date=now if finished and order.end_date is None else order.end_date,
    )


def apply_dca_failure(order: DCAOrder, error: str, now: datetime) -> DCAOrder:
    """A failed interval waits for the next scheduled interval instead of retrying."""
    return replace(
        order,
        last_execution_at=now,
        last_execution_error=error,
        next_execution=next_execution_after(now, order.frequency, order.execution_hour),
    )
