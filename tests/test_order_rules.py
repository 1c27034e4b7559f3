from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from conftest import make_dca_order, make_limit_order
from xlama.core.errors.error_taxonomy import InvalidOrderTransition
from xlama.core.orders.order_rules import (
    apply_dca_failure,
    apply_dca_success,
    apply_limit_execution,
    ensure_dca_transition,
    ensure_limit_transition,
    evaluate_limit_price,
    expire_limit_order,
    is_dca_due,
    next_execution_after,
)
from xlama.core.structures.orders import (
    DCAFrequency,
    DCAStatus,
    ExecutionOutcome,
    LimitOrderStatus,
    OrderCondition,
    OrderEventType,
)

NOW = datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)
WINDOW = timedelta(hours=24)


class TestEvaluateLimitPrice:
    def test_above_triggers_at_target(self):
        order = make_limit_order(target_price=100.0)
        updated, events = evaluate_limit_price(order, 100.0, NOW, WINDOW)
        assert events == [OrderEventType.TRIGGERED]
        assert updated.status is LimitOrderStatus.TRIGGERED
        assert updated.triggered_at == NOW
        assert updated.trigger_expires_at == NOW + WINDOW

    def test_above_not_met(self):
        order = make_limit_order(target_price=100.0)
        updated, events = evaluate_limit_price(order, 99.0, NOW, WINDOW)
        assert events == []
        assert updated is order

    def test_below(self):
        order = make_limit_order(condition=OrderCondition.BELOW, target_price=50.0)
        assert evaluate_limit_price(order, 51.0, NOW, WINDOW)[1] == []
        assert evaluate_limit_price(order, 49.5, NOW, WINDOW)[1] == [OrderEventType.TRIGGERED]

    def test_non_positive_price_is_ignored(self):
        order = make_limit_order(condition=OrderCondition.BELOW, target_price=50.0)
        assert evaluate_limit_price(order, 0.0, NOW, WINDOW)[1] == []

    def test_expired_order_never_triggers(self):
        order = make_limit_order(expires_at=NOW - timedelta(minutes=1))
        assert evaluate_limit_price(order, 150.0, NOW, WINDOW)[1] == []

    def test_take_profit_and_stop_loss_stamp_once(self):
        order = make_limit_order(target_price=1000.0, take_profit_price=120.0, stop_loss_price=80.0)

        updated, events = evaluate_limit_price(order, 125.0, NOW, WINDOW)
        assert events == [OrderEventType.TAKE_PROFIT]
        assert updated.status is LimitOrderStatus.ACTIVE
        assert updated.tp_triggered_at == NOW

        later = NOW + timedelta(hours=1)
        again, events = evaluate_limit_price(updated, 130.0, later, WINDOW)
        assert events == []
        assert again.tp_triggered_at == NOW

        stopped, events = evaluate_limit_price(updated, 75.0, later, WINDOW)
        assert events == [OrderEventType.STOP_LOSS]
        assert stopped.sl_triggered_at == later


class TestLimitLifecycle:
    def test_expire_active_order_past_lifetime(self):
        order = make_limit_order(expires_at=NOW)
        expired = expire_limit_order(order, NOW, WINDOW)
        assert expired.status is LimitOrderStatus.EXPIRED

    def test_expire_triggered_order_past_window(self):
        order = make_limit_order(status=LimitOrderStatus.TRIGGERED, triggered_at=NOW - WINDOW,
                                 trigger_expires_at=NOW)
        expired = expire_limit_order(order, NOW, WINDOW)
        assert expired.status is LimitOrderStatus.EXPIRED
        assert expired.execution_error == "Trigger window expired (24 hours)"

    def test_nothing_to_expire(self):
        assert expire_limit_order(make_limit_order(), NOW, WINDOW) is None

    def test_successful_execution(self):
        order = make_limit_order(status=LimitOrderStatus.TRIGGERED, execution_error="old")
        executed = apply_limit_execution(order, ExecutionOutcome(success=True, tx_hash="0xabc"), NOW, 3)
        assert executed.status is LimitOrderStatus.EXECUTED
        assert executed.execution_tx_hash == "0xabc"
        assert executed.execution_error is None
        assert executed.execution_attempts == 1

    def test_failed_execution_returns_to_active(self):
        order = make_limit_order(status=LimitOrderStatus.TRIGGERED, triggered_at=NOW, trigger_expires_at=NOW)
        retried = apply_limit_execution(order, ExecutionOutcome(success=False, error="reverted"), NOW, 3)
        assert retried.status is LimitOrderStatus.ACTIVE
        assert retried.triggered_at is None
        assert retried.trigger_expires_at is None
        assert retried.execution_error == "reverted"

    def test_last_failed_attempt_fails_the_order(self):
        order = make_limit_order(status=LimitOrderStatus.TRIGGERED, execution_attempts=2)
        failed = apply_limit_execution(order, ExecutionOutcome(success=False), NOW, 3)
        assert failed.status is LimitOrderStatus.FAILED
        assert failed.execution_error == "Execution failed"
        assert failed.execution_attempts == 3

    def test_executing_an_active_order_is_rejected(self):
        with pytest.raises(InvalidOrderTransition):
            apply_limit_execution(make_limit_order(), ExecutionOutcome(success=True), NOW, 3)

    @pytest.mark.parametrize("status", [
        LimitOrderStatus.EXECUTED,
        LimitOrderStatus.CANCELLED,
        LimitOrderStatus.EXPIRED,
        LimitOrderStatus.FAILED,
    ])
    def test_terminal_states_are_final(self, status):
        with pytest.raises(InvalidOrderTransition):
            ensure_limit_transition(make_limit_order(status=status), LimitOrderStatus.ACTIVE)

    def test_triggered_order_cannot_be_cancelled(self):
        with pytest.raises(InvalidOrderTransition):
            ensure_limit_transition(make_limit_order(status=LimitOrderStatus.TRIGGERED), LimitOrderStatus.CANCELLED)


class TestDcaRules:
    def test_due_requires_active_and_reached_schedule(self):
        order = make_dca_order(next_execution=NOW)
        assert is_dca_due(order, NOW)
        assert not is_dca_due(order, NOW - timedelta(seconds=1))
        assert not is_dca_due(make_dca_order(status=DCAStatus.PAUSED, next_execution=NOW), NOW)

    def test_execution_hour_gate(self):
        order = make_dca_order(next_execution=NOW, execution_hour=14)
        assert not is_dca_due(order, NOW)
        assert is_dca_due(order, NOW.replace(hour=14))

    @pytest.mark.parametrize("frequency, expected", [
        (DCAFrequency.DAILY, datetime(2024, 3, 2, 9, 0, tzinfo=timezone.utc)),
        (DCAFrequency.WEEKLY, datetime(2024, 3, 8, 9, 0, tzinfo=timezone.utc)),
        (DCAFrequency.BIWEEKLY, datetime(2024, 3, 15, 9, 0, tzinfo=timezone.utc)),
        (DCAFrequency.MONTHLY, datetime(2024, 4, 1, 9, 0, tzinfo=timezone.utc)),
    ])
    def test_next_execution(self, frequency, expected):
        assert next_execution_after(NOW.replace(minute=30), frequency, 9) == expected

    def test_monthly_clamps_day(self):
        jan_31 = datetime(2024, 1, 31, 12, 0, tzinfo=timezone.utc)
        assert next_execution_after(jan_31, DCAFrequency.MONTHLY, None) == datetime(2024, 2, 29, 12, 0,
                                                                                   tzinfo=timezone.utc)

    def test_success_updates_running_average(self):
        order = make_dca_order(total_spent=10.0, total_received=0.004, completed_intervals=1)
        updated = apply_dca_success(order, ExecutionOutcome(success=True, tx_hash="0x1", amount_in=10.0,
                                                            amount_out=0.006), NOW)
        assert updated.completed_intervals == 2
        assert updated.total_spent == pytest.approx(20.0)
        assert updated.average_price == pytest.approx(2000.0)
        assert updated.next_execution == NOW + timedelta(days=1)
        assert updated.status is DCAStatus.ACTIVE

    def test_zero_received_keeps_average(self):
        updated = apply_dca_success(make_dca_order(), ExecutionOutcome(success=True, amount_in=10.0), NOW)
        assert updated.average_price is None

    def test_last_interval_completes(self):
        order = make_dca_order(total_intervals=2, completed_intervals=1)
        updated = apply_dca_success(order, ExecutionOutcome(success=True, amount_in=1.0, amount_out=1.0), NOW)
        assert updated.status is DCAStatus.COMPLETED
        assert updated.end_date == NOW

    def test_end_date_before_next_run_completes(self):
        order = make_dca_order(end_date=NOW + timedelta(hours=12))
        updated = apply_dca_success(order, ExecutionOutcome(success=True, amount_in=1.0, amount_out=1.0), NOW)
        assert updated.status is DCAStatus.COMPLETED
        assert updated.end_date == NOW + timedelta(hours=12)

    def test_failure_moves_to_next_interval(self):
        updated = apply_dca_failure(make_dca_order(completed_intervals=1), "no route", NOW)
        assert updated.completed_intervals == 1
        assert updated.last_execution_error == "no route"
        assert updated.next_execution == NOW + timedelta(days=1)

    def test_dca_transitions(self):
        ensure_dca_transition(make_dca_order(status=DCAStatus.PAUSED), DCAStatus.ACTIVE)
        with pytest.raises(InvalidOrderTransition):
            ensure_dca_transition(make_dca_order(status=DCAStatus.COMPLETED), DCAStatus.ACTIVE)
        with pytest.raises(InvalidOrderTransition):
            ensure_dca_transition(make_dca_order(status=DCAStatus.PAUSED), DCAStatus.COMPLETED)
