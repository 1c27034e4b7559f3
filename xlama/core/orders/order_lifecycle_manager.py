from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Set, Tuple

from xlama.configuration.config import settings
from xlama.core.chains.chain_registry import chain_family_for_index
from xlama.core.diagnostics.trade_debug_log import TradeDebugLog
from xlama.core.errors.error_taxonomy import get_user_friendly_error_message
from xlama.core.orders.order_rules import (
    apply_dca_failure,
    apply_dca_success,
    apply_limit_execution,
    ensure_dca_transition,
    ensure_limit_transition,
    evaluate_limit_price,
    expire_limit_order,
    is_dca_due,
)
from xlama.core.pricing.price_feed_aggregator import TokenPriceSource
from xlama.core.structures.orders import (
    DCAOrder,
    DCAStatus,
    ExecutionOutcome,
    LimitOrder,
    LimitOrderStatus,
    OrderEventType,
    OrderKind,
    OrderStatusEvent,
    PriceTick,
    price_key,
)
from xlama.core.utils.date_utils import utc_now
from xlama.logging.logger import get_logger

log = get_logger(__name__)

PENDING_LIMIT_STATUSES = (LimitOrderStatus.ACTIVE, LimitOrderStatus.TRIGGERED)
EVENT_QUEUE_SIZE = 1000

OrderEventSubscriber = Callable[[OrderStatusEvent], None]


class OrderStore(Protocol):
    def add_limit_order(self, order: LimitOrder) -> LimitOrder:
        ...

    def get_limit_order(self, order_id: str) -> Optional[LimitOrder]:
        ...

    def save_limit_order(self, order: LimitOrder) -> LimitOrder:
        ...

    def list_limit_orders(self, user_address: Optional[str] = None,
                          statuses: Optional[Iterable[LimitOrderStatus]] = None) -> List[LimitOrder]:
        ...

    def add_dca_order(self, order: DCAOrder) -> DCAOrder:
        ...

    def get_dca_order(self, order_id: str) -> Optional[DCAOrder]:
        ...

    def save_dca_order(self, order: DCAOrder) -> DCAOrder:
        ...

    def list_dca_orders(self, user_address: Optional[str] = None,
                        statuses: Optional[Iterable[DCAStatus]] = None) -> List[DCAOrder]:
        ...


class OrderExecutor(Protocol):
    async def execute_limit_order(self, order: LimitOrder) -> ExecutionOutcome:
        ...

    async def execute_dca_interval(self, order: DCAOrder) -> ExecutionOutcome:
        ...


class OrderNotFound(KeyError):
    pass


def _positive_amount(value: str, label: str) -> None:
    try:
        parsed = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValueError(f"{label} must be a number") from None
    if not parsed.is_finite() or parsed <= 0:
        raise ValueError(f"{label} must be greater than zero")


class OrderLifecycleManager:
    """
    Drives limit and DCA orders from creation to a terminal state.

    Price ticks arrive on an inbound queue (`publish_price`) and status changes leave on the
    `events` queue and through subscribers. A periodic pass expires stale orders, polls prices
    for pending limit orders, retries pending executions and runs due DCA intervals.

    Each order has its own lock. Evaluation skips an order whose lock is held, and state is
    re-read from the store inside the lock, so one trigger or interval executes at most once.
    Failures of one order are recorded on that order and never stop the others.
    """

    def __init__(
            self,
            store: OrderStore,
            executor: OrderExecutor,
            *,
            trade_log: Optional[TradeDebugLog] = None,
            price_source: Optional[TokenPriceSource] = None,
            clock: Callable[[], datetime] = utc_now,
            max_execution_attempts: int = 3,
            trigger_window: timedelta = timedelta(hours=24),
            evaluation_interval_seconds: float = 60.0,
    ) -> None:
        self.store = store
        self.executor = executor
        self.trade_log = trade_log
        self.price_source = price_source
        self.max_execution_attempts = max(1, int(max_execution_attempts))
        self.trigger_window = trigger_window
        self.evaluation_interval_seconds = evaluation_interval_seconds
        self._clock = clock

        self.events: asyncio.Queue[OrderStatusEvent] = asyncio.Queue(maxsize=EVENT_QUEUE_SIZE)
        self._ticks: asyncio.Queue[PriceTick] = asyncio.Queue()
        self._subscribers: List[OrderEventSubscriber] = []
        self._locks: Dict[str, asyncio.Lock] = {}
        self._executions: Set[asyncio.Task] = set()
        self._loops: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._loops)

    def subscribe(self, callback: OrderEventSubscriber) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish_price(self, tick: PriceTick) -> None:
        self._ticks.put_nowait(tick)

    def start(self) -> None:
        if self._loops:
            return
        self._loops = [
            asyncio.create_task(self._consume_ticks(), name="orders-ticks"),
            asyncio.create_task(self._run_timer(), name="orders-timer"),
        ]
        log.info("[ORDERS][ENGINE][START] interval=%.0fs trigger_window=%s max_attempts=%d",
                 self.evaluation_interval_seconds, self.trigger_window, self.max_execution_attempts)

    async def stop(self) -> None:
        loops, self._loops = self._loops, []
        for task in loops:
            task.cancel()
        for task in loops:
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.drain()
        log.info("[ORDERS][ENGINE][STOP]")

    async def drain(self) -> None:
        """Wait for execution attempts scheduled by price ticks."""
        while self._executions:
            await asyncio.gather(*list(self._executions), return_exceptions=True)

    async def _consume_ticks(self) -> None:
        while True:
            tick = await self._ticks.get()
            try:
                await self.process_tick(tick)
            except Exception:
                log.exception("[ORDERS][TICK] Evaluation failed for %s", tick.key)
            finally:
                self._ticks.task_done()

    async def _run_timer(self) -> None:
        while True:
            try:
                await self.run_due_orders()
            except Exception:
                log.exception("[ORDERS][TIMER] Periodic evaluation failed")
            await asyncio.sleep(self.evaluation_interval_seconds)

    def _lock_for(self, order_id: str) -> asyncio.Lock:
        lock = self._locks.get(order_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[order_id] = lock
        return lock

    def _forget_lock(self, order_id: str) -> None:
        # Only called once the terminal state is persisted, so a fresh lock re-reads a final order
        self._locks.pop(order_id, None)

    def _spawn_execution(self, order_id: str) -> None:
        task = asyncio.create_task(self._execute_limit(order_id), name=f"limit-exec-{order_id}")
        self._executions.add(task)
        task.add_done_callback(self._executions.discard)

    async def process_tick(self, tick: PriceTick) -> None:
        """Evaluate every pending limit order priced by this tick's token."""
        if tick.price <= 0:
            log.debug("[ORDERS][TICK] Ignoring non-positive price for %s", tick.key)
            return
        orders = [
            order for order in self.store.list_limit_orders(statuses=PENDING_LIMIT_STATUSES)
            if price_key(order.chain_index, order.from_token_address) == tick.key
        ]
        for order in orders:
            triggered = await self._evaluate_limit(order.id, tick.price)
            if triggered:
                self._spawn_execution(order.id)

    async def _evaluate_limit(self, order_id: str, price: float) -> bool:
        """Apply one price to one order. True when the order just moved to `triggered`."""
        lock = self._lock_for(order_id)
        if lock.locked():
            log.debug("[ORDERS][LIMIT][SKIP] order=%s busy", order_id)
            return False
        async with lock:
            order = self.store.get_limit_order(order_id)
            if order is None or order.status.is_terminal:
                return False
            now = self._clock()

            expired = expire_limit_order(order, now, self.trigger_window)
            if expired is not None:
                self._save_limit(expired, OrderEventType.EXPIRED, now)
                return False

            updated, events = evaluate_limit_price(order, price, now, self.trigger_window)
            if not events:
                return False
            self.store.save_limit_order(updated)
            for event_type in events:
                self._emit_limit(updated, event_type, now, price=price)
            if OrderEventType.TRIGGERED in events:
                log.info("[ORDERS][LIMIT][TRIGGERED] order=%s %s %s price=%s target=%s", order.id,
                         order.from_token_symbol, order.condition.value, price, order.target_price)
                return True
            return False

    async def _execute_limit(self, order_id: str) -> None:
        lock = self._lock_for(order_id)
        if lock.locked():
            log.debug("[ORDERS][LIMIT][EXECUTE][SKIP] order=%s busy", order_id)
            return
        async with lock:
            order = self.store.get_limit_order(order_id)
            if order is None or order.status is not LimitOrderStatus.TRIGGERED:
                return
            now = self._clock()
            expired = expire_limit_order(order, now, self.trigger_window)
            if expired is not None:
                self._save_limit(expired, OrderEventType.EXPIRED, now)
                return

            self._trade_info(order.chain_index, "limit_execute", f"Executing limit order {order.id}",
                             {"order_id": order.id, "attempt": order.execution_attempts + 1})
            outcome = await self._run_executor(self.executor.execute_limit_order, order)
            now = self._clock()
            updated = apply_limit_execution(order, outcome, now, self.max_execution_attempts)

            if outcome.success:
                self._save_limit(updated, OrderEventType.EXECUTED, now)
                log.info("[ORDERS][LIMIT][EXECUTED] order=%s tx=%s", order.id, outcome.tx_hash)
                return

            self._trade_error(order.chain_index, "limit_execute", updated.execution_error or "Execution failed",
                              {"order_id": order.id, "attempts": updated.execution_attempts})
            self.store.save_limit_order(updated)
            self._emit_limit(updated, OrderEventType.EXECUTION_FAILED, now)
            if updated.status is LimitOrderStatus.FAILED:
                self._emit_limit(updated, OrderEventType.FAILED, now)
                self._forget_lock(order.id)
            log.warning("[ORDERS][LIMIT][FAILED] order=%s attempts=%d status=%s error=%s", order.id,
                        updated.execution_attempts, updated.status.value, updated.execution_error)

    async def _run_executor(self, call, order) -> ExecutionOutcome:
        try:
            return await call(order)
        except Exception as exc:
            log.exception("[ORDERS][EXECUTOR] order=%s raised", order.id)
            return ExecutionOutcome(success=False,
                                    error=get_user_friendly_error_message(exc, chain_family_for_index(order.chain_index)))

    async def run_due_orders(self) -> None:
        """One periodic pass over every pending order."""
        await self.expire_limit_orders()
        await self.poll_limit_prices()
        await self.execute_pending_limit_orders()
        await self.run_due_dca_orders()

    async def expire_limit_orders(self) -> int:
        expired_count = 0
        for order in self.store.list_limit_orders(statuses=PENDING_LIMIT_STATUSES):
            now = self._clock()
            if expire_limit_order(order, now, self.trigger_window) is None:
                continue
            lock = self._lock_for(order.id)
            if lock.locked():
                continue
            async with lock:
                current = self.store.get_limit_order(order.id)
                if current is None:
                    continue
                expired = expire_limit_order(current, now, self.trigger_window)
                if expired is not None:
                    self._save_limit(expired, OrderEventType.EXPIRED, now)
                    expired_count += 1
        if expired_count:
            log.info("[ORDERS][LIMIT][EXPIRE] expired=%d", expired_count)
        return expired_count

    async def poll_limit_prices(self) -> None:
        if self.price_source is None:
            return
        tokens: Dict[str, Tuple[str, str]] = {}
        for order in self.store.list_limit_orders(statuses=(LimitOrderStatus.ACTIVE,)):
            tokens.setdefault(price_key(order.chain_index, order.from_token_address),
                              (order.chain_index, order.from_token_address))
        for chain_index, token_address in tokens.values():
            try:
                price = await self.price_source.get_price(chain_index, token_address)
            except Exception as exc:
                log.warning("[ORDERS][PRICE] %s:%s unavailable: %s", chain_index, token_address, exc)
                continue
            if price is None:
                continue
            await self.process_tick(PriceTick(chain_index=chain_index, token_address=token_address,
                                              price=price, observed_at=self._clock()))

    async def execute_pending_limit_orders(self) -> None:
        for order in self.store.list_limit_orders(statuses=(LimitOrderStatus.TRIGGERED,)):
            await self._execute_limit(order.id)

    async def run_due_dca_orders(self) -> None:
        for order in self.store.list_dca_orders(statuses=(DCAStatus.ACTIVE,)):
            now = self._clock()
            if order.end_date is not None and now > order.end_date:
                await self._complete_dca(order.id)
            elif is_dca_due(order, now):
                await self._execute_dca(order.id)

    async def _complete_dca(self, order_id: str) -> None:
        lock = self._lock_for(order_id)
        if lock.locked():
            return
        async with lock:
            order = self.store.get_dca_order(order_id)
            if order is None or order.status is not DCAStatus.ACTIVE:
                return
            now = self._clock()
            ensure_dca_transition(order, DCAStatus.COMPLETED)
            self._save_dca(replace(order, status=DCAStatus.COMPLETED), OrderEventType.COMPLETED, now)
            log.info("[ORDERS][DCA][COMPLETED] order=%s end_date reached intervals=%d", order.id,
                     order.completed_intervals)

    async def _execute_dca(self, order_id: str) -> None:
        lock = self._lock_for(order_id)
        if lock.locked():
            log.debug("[ORDERS][DCA][SKIP] order=%s busy", order_id)
            return
        async with lock:
            order = self.store.get_dca_order(order_id)
            now = self._clock()
            if order is None or not is_dca_due(order, now):
                return

            interval = order.completed_intervals + 1
            self._trade_info(order.chain_index, "dca_execute", f"Executing DCA interval {interval} of {order.id}",
                             {"order_id": order.id, "interval": interval})
            outcome = await self._run_executor(self.executor.execute_dca_interval, order)
            now = self._clock()

            if not outcome.success:
                error = outcome.error or "Execution failed"
                updated = apply_dca_failure(order, error, now)
                self._save_dca(updated, OrderEventType.INTERVAL_FAILED, now, error=error)
                self._trade_error(order.chain_index, "dca_execute", error, {"order_id": order.id})
                log.warning("[ORDERS][DCA][FAILED] order=%s interval=%d error=%s next=%s", order.id, interval,
                            error, updated.next_execution)
                return

            updated = apply_dca_success(order, outcome, now)
            self._save_dca(updated, OrderEventType.INTERVAL_EXECUTED, now, tx_hash=outcome.tx_hash)
            log.info("[ORDERS][DCA][EXECUTED] order=%s interval=%d tx=%s avg=%s", order.id, interval,
                     outcome.tx_hash, updated.average_price)
            if updated.status is DCAStatus.COMPLETED:
                self._emit_dca(updated, OrderEventType.COMPLETED, now)

    def create_limit_order(self, order: LimitOrder) -> LimitOrder:
        _positive_amount(order.amount, "Amount")
        if order.target_price <= 0:
            raise ValueError("Target price must be greater than zero")
        if order.status is not LimitOrderStatus.ACTIVE:
            raise ValueError("New limit orders must be active")
        stored = self.store.add_limit_order(order)
        self._emit_limit(stored, OrderEventType.CREATED, self._clock())
        return stored

    async def cancel_limit_order(self, order_id: str, user_address: str) -> LimitOrder:
        async with self._lock_for(order_id):
            order = self.store.get_limit_order(order_id)
            if order is None or order.user_address != user_address:
                raise OrderNotFound(order_id)
            ensure_limit_transition(order, LimitOrderStatus.CANCELLED)
            cancelled = replace(order, status=LimitOrderStatus.CANCELLED)
            self._save_limit(cancelled, OrderEventType.CANCELLED, self._clock())
        return cancelled

    def create_dca_order(self, order: DCAOrder) -> DCAOrder:
        _positive_amount(order.amount_per_interval, "Amount per interval")
        if order.execution_hour is not None and not 0 <= order.execution_hour <= 23:
            raise ValueError("Execution hour must be between 0 and 23")
        if order.total_intervals is not None and order.total_intervals <= 0:
            raise ValueError("Total intervals must be greater than zero")
        if order.end_date is not None and order.end_date <= order.start_date:
            raise ValueError("End date must be after start date")
        if order.status is not DCAStatus.ACTIVE:
            raise ValueError("New DCA orders must be active")
        stored = self.store.add_dca_order(order)
        self._emit_dca(stored, OrderEventType.CREATED, self._clock())
        return stored

    async def pause_dca_order(self, order_id: str, user_address: str) -> DCAOrder:
        return await self._transition_dca(order_id, user_address, DCAStatus.PAUSED, OrderEventType.PAUSED)

    async def resume_dca_order(self, order_id: str, user_address: str) -> DCAOrder:
        return await self._transition_dca(order_id, user_address, DCAStatus.ACTIVE, OrderEventType.RESUMED)

    async def cancel_dca_order(self, order_id: str, user_address: str) -> DCAOrder:
        return await self._transition_dca(order_id, user_address, DCAStatus.CANCELLED, OrderEventType.CANCELLED)

    async def _transition_dca(self, order_id: str, user_address: str, target: DCAStatus,
                              event_type: OrderEventType) -> DCAOrder:
        async with self._lock_for(order_id):
            order = self.store.get_dca_order(order_id)
            if order is None or order.user_address != user_address:
                raise OrderNotFound(order_id)
            ensure_dca_transition(order, target)
            now = self._clock()
            changes: Dict[str, object] = {"status": target}
            # A resumed order does not replay the intervals missed while paused
            if target is DCAStatus.ACTIVE and order.next_execution is not None and order.next_execution < now:
                changes["next_execution"] = now
            updated = replace(order, **changes)
            self._save_dca(updated, event_type, now)
            return updated

    def _save_limit(self, order: LimitOrder, event_type: OrderEventType, now: datetime) -> None:
        self.store.save_limit_order(order)
        self._emit_limit(order, event_type, now)
        if order.status.is_terminal:
            self._forget_lock(order.id)

    def _save_dca(self, order: DCAOrder, event_type: OrderEventType, now: datetime,
                  tx_hash: Optional[str] = None, error: Optional[str] = None) -> None:
        self.store.save_dca_order(order)
        self._emit_dca(order, event_type, now, tx_hash=tx_hash, error=error)
        if order.status.is_terminal:
            self._forget_lock(order.id)

    def _emit_limit(self, order: LimitOrder, event_type: OrderEventType, now: datetime,
                    price: Optional[float] = None) -> None:
        self._emit(OrderStatusEvent(
            order_id=order.id,
            order_kind=OrderKind.LIMIT,
            event_type=event_type,
            status=order.status.value,
            user_address=order.user_address,
            occurred_at=now,
            tx_hash=order.execution_tx_hash,
            error=order.execution_error,
            price=price,
        ))

    def _emit_dca(self, order: DCAOrder, event_type: OrderEventType, now: datetime,
                  tx_hash: Optional[str] = None, error: Optional[str] = None) -> None:
        self._emit(OrderStatusEvent(
            order_id=order.id,
            order_kind=OrderKind.DCA,
            event_type=event_type,
            status=order.status.value,
            user_address=order.user_address,
            occurred_at=now,
            tx_hash=tx_hash,
            error=error,
        ))

    def _emit(self, event: OrderStatusEvent) -> None:
        if self.events.full():
            dropped = self.events.get_nowait()
            log.debug("[ORDERS][EVENTS] Queue full, dropping %s/%s", dropped.order_id, dropped.event_type.value)
        self.events.put_nowait(event)

        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                log.exception("[ORDERS][EVENTS] Subscriber failed for order=%s", event.order_id)

    def _trade_info(self, chain_index: str, action: str, message: str, data: Dict[str, object]) -> None:
        if self.trade_log is not None:
            self.trade_log.info(chain_family_for_index(chain_index).value, action, message, data, chain_index)

    def _trade_error(self, chain_index: str, action: str, message: str, data: Dict[str, object]) -> None:
        if self.trade_log is not None:
            self.trade_log.error(chain_family_for_index(chain_index).value, action, message, data, chain_index)


def build_default_order_manager(store: OrderStore, executor: OrderExecutor, *,
                                trade_log: Optional[TradeDebugLog] = None,
                                price_source: Optional[TokenPriceSource] = None) -> OrderLifecycleManager:
    """Factory using Settings for convenience."""
    return OrderLifecycleManager(
        store,
        executor,
        trade_log=trade_log,
        price_source=price_source,
        max_execution_attempts=settings.LIMIT_ORDER_MAX_EXECUTION_ATTEMPTS,
        trigger_window=timedelta(hours=settings.LIMIT_ORDER_TRIGGER_WINDOW_HOURS),
        evaluation_interval_seconds=settings.ORDER_EVALUATION_INTERVAL_SECONDS,
    )
