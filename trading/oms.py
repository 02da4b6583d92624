# trading/oms.py
import copy
import threading
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any, Optional, Protocol

from config.settings import OrderConfig
from core.events import Event, EventBus, EventType, OrderEvent
from core.exceptions import OrderValidationError
from core.types import (
    Order,
    OrderState,
    OrderStateRecord,
    OrderStatus,
    StateTransition,
)
from utils.logger import get_logger
from utils.metrics import MetricsRegistry
from utils.scheduler import Scheduler

log = get_logger(__name__)


class TimerScheduler(Protocol):
    def schedule_once(self, delay: float, fn: Callable[[], object], name: str = "") -> Any:
        ...


class OrderStateMachine:
    """Valid local order state transitions.

    FAILED is the only non-terminal dead end: it may go back to PENDING for a
    bounded number of retries. PARTIALLY_FILLED may repeat so each new fill
    is its own history entry.
    """

    VALID_TRANSITIONS: dict[OrderState, frozenset[OrderState]] = {
        OrderState.CREATED: frozenset({OrderState.PENDING, OrderState.CANCELLED}),
        OrderState.PENDING: frozenset({
            OrderState.SUBMITTED, OrderState.FAILED,
            OrderState.CANCELLED, OrderState.EXPIRED,
        }),
        OrderState.SUBMITTED: frozenset({
            OrderState.ACKNOWLEDGED, OrderState.REJECTED, OrderState.FAILED,
            OrderState.CANCELLED, OrderState.EXPIRED,
        }),
        OrderState.ACKNOWLEDGED: frozenset({
            OrderState.PARTIALLY_FILLED, OrderState.FILLED,
            OrderState.CANCELLED, OrderState.REJECTED,
        }),
        OrderState.PARTIALLY_FILLED: frozenset({
            OrderState.PARTIALLY_FILLED, OrderState.FILLED, OrderState.CANCELLED,
        }),
        OrderState.FAILED: frozenset({OrderState.PENDING}),
        OrderState.FILLED: frozenset(),
        OrderState.CANCELLED: frozenset(),
        OrderState.REJECTED: frozenset(),
        OrderState.EXPIRED: frozenset(),
    }

    @classmethod
    def can_transition(cls, from_state: OrderState, to_state: OrderState) -> bool:
        return to_state in cls.VALID_TRANSITIONS.get(from_state, frozenset())


# Broker status -> local state. Anything the broker still holds open is at
# least ACKNOWLEDGED from our side.
_STATUS_TO_STATE = {
    OrderStatus.PENDING: OrderState.ACKNOWLEDGED,
    OrderStatus.SUBMITTED: OrderState.ACKNOWLEDGED,
    OrderStatus.PARTIALLY_FILLED: OrderState.PARTIALLY_FILLED,
    OrderStatus.FILLED: OrderState.FILLED,
    OrderStatus.CANCELLED: OrderState.CANCELLED,
    OrderStatus.REJECTED: OrderState.REJECTED,
}



def state_for_status(status: OrderStatus) -> OrderState:
    """Local state a broker status corresponds to."""
    return _STATUS_TO_STATE[status]


_BRIDGES: tuple[tuple[OrderState, ...], ...] = (
    (),
    (OrderState.ACKNOWLEDGED,),
    (OrderState.SUBMITTED, OrderState.ACKNOWLEDGED),
)

_STATE_EVENTS = {
    OrderState.FILLED: EventType.ORDER_FILLED,
    OrderState.PARTIALLY_FILLED: EventType.ORDER_PARTIALLY_FILLED,
    OrderState.REJECTED: EventType.ORDER_REJECTED,
    OrderState.CANCELLED: EventType.ORDER_CANCELLED,
    OrderState.FAILED: EventType.ORDER_FAILED,
}

_TIMED_STATES = (OrderState.PENDING, OrderState.SUBMITTED)

_PENDING_STATES = frozenset({
    OrderState.PENDING, OrderState.SUBMITTED, OrderState.ACKNOWLEDGED,
})

_OPEN_STATES = _PENDING_STATES | {OrderState.PARTIALLY_FILLED}


class OrderRegistry:
    """Authoritative local store of order lifecycles.

    Features:
    - Explicit transition table; refused transitions leave the record untouched
    - Timeouts for PENDING/SUBMITTED, cancelled on the next accepted transition
    - Parent/child links; children are cancelled when the parent finishes
    - Bounded FAILED -> PENDING retries

    All reads return deep copies. Events are published after the lock is
    released.
    """

    def __init__(
        self,
        config: Optional[OrderConfig] = None,
        bus: Optional[EventBus] = None,
        scheduler: Optional[TimerScheduler] = None,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self.config = config or OrderConfig()
        self._bus = bus
        self._scheduler = scheduler or Scheduler()
        self._metrics = metrics
        self._lock = threading.RLock()

        self._orders: dict[str, OrderStateRecord] = {}
        self._broker_index: dict[str, str] = {}
        self._timers: dict[str, Any] = {}

        log.info(
            f"Order registry initialized: timeout={self.config.timeout_seconds}s, "
            f"max_retries={self.config.max_retries}"
        )

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def create_order(
        self,
        order: Order,
        parent_order_id: Optional[str] = None,
    ) -> OrderStateRecord:
        """Register ``order`` and move it CREATED -> PENDING."""
        events: list[Event] = []
        with self._lock:
            if order.order_id in self._orders:
                raise OrderValidationError(
                    f"Order {order.order_id} is already registered",
                    details={"order_id": order.order_id},
                )
            record = OrderStateRecord(order=copy.deepcopy(order))
            self._orders[order.order_id] = record
            self._transition(record, OrderState.PENDING, "Order created", events)
            if parent_order_id:
                self._link(parent_order_id, order.order_id)
            snapshot = copy.deepcopy(record)

        log.info(
            f"Order registered: {order.order_id} {order.side.value} "
            f"{order.quantity} {order.symbol}"
        )
        self._publish(events)
        return snapshot

    def adopt_broker_order(self, order: Order) -> OrderStateRecord:
        """Register an order found at the broker but unknown locally."""
        events: list[Event] = []
        with self._lock:
            existing_id = self._broker_index.get(order.order_id)
            if existing_id is not None or order.order_id in self._orders:
                return copy.deepcopy(self._orders[existing_id or order.order_id])

            record = OrderStateRecord(order=copy.deepcopy(order))
            record.broker_order_id = order.order_id
            self._orders[order.order_id] = record
            self._broker_index[order.order_id] = order.order_id
            for state in (OrderState.PENDING, OrderState.SUBMITTED, OrderState.ACKNOWLEDGED):
                self._transition(record, state, "Adopted from broker", events)
            self._apply_status_locked(
                record, order.status, order.filled_quantity, order.average_price, events,
            )
            snapshot = copy.deepcopy(record)

        log.warning(f"Adopted untracked broker order {order.order_id} ({order.symbol})")
        self._publish(events)
        return snapshot

    def link_child_order(self, parent_order_id: str, child_order_id: str) -> bool:
        with self._lock:
            linked = self._link(parent_order_id, child_order_id)
        if linked:
            log.info(f"🔗 Orders linked: parent={parent_order_id} child={child_order_id}")
        return linked

    def _link(self, parent_order_id: str, child_order_id: str) -> bool:
        parent = self._orders.get(parent_order_id)
        child = self._orders.get(child_order_id)
        if parent is None or child is None:
            log.warning(
                f"Cannot link {child_order_id} to {parent_order_id}: unknown order"
            )
            return False
        if child_order_id not in parent.child_order_ids:
            parent.child_order_ids.append(child_order_id)
        child.parent_order_id = parent_order_id
        return True

    # ------------------------------------------------------------------
    # State changes
    # ------------------------------------------------------------------

    def update_state(
        self,
        order_id: str,
        state: OrderState,
        reason: str = "",
        filled_quantity: Optional[int] = None,
        average_price: Optional[float] = None,
    ) -> bool:
        """Apply one transition. Returns False (and logs) when refused."""
        events: list[Event] = []
        with self._lock:
            record = self._orders.get(order_id)
            if record is None:
                log.warning(f"Attempted to update unknown order {order_id}")
                return False
            if not self._apply_fill(record, filled_quantity, average_price, state):
                return False
            accepted = self._transition(record, state, reason, events)
        self._publish(events)
        return accepted

    def mark_submitted(self, order_id: str) -> bool:
        return self.update_state(order_id, OrderState.SUBMITTED, "Order submitted to broker")

    def mark_acknowledged(self, order_id: str, broker_order_id: Optional[str] = None) -> bool:
        events: list[Event] = []
        with self._lock:
            record = self._orders.get(order_id)
            if record is None:
                log.warning(f"Attempted to acknowledge unknown order {order_id}")
                return False
            accepted = self._transition(
                record, OrderState.ACKNOWLEDGED, "Order acknowledged by broker", events,
            )
            if accepted and broker_order_id:
                record.broker_order_id = broker_order_id
                self._broker_index[broker_order_id] = order_id
        self._publish(events)
        return accepted

    def mark_rejected(self, order_id: str, reason: str) -> bool:
        return self._close_with_error(order_id, OrderState.REJECTED, reason)

    def mark_failed(self, order_id: str, error: str) -> bool:
        return self._close_with_error(order_id, OrderState.FAILED, error)

    def mark_cancelled(self, order_id: str, reason: str = "Cancelled") -> bool:
        return self.update_state(order_id, OrderState.CANCELLED, reason)

    def retry_order(self, order_id: str) -> bool:
        """FAILED -> PENDING while retries remain."""
        if not self.can_retry(order_id):
            log.warning(f"Order {order_id} cannot be retried")
            return False
        return self.update_state(order_id, OrderState.PENDING, "Retrying order")

    def can_retry(self, order_id: str) -> bool:
        with self._lock:
            record = self._orders.get(order_id)
            return (
                record is not None
                and record.state == OrderState.FAILED
                and record.retry_count < self.config.max_retries
            )

    def apply_broker_status(
        self,
        order_id: str,
        status: OrderStatus,
        filled_quantity: Optional[int] = None,
        average_price: Optional[float] = None,
    ) -> bool:
        """Move the local state to match a broker-reported status.

        Walks through SUBMITTED/ACKNOWLEDGED when the direct edge is not in
        the table. Returns True when at least one transition was applied.
        """
        events: list[Event] = []
        with self._lock:
            record = self._orders.get(order_id)
            if record is None:
                log.warning(f"Broker status for unknown order {order_id}")
                return False
            changed = self._apply_status_locked(
                record, status, filled_quantity, average_price, events,
            )
        self._publish(events)
        return changed

    def _apply_status_locked(
        self,
        record: OrderStateRecord,
        status: OrderStatus,
        filled_quantity: Optional[int],
        average_price: Optional[float],
        events: list[Event],
    ) -> bool:
        if record.is_terminal:
            return False

        target = _STATUS_TO_STATE[status]
        if filled_quantity is None and status == OrderStatus.FILLED:
            filled_quantity = record.order.quantity

        if target == record.state:
            fill_changed = (
                filled_quantity is not None
                and filled_quantity != record.order.filled_quantity
            )
            if not (target == OrderState.PARTIALLY_FILLED and fill_changed):
                record.order.status = status
                return False

        path = None
        current = record.state
        for bridge in _BRIDGES:
            steps = (*bridge, target)
            state = current
            if all(
                OrderStateMachine.can_transition(prev, nxt)
                for prev, nxt in zip((state, *steps[:-1]), steps)
            ):
                path = steps
                break
        if path is None:
            log.warning(
                f"No path from {current.value} to broker status {status.value} "
                f"for order {record.order_id}"
            )
            return False

        if not self._fill_in_range(record, filled_quantity):
            return False
        reason = f"Broker status: {status.value}"
        for step in path[:-1]:
            if not self._transition(record, step, reason, events):
                return False
        # Fill lands before the final step so its events carry it.
        if filled_quantity is not None:
            record.order.filled_quantity = int(filled_quantity)
        if average_price is not None:
            record.order.average_price = float(average_price)
        if not self._transition(record, target, reason, events):
            return False
        record.order.status = status
        return True

    def _fill_in_range(self, record: OrderStateRecord, filled_quantity: Optional[int]) -> bool:
        if filled_quantity is not None and not 0 <= filled_quantity <= record.order.quantity:
            log.error(
                f"Refusing fill {filled_quantity} outside [0, {record.order.quantity}] "
                f"for order {record.order_id}"
            )
            return False
        return True

    def _apply_fill(
        self,
        record: OrderStateRecord,
        filled_quantity: Optional[int],
        average_price: Optional[float],
        target: OrderState,
    ) -> bool:
        if not self._fill_in_range(record, filled_quantity):
            return False
        if filled_quantity is not None:
            if not OrderStateMachine.can_transition(record.state, target):
                return True
            record.order.filled_quantity = int(filled_quantity)
        if average_price is not None and OrderStateMachine.can_transition(record.state, target):
            record.order.average_price = float(average_price)
        return True

    def _close_with_error(self, order_id: str, state: OrderState, message: str) -> bool:
        """Transition to REJECTED/FAILED; the message is kept only if the move is accepted."""
        events: list[Event] = []
        with self._lock:
            record = self._orders.get(order_id)
            if record is None:
                log.warning(f"Attempted to update unknown order {order_id}")
                return False
            accepted = self._transition(record, state, message, events)
            if accepted:
                record.error_message = message
        self._publish(events)
        return accepted

    def _transition(
        self,
        record: OrderStateRecord,
        new_state: OrderState,
        reason: str,
        events: list[Event],
    ) -> bool:
        """Apply one transition under the lock, queueing its events."""
        old_state = record.state
        if not OrderStateMachine.can_transition(old_state, new_state):
            log.warning(
                f"Invalid state transition for {record.order_id}: "
                f"{old_state.value} -> {new_state.value} ({reason})"
            )
            return False
        if old_state == OrderState.FAILED and new_state == OrderState.PENDING:
            if record.retry_count >= self.config.max_retries:
                log.warning(
                    f"Order {record.order_id} exhausted {self.config.max_retries} retries"
                )
                return False
            record.retry_count += 1

        self._cancel_timer(record.order_id)

        now = datetime.now()
        record.state = new_state
        record.updated_at = now
        record.history.append(StateTransition(old_state, new_state, reason, now))

        if new_state in _TIMED_STATES:
            self._schedule_timeout(record)

        log.info(
            f"Order {record.order_id} {old_state.value} -> {new_state.value}"
            + (f" ({reason})" if reason else "")
        )
        if self._metrics is not None:
            self._metrics.inc_counter(
                "order_transitions_total", labels={"to_state": new_state.value}
            )

        events.append(self._order_event(EventType.ORDER_STATE_CHANGED, record, old_state, reason))
        specific = _STATE_EVENTS.get(new_state)
        if specific is not None:
            events.append(self._order_event(specific, record, old_state, reason))

        if new_state.is_terminal and record.child_order_ids:
            self._cancel_children(record, events)
        return True

    def _cancel_children(self, parent: OrderStateRecord, events: list[Event]) -> None:
        cancelled = []
        reason = f"Parent order {parent.state.value.lower()}"
        for child_id in parent.child_order_ids:
            child = self._orders.get(child_id)
            if child is None or child.is_terminal:
                continue
            if self._transition(child, OrderState.CANCELLED, reason, events):
                cancelled.append(child_id)
        if cancelled:
            log.info(f"🚫 Cancelled child orders of {parent.order_id}: {cancelled}")
            events.append(Event(
                type=EventType.CHILD_ORDERS_CANCELLED,
                source="oms",
                data={"parent_order_id": parent.order_id, "child_order_ids": cancelled},
            ))

    def _order_event(
        self,
        event_type: EventType,
        record: OrderStateRecord,
        old_state: OrderState,
        reason: str,
    ) -> OrderEvent:
        return OrderEvent(
            type=event_type,
            source="oms",
            order_id=record.order_id,
            symbol=record.order.symbol,
            from_state=old_state.value,
            to_state=record.state.value,
            reason=reason,
            data={
                "broker_order_id": record.broker_order_id,
                "side": record.order.side.value,
                "quantity": record.order.quantity,
                "filled_quantity": record.order.filled_quantity,
                "average_price": record.order.average_price,
                "retry_count": record.retry_count,
            },
        )

    def _publish(self, events: list[Event]) -> None:
        if self._bus is None:
            return
        for event in events:
            self._bus.publish(event)

    # ------------------------------------------------------------------
    # Timeouts
    # ------------------------------------------------------------------

    def _schedule_timeout(self, record: OrderStateRecord) -> None:
        order_id = record.order_id
        generation = len(record.history)
        self._timers[order_id] = self._scheduler.schedule_once(
            self.config.timeout_seconds,
            lambda: self._on_timeout(order_id, generation),
            name=f"order_timeout:{order_id}",
        )

    def _cancel_timer(self, order_id: str) -> None:
        handle = self._timers.pop(order_id, None)
        if handle is not None:
            handle.cancel()

    def _on_timeout(self, order_id: str, generation: int) -> None:
        events: list[Event] = []
        with self._lock:
            record = self._orders.get(order_id)
            # Any accepted transition since scheduling makes this timer stale.
            if record is None or len(record.history) != generation:
                return
            self._timers.pop(order_id, None)
            waited = record.state.value
            if not self._transition(record, OrderState.EXPIRED, "Order timeout", events):
                return
            record.error_message = f"No broker response within {self.config.timeout_seconds}s"
            events.append(self._order_event(
                EventType.ORDER_TIMEOUT, record, OrderState[waited], "Order timeout",
            ))
        log.warning(f"⏰ Order timeout, no response from broker: {order_id} (was {waited})")
        self._publish(events)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_order(self, order_id: str) -> Optional[OrderStateRecord]:
        with self._lock:
            record = self._orders.get(order_id)
            return copy.deepcopy(record) if record else None

    def get_by_broker_id(self, broker_order_id: str) -> Optional[OrderStateRecord]:
        with self._lock:
            order_id = self._broker_index.get(broker_order_id)
            record = self._orders.get(order_id) if order_id else None
            return copy.deepcopy(record) if record else None

    def _select(self, predicate: Callable[[OrderStateRecord], bool]) -> list[OrderStateRecord]:
        with self._lock:
            return [copy.deepcopy(r) for r in self._orders.values() if predicate(r)]

    def get_all_orders(self) -> list[OrderStateRecord]:
        return self._select(lambda r: True)

    def get_orders_by_state(self, state: OrderState) -> list[OrderStateRecord]:
        return self._select(lambda r: r.state == state)

    def get_orders_by_symbol(self, symbol: str) -> list[OrderStateRecord]:
        return self._select(lambda r: r.order.symbol == symbol)

    def get_pending_orders(self) -> list[OrderStateRecord]:
        """Orders waiting on the broker (PENDING, SUBMITTED, ACKNOWLEDGED)."""
        return self._select(lambda r: r.state in _PENDING_STATES)

    def get_open_orders(self) -> list[OrderStateRecord]:
        """Orders the broker may still fill."""
        return self._select(lambda r: r.state in _OPEN_STATES)

    def get_statistics(self) -> dict[str, Any]:
        with self._lock:
            states = [r.state for r in self._orders.values()]
            pending_timeouts = len(self._timers)
        return {
            "total": len(states),
            "by_state": {s.value.lower(): states.count(s) for s in OrderState},
            "active_pending": sum(1 for s in states if s in _PENDING_STATES),
            "pending_timeouts": pending_timeouts,
        }

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def cleanup_old_orders(
        self,
        retention_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """Drop terminal orders last updated before the retention cutoff."""
        days = self.config.retention_days if retention_days is None else retention_days
        cutoff = (now or datetime.now()) - timedelta(days=days)
        with self._lock:
            stale = [
                oid for oid, r in self._orders.items()
                if r.is_terminal and r.updated_at < cutoff
            ]
            for oid in stale:
                record = self._orders.pop(oid)
                if record.broker_order_id:
                    self._broker_index.pop(record.broker_order_id, None)
            remaining = len(self._orders)
        if stale:
            log.info(f"🧹 Cleaned up old orders: removed={len(stale)} remaining={remaining}")
        return len(stale)

    def shutdown(self) -> None:
        """Cancel every pending timeout."""
        with self._lock:
            handles = list(self._timers.values())
            self._timers.clear()
        for handle in handles:
            handle.cancel()
        log.info(f"Order registry shut down ({len(handles)} timers cancelled)")
