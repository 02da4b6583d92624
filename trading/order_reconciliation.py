"""
Order reconciliation.

Every cycle fetches the broker order book once and compares it with every
open order in the registry that carries a broker order id. Broker status
wins: differences are applied through the registry so the transition table
and its events stay authoritative. Orders the broker has never heard of are
given ``max_missing_cycles`` chances before reconciliation gives up on them.
"""
from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any, Optional

from config.settings import ReconciliationConfig
from core.events import Event, EventBus, EventType
from core.types import Order, OrderBookSnapshot, OrderStateRecord
from trading.oms import OrderRegistry, state_for_status
from utils.logger import format_fields, get_logger
from utils.metrics import MetricsRegistry
from utils.scheduler import Scheduler

log = get_logger(__name__)

TASK_NAME = "order_reconciliation"


class OrderReconciler:
    """Keeps registry order states in line with the broker order book."""

    def __init__(
        self,
        registry: OrderRegistry,
        fetch_orders: Callable[[], Iterable[Any]],
        config: Optional[ReconciliationConfig] = None,
        bus: Optional[EventBus] = None,
        scheduler: Optional[Scheduler] = None,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self.registry = registry
        self._fetch_orders = fetch_orders
        self.config = config or ReconciliationConfig()
        self._bus = bus
        self._scheduler = scheduler or Scheduler()
        self._metrics = metrics

        self._pass_lock = threading.Lock()
        self._running = False
        self._missing_counts: dict[str, int] = {}
        self._abandoned: set[str] = set()
        self._last_run: Optional[datetime] = None
        self._cycles = 0
        self._errors = 0
        self._corrections = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._running:
            log.warning("Order reconciliation already running")
            return
        self._running = True
        self._scheduler.every(
            TASK_NAME, self.config.order_interval_seconds, self.reconcile_once,
        )
        log.info(
            "Order reconciliation service started: "
            + format_fields(
                interval=self.config.order_interval_seconds,
                max_missing_cycles=self.config.max_missing_cycles,
            )
        )

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self._scheduler.cancel_task(TASK_NAME)
        log.info(f"Order reconciliation service stopped ({len(self.tracked_orders())} tracked)")

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    def tracked_orders(self) -> list[OrderStateRecord]:
        """Open registry orders with a broker id that have not been given up on."""
        return [
            r for r in self.registry.get_open_orders()
            if r.broker_order_id and r.order_id not in self._abandoned
        ]

    def _fetch_book(self) -> OrderBookSnapshot:
        return OrderBookSnapshot.parse(list(self._fetch_orders()))

    def reconcile_once(self) -> int:
        """One periodic cycle. Returns the number of corrections applied."""
        with self._pass_lock:
            tracked = self.tracked_orders()
            if not tracked:
                return 0
            log.debug(f"Reconciling pending orders: {len(tracked)}")
            try:
                book = self._fetch_book()
            except Exception as e:
                self._errors += 1
                log.error(f"Error during order reconciliation: {e}")
                self._emit(EventType.RECONCILIATION_ERROR, scope="orders", error=str(e))
                return 0
            return self._diff(tracked, book.by_id())

    def perform_full_reconciliation(self) -> dict[str, int]:
        """Adopt untracked open broker orders, then reconcile everything.

        Used at startup and after a broker outage. Fetch errors propagate.
        """
        log.info("Performing full order reconciliation")
        with self._pass_lock:
            book = self._fetch_book()
            adopted = 0
            for order in book.orders:
                if not order.status.is_open or self._is_known(order):
                    continue
                log.warning(
                    "Found untracked pending order: "
                    + format_fields(order_id=order.order_id, symbol=order.symbol,
                                    status=order.status.value)
                )
                record = self.registry.adopt_broker_order(order)
                adopted += 1
                self._emit(
                    EventType.UNTRACKED_ORDER_FOUND,
                    order_id=record.order_id,
                    symbol=order.symbol,
                    status=order.status.value,
                )

            corrections = self._diff(self.tracked_orders(), book.by_id())

        summary = {
            "broker_orders": len(book.orders),
            "adopted": adopted,
            "corrections": corrections,
            "tracked": len(self.tracked_orders()),
        }
        log.info("Full order reconciliation completed: " + format_fields(**summary))
        return summary

    def _is_known(self, order: Order) -> bool:
        return (
            self.registry.get_by_broker_id(order.order_id) is not None
            or self.registry.get_order(order.order_id) is not None
        )

    def _diff(self, tracked: list[OrderStateRecord], broker_orders: dict[str, Order]) -> int:
        corrections = 0
        tracked_ids = set()

        for record in tracked:
            tracked_ids.add(record.order_id)
            broker_order = broker_orders.get(record.broker_order_id or "")

            if broker_order is None:
                self._on_missing(record)
                continue

            self._missing_counts.pop(record.order_id, None)
            status_differs = state_for_status(broker_order.status) != record.state
            fill_differs = broker_order.filled_quantity != record.order.filled_quantity
            if not (status_differs or fill_differs):
                continue

            changed = self.registry.apply_broker_status(
                record.order_id,
                broker_order.status,
                broker_order.filled_quantity,
                broker_order.average_price or None,
            )
            if not changed:
                continue

            corrections += 1
            self._corrections += 1
            log.info(
                "Order status changed: "
                + format_fields(
                    order_id=record.order_id,
                    old=record.state.value,
                    new=broker_order.status.value,
                    filled=f"{broker_order.filled_quantity}/{broker_order.quantity}",
                )
            )
            self._emit(
                EventType.ORDER_UPDATE,
                order_id=record.order_id,
                broker_order_id=record.broker_order_id,
                symbol=broker_order.symbol,
                old_state=record.state.value,
                new_status=broker_order.status.value,
                filled_quantity=broker_order.filled_quantity,
            )
            if self._metrics is not None:
                self._metrics.inc_counter("order_reconciliation_corrections_total")

        # Forget counters of orders that left the tracked set some other way.
        for order_id in list(self._missing_counts):
            if order_id not in tracked_ids:
                del self._missing_counts[order_id]

        self._cycles += 1
        self._last_run = datetime.now()
        return corrections

    def _on_missing(self, record: OrderStateRecord) -> None:
        count = self._missing_counts.get(record.order_id, 0) + 1
        self._missing_counts[record.order_id] = count
        log.warning(
            "Order not found in broker order book: "
            + format_fields(order_id=record.order_id, check_count=count)
        )
        if count < self.config.max_missing_cycles:
            return

        log.error(
            "Order reconciliation max attempts reached: "
            + format_fields(order_id=record.order_id, symbol=record.order.symbol,
                            check_count=count)
        )
        self._missing_counts.pop(record.order_id, None)
        self._abandoned.add(record.order_id)
        self._emit(
            EventType.ORDER_RECONCILIATION_FAILED,
            order_id=record.order_id,
            broker_order_id=record.broker_order_id,
            symbol=record.order.symbol,
            check_count=count,
        )

    def _emit(self, event_type: EventType, **data: Any) -> None:
        if self._bus is not None:
            self._bus.publish(Event(type=event_type, source="order_reconciliation", data=data))

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_missing_count(self, order_id: str) -> int:
        return self._missing_counts.get(order_id, 0)

    def is_abandoned(self, order_id: str) -> bool:
        return order_id in self._abandoned

    def get_status(self) -> dict[str, Any]:
        return {
            "is_running": self._running,
            "tracked_orders": len(self.tracked_orders()),
            "missing": dict(self._missing_counts),
            "abandoned": sorted(self._abandoned),
            "last_run": self._last_run.isoformat() if self._last_run else None,
            "cycles": self._cycles,
            "corrections": self._corrections,
            "errors": self._errors,
        }
