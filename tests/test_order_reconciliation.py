import pytest

from config.settings import OrderConfig, ReconciliationConfig
from core.events import EventType
from core.exceptions import BrokerConnectionError
from core.types import Order, OrderSide, OrderState, OrderStatus
from trading.oms import OrderRegistry
from trading.order_reconciliation import OrderReconciler


class _Book:
    """Broker order book the test edits between cycles."""

    def __init__(self) -> None:
        self.orders = []
        self.error = None
        self.fetches = 0

    def __call__(self):
        self.fetches += 1
        if self.error is not None:
            raise self.error
        return list(self.orders)


def _submitted(registry: OrderRegistry, order_id: str, broker_id: str, qty: int = 10) -> None:
    registry.create_order(Order(order_id=order_id, symbol="INFY", quantity=qty, price=1500.0))
    registry.mark_submitted(order_id)
    registry.mark_acknowledged(order_id, broker_id)


def _broker_order(broker_id: str, status: OrderStatus, filled: int = 0, qty: int = 10) -> Order:
    return Order(
        order_id=broker_id, symbol="INFY", side=OrderSide.BUY, quantity=qty, price=1500.0,
        status=status, filled_quantity=filled, average_price=1500.0 if filled else 0.0,
    )


@pytest.fixture
def registry(bus, timers):
    return OrderRegistry(OrderConfig(), bus=bus, scheduler=timers)


def test_broker_fill_is_applied(bus, recorder, registry) -> None:
    book = _Book()
    reconciler = OrderReconciler(registry, book, bus=bus)
    _submitted(registry, "ORD_1", "PAPER_1")

    book.orders = [_broker_order("PAPER_1", OrderStatus.PARTIALLY_FILLED, filled=3)]
    assert reconciler.reconcile_once() == 1
    assert registry.get_order("ORD_1").state == OrderState.PARTIALLY_FILLED

    book.orders = [_broker_order("PAPER_1", OrderStatus.FILLED, filled=10)]
    assert reconciler.reconcile_once() == 1
    assert registry.get_order("ORD_1").state == OrderState.FILLED

    updates = recorder.of(EventType.ORDER_UPDATE)
    assert [e.data["new_status"] for e in updates] == ["PARTIALLY_FILLED", "FILLED"]
    assert reconciler.get_status()["corrections"] == 2


def test_nothing_tracked_skips_fetch(registry) -> None:
    book = _Book()
    reconciler = OrderReconciler(registry, book)
    assert reconciler.reconcile_once() == 0
    assert book.fetches == 0


def test_unchanged_order_is_not_corrected(registry) -> None:
    book = _Book()
    reconciler = OrderReconciler(registry, book)
    _submitted(registry, "ORD_1", "PAPER_1")
    book.orders = [_broker_order("PAPER_1", OrderStatus.SUBMITTED)]

    assert reconciler.reconcile_once() == 0
    assert registry.get_order("ORD_1").state == OrderState.ACKNOWLEDGED


def test_missing_order_is_abandoned_after_limit(bus, recorder, registry) -> None:
    book = _Book()
    reconciler = OrderReconciler(
        registry, book, ReconciliationConfig(max_missing_cycles=3), bus=bus,
    )
    _submitted(registry, "ORD_1", "PAPER_1")

    reconciler.reconcile_once()
    reconciler.reconcile_once()
    assert reconciler.get_missing_count("ORD_1") == 2
    assert not reconciler.is_abandoned("ORD_1")

    reconciler.reconcile_once()
    assert reconciler.is_abandoned("ORD_1")
    assert reconciler.get_missing_count("ORD_1") == 0
    failed = recorder.of(EventType.ORDER_RECONCILIATION_FAILED)
    assert failed[0].data["check_count"] == 3

    # Abandoned orders are no longer tracked, so the book is not fetched.
    fetches = book.fetches
    reconciler.reconcile_once()
    assert book.fetches == fetches


def test_reappearing_order_resets_missing_count(registry) -> None:
    book = _Book()
    reconciler = OrderReconciler(registry, book)
    _submitted(registry, "ORD_1", "PAPER_1")

    reconciler.reconcile_once()
    assert reconciler.get_missing_count("ORD_1") == 1
    book.orders = [_broker_order("PAPER_1", OrderStatus.SUBMITTED)]
    reconciler.reconcile_once()
    assert reconciler.get_missing_count("ORD_1") == 0


def test_fetch_error_is_contained(bus, recorder, registry) -> None:
    book = _Book()
    book.error = BrokerConnectionError("timeout", code="ETIMEDOUT")
    reconciler = OrderReconciler(registry, book, bus=bus)
    _submitted(registry, "ORD_1", "PAPER_1")

    assert reconciler.reconcile_once() == 0
    assert recorder.of(EventType.RECONCILIATION_ERROR)[0].data["scope"] == "orders"
    assert reconciler.get_status()["errors"] == 1
    assert reconciler.get_missing_count("ORD_1") == 0


def test_full_reconciliation_adopts_untracked_orders(bus, recorder, registry) -> None:
    book = _Book()
    reconciler = OrderReconciler(registry, book, bus=bus)
    _submitted(registry, "ORD_1", "PAPER_1")
    book.orders = [
        _broker_order("PAPER_1", OrderStatus.FILLED, filled=10),
        _broker_order("PAPER_2", OrderStatus.SUBMITTED),
        _broker_order("PAPER_3", OrderStatus.CANCELLED),
    ]

    summary = reconciler.perform_full_reconciliation()

    assert summary == {"broker_orders": 3, "adopted": 1, "corrections": 1, "tracked": 1}
    assert registry.get_by_broker_id("PAPER_2").state == OrderState.ACKNOWLEDGED
    assert registry.get_order("ORD_1").state == OrderState.FILLED
    assert registry.get_by_broker_id("PAPER_3") is None
    assert recorder.of(EventType.UNTRACKED_ORDER_FOUND)[0].data["order_id"] == "PAPER_2"


def test_full_reconciliation_propagates_fetch_errors(registry) -> None:
    book = _Book()
    book.error = BrokerConnectionError("reset", code="ECONNRESET")
    reconciler = OrderReconciler(registry, book)
    with pytest.raises(BrokerConnectionError):
        reconciler.perform_full_reconciliation()
