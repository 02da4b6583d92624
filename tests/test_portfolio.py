from core.events import EventType, OrderEvent
from core.types import OrderSide, PositionSide
from trading.portfolio import PositionBook


def _fill_event(order_id: str, filled: int, price: float, side: str = "BUY",
                event_type=EventType.ORDER_FILLED) -> OrderEvent:
    return OrderEvent(
        type=event_type,
        source="oms",
        order_id=order_id,
        symbol="HDFCBANK",
        data={"side": side, "filled_quantity": filled, "average_price": price},
    )


def test_fills_average_into_position() -> None:
    book = PositionBook()
    book.apply_fill("HDFCBANK", OrderSide.BUY, 10, 100.0)
    pos = book.apply_fill("HDFCBANK", OrderSide.BUY, 10, 110.0)

    assert pos.quantity == 20
    assert pos.entry_price == 105.0
    assert pos.side == PositionSide.LONG


def test_opposite_fill_reduces_closes_and_flips() -> None:
    book = PositionBook()
    book.apply_fill("HDFCBANK", OrderSide.BUY, 10, 100.0)

    reduced = book.apply_fill("HDFCBANK", OrderSide.SELL, 4, 120.0)
    assert reduced.quantity == 6
    assert reduced.entry_price == 100.0

    assert book.apply_fill("HDFCBANK", OrderSide.SELL, 6, 120.0) is None
    assert "HDFCBANK" not in book

    book.apply_fill("HDFCBANK", OrderSide.BUY, 5, 100.0)
    flipped = book.apply_fill("HDFCBANK", OrderSide.SELL, 8, 90.0)
    assert flipped.side == PositionSide.SHORT
    assert flipped.quantity == 3
    assert flipped.entry_price == 90.0


def test_fill_events_apply_cumulative_delta_once() -> None:
    book = PositionBook()
    book.on_fill_event(_fill_event("ORD_1", 4, 100.0, event_type=EventType.ORDER_PARTIALLY_FILLED))
    book.on_fill_event(_fill_event("ORD_1", 4, 100.0, event_type=EventType.ORDER_PARTIALLY_FILLED))
    book.on_fill_event(_fill_event("ORD_1", 10, 100.0))

    assert book.get("HDFCBANK").quantity == 10


def test_unrelated_or_incomplete_events_are_ignored() -> None:
    book = PositionBook()
    book.on_fill_event(_fill_event("ORD_1", 5, 100.0, event_type=EventType.ORDER_CANCELLED))
    book.on_fill_event(OrderEvent(type=EventType.ORDER_FILLED, source="oms", data={}))
    assert book.count() == 0


def test_reads_are_copies() -> None:
    book = PositionBook()
    book.apply_fill("HDFCBANK", OrderSide.BUY, 10, 100.0)
    copy = book.get("HDFCBANK")
    copy.quantity = 999

    assert book.get("HDFCBANK").quantity == 10
    assert book.update_quantity("HDFCBANK", 12)
    assert book.update_entry_price("HDFCBANK", 101.0)
    assert book.as_dict()["HDFCBANK"].quantity == 12
    assert not book.update_quantity("MISSING", 1)


def test_update_quantity_can_flip_side() -> None:
    book = PositionBook()
    book.apply_fill("HDFCBANK", OrderSide.BUY, 10, 100.0)

    assert book.update_quantity("HDFCBANK", 4, side=PositionSide.SHORT)
    pos = book.get("HDFCBANK")
    assert pos.side == PositionSide.SHORT
    assert pos.quantity == 4


def test_filled_orders_are_forgotten_but_not_reapplied() -> None:
    book = PositionBook()
    book.on_fill_event(_fill_event("ORD_1", 4, 100.0, event_type=EventType.ORDER_PARTIALLY_FILLED))
    assert book.tracked_orders() == 1

    book.on_fill_event(_fill_event("ORD_1", 10, 100.0))
    book.on_fill_event(_fill_event("ORD_1", 10, 100.0))

    assert book.tracked_orders() == 0
    assert book.get("HDFCBANK").quantity == 10


def test_cancelled_partial_fill_is_forgotten() -> None:
    book = PositionBook()
    book.on_fill_event(_fill_event("ORD_2", 3, 100.0, event_type=EventType.ORDER_PARTIALLY_FILLED))

    book.on_order_closed(OrderEvent(
        type=EventType.ORDER_STATE_CHANGED, source="oms", order_id="ORD_2",
        from_state="PARTIALLY_FILLED", to_state="CANCELLED",
    ))

    assert book.tracked_orders() == 0
    assert book.get("HDFCBANK").quantity == 3


def test_open_order_state_changes_keep_fill_progress() -> None:
    book = PositionBook()
    book.on_fill_event(_fill_event("ORD_3", 3, 100.0, event_type=EventType.ORDER_PARTIALLY_FILLED))

    book.on_order_closed(OrderEvent(
        type=EventType.ORDER_STATE_CHANGED, source="oms", order_id="ORD_3",
        from_state="ACKNOWLEDGED", to_state="PARTIALLY_FILLED",
    ))

    assert book.tracked_orders() == 1
