import pytest

from core.events import EventBus, EventType, OrderEvent


def test_subscribe_emit_and_cancel() -> None:
    bus = EventBus()
    seen = []
    sub = bus.subscribe(EventType.ORDER_FILLED, seen.append)
    bus.subscribe(EventType.ORDER_FILLED, seen.append)

    assert bus.handler_count(EventType.ORDER_FILLED) == 1
    event = bus.emit(EventType.ORDER_FILLED, source="oms", order_id="A1")
    assert seen == [event]
    assert event.data == {"order_id": "A1"}

    sub.cancel()
    sub.cancel()
    assert not sub.active
    bus.emit(EventType.ORDER_FILLED)
    assert len(seen) == 1


def test_subscription_as_context_manager() -> None:
    bus = EventBus()
    seen = []
    with bus.subscribe(EventType.ERROR, seen.append):
        bus.emit(EventType.ERROR, error="x")
    bus.emit(EventType.ERROR, error="y")
    assert len(seen) == 1


def test_handler_cap() -> None:
    bus = EventBus(max_handlers_per_type=2)
    bus.subscribe(EventType.ORDER_FILLED, lambda e: None)
    bus.subscribe(EventType.ORDER_FILLED, lambda e: None)
    with pytest.raises(ValueError):
        bus.subscribe(EventType.ORDER_FILLED, lambda e: None)


def test_handler_failure_becomes_error_event() -> None:
    bus = EventBus()
    errors = []
    delivered = []

    def broken(event) -> None:
        raise RuntimeError("handler blew up")

    def failing_error_handler(event) -> None:
        errors.append(event)
        raise RuntimeError("error handler blew up too")

    bus.subscribe(EventType.ORDER_STATE_CHANGED, broken)
    bus.subscribe(EventType.ORDER_STATE_CHANGED, delivered.append)
    bus.subscribe(EventType.ERROR, failing_error_handler)

    bus.publish(OrderEvent(order_id="A1", from_state="CREATED", to_state="PENDING"))

    assert len(delivered) == 1
    assert len(errors) == 1
    assert errors[0].data["error"] == "handler blew up"
    assert errors[0].data["original_event_type"] == "ORDER_STATE_CHANGED"


def test_async_delivery_and_drain_on_stop() -> None:
    bus = EventBus()
    seen = []

    def handler(event) -> None:
        seen.append(event.data["n"])

    bus.subscribe(EventType.ORDER_FILLED, handler)
    bus.start()
    bus.start()
    assert bus.is_running
    for n in range(50):
        bus.emit(EventType.ORDER_FILLED, n=n)
    bus.stop()

    assert not bus.is_running
    assert seen == list(range(50))


def test_history() -> None:
    bus = EventBus(max_history=3)
    for n in range(5):
        bus.emit(EventType.ORDER_FILLED, n=n)
    bus.emit(EventType.ERROR)

    assert [e.data.get("n") for e in bus.get_history()] == [3, 4, None]
    assert len(bus.get_history(EventType.ORDER_FILLED, limit=1)) == 1
    bus.clear_history()
    assert bus.get_history() == []
