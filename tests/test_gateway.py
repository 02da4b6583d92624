from types import SimpleNamespace

import pytest

from core.events import EventType
from core.exceptions import (
    BrokerConnectionError,
    CircuitOpenError,
    DuplicateOrderError,
    KillSwitchActiveError,
    OrderValidationError,
)
from core.types import Order, OrderSide, OrderState, OrderStatus, OrderType
from trading.circuit_breaker import ORDER_PLACEMENT, CircuitBreakerRegistry
from trading.gateway import ExecutionGateway
from trading.idempotency import IdempotencyGuard
from trading.kill_switch import KillSwitch
from trading.oms import OrderRegistry
from trading.position_lock import PositionLockManager
from trading.retry import RetryExecutor, RetryPolicy


@pytest.fixture
def env(bus, clock, timers, broker):
    kill_switch = KillSwitch(bus)
    registry = OrderRegistry(bus=bus, scheduler=timers)
    idempotency = IdempotencyGuard(bus=bus, clock=clock)
    breakers = CircuitBreakerRegistry(bus)
    locks = PositionLockManager(clock=clock)
    gateway = ExecutionGateway(
        broker, registry, idempotency, breakers, kill_switch,
        retry=RetryExecutor(RetryPolicy(max_attempts=3, initial_delay=0.0)),
        locks=locks,
    )
    broker.set_price("RELIANCE", 2500.0)
    return SimpleNamespace(
        broker=broker, gateway=gateway, registry=registry, idempotency=idempotency,
        breakers=breakers, kill_switch=kill_switch, locks=locks, clock=clock,
    )


def _order(qty: int = 10, order_type=OrderType.MARKET, price=None, side=OrderSide.BUY) -> Order:
    return Order(symbol="RELIANCE", side=side, order_type=order_type, quantity=qty, price=price)


def test_market_order_fills(env, recorder) -> None:
    record = env.gateway.place_order(_order())

    assert record.state == OrderState.FILLED
    assert record.broker_order_id.startswith("PAPER_")
    assert record.order.filled_quantity == 10
    assert record.order.average_price == 2500.0
    assert env.idempotency.get_stats()["completed"] == 1
    assert not env.locks.is_locked("RELIANCE")
    assert recorder.of(EventType.ORDER_FILLED)[0].order_id == record.order_id


def test_resting_limit_order_is_acknowledged(env) -> None:
    record = env.gateway.place_order(_order(order_type=OrderType.LIMIT, price=2400.0))
    assert record.state == OrderState.ACKNOWLEDGED


def test_duplicate_intent_is_refused(env) -> None:
    env.gateway.place_order(_order())
    with pytest.raises(DuplicateOrderError):
        env.gateway.place_order(_order())
    assert env.broker.calls["place_order"] == 1

    env.clock.advance(6)
    assert env.gateway.place_order(_order()).state == OrderState.FILLED


def test_kill_switch_blocks_placement(env) -> None:
    env.kill_switch.activate("manual")
    with pytest.raises(KillSwitchActiveError):
        env.gateway.place_order(_order())
    assert "place_order" not in env.broker.calls
    assert env.registry.get_all_orders() == []


def test_busy_symbol_is_refused(env) -> None:
    env.locks.acquire("RELIANCE")
    with pytest.raises(DuplicateOrderError) as exc_info:
        env.gateway.place_order(_order())
    assert exc_info.value.code == "SYMBOL_LOCKED"


def test_business_rejection_returns_rejected_record(env) -> None:
    record = env.gateway.place_order(_order(qty=10_000))

    assert record.state == OrderState.REJECTED
    assert "Insufficient funds" in record.error_message
    assert env.broker.calls["place_order"] == 1
    assert env.breakers.get(ORDER_PLACEMENT).get_stats().failed_requests == 0
    assert env.idempotency.get_stats()["failed"] == 1


def test_transient_failure_is_retried(env) -> None:
    env.broker.fail_next(2)
    record = env.gateway.place_order(_order())

    assert record.state == OrderState.FILLED
    assert env.broker.calls["place_order"] == 3
    assert env.breakers.get(ORDER_PLACEMENT).get_stats().failed_requests == 0


def test_exhausted_transport_failure_marks_order_failed(env) -> None:
    env.broker.set_down()
    with pytest.raises(BrokerConnectionError):
        env.gateway.place_order(_order())

    (record,) = env.registry.get_all_orders()
    assert record.state == OrderState.FAILED
    assert env.broker.calls["place_order"] == 3
    assert env.breakers.get(ORDER_PLACEMENT).get_stats().failed_requests == 1
    assert env.idempotency.get_stats()["failed"] == 1


def test_open_breaker_fails_fast(env) -> None:
    env.breakers.get_or_create(ORDER_PLACEMENT).force_open()
    with pytest.raises(CircuitOpenError):
        env.gateway.place_order(_order())
    assert "place_order" not in env.broker.calls


def test_cancel_resting_order(env) -> None:
    record = env.gateway.place_order(_order(order_type=OrderType.LIMIT, price=2400.0))

    assert env.gateway.cancel_order(record.order_id)
    assert env.registry.get_order(record.order_id).state == OrderState.CANCELLED
    (broker_order,) = env.broker.get_orders()
    assert broker_order.status == OrderStatus.CANCELLED

    assert not env.gateway.cancel_order(record.order_id)
    with pytest.raises(OrderValidationError):
        env.gateway.cancel_order("missing")


def test_reads_and_connection(env) -> None:
    env.gateway.place_order(_order())

    positions = env.gateway.fetch_positions()
    assert [(p.symbol, p.quantity) for p in positions] == [("RELIANCE", 10)]
    assert env.gateway.fetch_balance() == 1_000_000.0 - 25_000.0
    assert env.gateway.fetch_ltp("RELIANCE") == 2500.0
    assert env.gateway.fetch_ltp("UNKNOWN") is None
    assert len(env.gateway.fetch_orders()) == 1

    env.gateway.disconnect()
    assert not env.broker.is_connected
    assert env.gateway.connect()
    assert env.broker.is_connected

    env.broker.set_down()
    with pytest.raises(BrokerConnectionError):
        env.gateway.connect()
    assert env.gateway.get_status()["can_trade"]
