import pytest

from core.events import EventType
from core.exceptions import BrokerConnectionError, CircuitOpenError, InsufficientFundsError
from trading.circuit_breaker import (
    BROKER_CONNECTION,
    DATA_FETCH,
    ORDER_PLACEMENT,
    CircuitBreaker,
    CircuitBreakerOptions,
    CircuitBreakerRegistry,
    CircuitState,
)
from utils.metrics import MetricsRegistry


def _boom():
    raise BrokerConnectionError("Connection reset by peer", code="ECONNRESET")


def _breaker(bus, clock, **overrides) -> CircuitBreaker:
    values = dict(
        failure_threshold=3, success_threshold=2, open_timeout=30.0,
        rolling_window=60.0, min_volume=3,
    )
    values.update(overrides)
    return CircuitBreaker("test", CircuitBreakerOptions(**values), bus=bus, clock=clock)


def _fail(breaker: CircuitBreaker, times: int) -> None:
    for _ in range(times):
        with pytest.raises(BrokerConnectionError):
            breaker.execute(_boom)


def test_opens_after_threshold_and_fails_fast(bus, recorder, clock) -> None:
    breaker = _breaker(bus, clock)
    _fail(breaker, 3)

    assert breaker.state == CircuitState.OPEN
    assert len(recorder.of(EventType.CIRCUIT_BREAKER_OPEN)) == 1

    calls = []
    with pytest.raises(CircuitOpenError):
        breaker.execute(lambda: calls.append(1))
    assert calls == []
    assert breaker.get_stats().rejected_calls == 1


def test_min_volume_keeps_breaker_closed(bus, clock) -> None:
    breaker = _breaker(bus, clock, failure_threshold=2, min_volume=5)
    _fail(breaker, 4)
    assert breaker.state == CircuitState.CLOSED

    _fail(breaker, 1)
    assert breaker.state == CircuitState.OPEN


def test_half_open_after_timeout_then_closes(bus, recorder, clock) -> None:
    breaker = _breaker(bus, clock)
    _fail(breaker, 3)

    clock.advance(30.0)
    assert breaker.execute(lambda: "ok") == "ok"
    assert breaker.state == CircuitState.HALF_OPEN
    assert breaker.execute(lambda: "ok") == "ok"
    assert breaker.state == CircuitState.CLOSED

    types = recorder.types()
    assert types.index(EventType.CIRCUIT_BREAKER_HALF_OPEN) < types.index(
        EventType.CIRCUIT_BREAKER_CLOSED
    )


def test_half_open_failure_reopens(bus, clock) -> None:
    breaker = _breaker(bus, clock)
    _fail(breaker, 3)
    clock.advance(31.0)

    _fail(breaker, 1)
    assert breaker.state == CircuitState.OPEN
    assert breaker.get_stats().next_attempt_in == pytest.approx(30.0)


def test_partial_half_open_successes_do_not_survive_a_failure(bus, recorder, clock) -> None:
    breaker = _breaker(bus, clock, success_threshold=3)
    _fail(breaker, 3)
    clock.advance(30.0)

    assert breaker.execute(lambda: "ok") == "ok"
    assert breaker.execute(lambda: "ok") == "ok"
    assert breaker.state == CircuitState.HALF_OPEN
    assert breaker.get_stats().success_count == 2

    clock.advance(5.0)
    _fail(breaker, 1)

    stats = breaker.get_stats()
    assert stats.state == CircuitState.OPEN
    assert stats.success_count == 0
    assert stats.next_attempt_in == pytest.approx(30.0)
    assert len(recorder.of(EventType.CIRCUIT_BREAKER_OPEN)) == 2

    clock.advance(29.0)
    with pytest.raises(CircuitOpenError):
        breaker.execute(lambda: "ok")

    # The next half-open round needs the full three successes again.
    clock.advance(1.0)
    breaker.execute(lambda: "ok")
    breaker.execute(lambda: "ok")
    assert breaker.state == CircuitState.HALF_OPEN
    breaker.execute(lambda: "ok")
    assert breaker.state == CircuitState.CLOSED


def test_business_errors_do_not_count(bus, clock) -> None:
    breaker = _breaker(bus, clock, failure_threshold=1, min_volume=1)

    def reject():
        raise InsufficientFundsError("Insufficient funds")

    for _ in range(5):
        with pytest.raises(InsufficientFundsError):
            breaker.execute(reject)

    assert breaker.state == CircuitState.CLOSED
    assert breaker.get_stats().failed_requests == 0


def test_successes_decay_failure_count(bus, clock) -> None:
    breaker = _breaker(bus, clock)
    _fail(breaker, 2)
    breaker.execute(lambda: None)
    _fail(breaker, 1)

    assert breaker.state == CircuitState.CLOSED
    assert breaker.get_stats().failure_count == 2


def test_old_failures_fall_out_of_window(bus, clock) -> None:
    breaker = _breaker(bus, clock, rolling_window=10.0)
    _fail(breaker, 2)
    clock.advance(11.0)
    _fail(breaker, 1)

    # failure_count reached 3 but only one sample is inside the window.
    assert breaker.state == CircuitState.CLOSED


def test_force_open_and_reset(bus, recorder, clock) -> None:
    breaker = _breaker(bus, clock)
    breaker.force_open("maintenance")
    assert breaker.is_open

    breaker.reset()
    assert breaker.state == CircuitState.CLOSED
    stats = breaker.get_stats().to_dict()
    assert stats["state"] == "CLOSED"
    assert stats["total_requests"] == 0
    assert recorder.of(EventType.CIRCUIT_BREAKER_STATE_CHANGED)[0].breaker == "test"


def test_registry_uses_profiles_and_returns_same_instance(bus) -> None:
    metrics = MetricsRegistry()
    registry = CircuitBreakerRegistry(bus, metrics=metrics)

    placement = registry.get_or_create(ORDER_PLACEMENT)
    assert registry.get_or_create(ORDER_PLACEMENT) is placement
    assert placement.options.failure_threshold == 5
    assert registry.get_or_create(DATA_FETCH).options.failure_threshold == 10
    assert registry.get_or_create(BROKER_CONNECTION).options.success_threshold == 1

    assert registry.names() == sorted([ORDER_PLACEMENT, DATA_FETCH, BROKER_CONNECTION])
    assert set(registry.get_all_stats()) == set(registry.names())
    assert metrics.get_gauge("circuit_breaker_state", labels={"breaker": DATA_FETCH}) == 0


def test_breakers_are_independent(bus) -> None:
    registry = CircuitBreakerRegistry(bus)
    fetch = registry.get_or_create(DATA_FETCH)
    fetch.force_open()

    assert registry.get_or_create(ORDER_PLACEMENT).execute(lambda: 7) == 7
    registry.reset_all()
    assert fetch.state == CircuitState.CLOSED
