import pytest

from config.settings import Config
from core.exceptions import BrokerConnectionError
from core.types import Order, OrderSide, OrderState, PositionSide
from trading.broker_sim import PaperBroker
from trading.circuit_breaker import BROKER_CONNECTION, CircuitState
from trading.runtime import ResilienceRuntime


def _config() -> Config:
    return Config.from_dict({
        "retry": {"initial_delay_seconds": 0.0, "jitter": 0.0},
        "health": {"probe_interval_seconds": 3600, "auto_recover": False},
        "reconciliation": {
            "order_interval_seconds": 3600,
            "position_interval_seconds": 3600,
        },
    })


@pytest.fixture
def runtime():
    broker = PaperBroker(1_000_000)
    broker.set_price("INFY", 1500.0)
    rt = ResilienceRuntime(broker, config=_config())
    yield rt
    rt.close()


def test_start_resyncs_and_is_idempotent(runtime) -> None:
    runtime.broker.set_position("TCS", 5, 3500.0, side=PositionSide.SHORT)

    runtime.start()
    runtime.start()

    assert runtime.is_running
    assert runtime.broker.calls["connect"] == 1
    assert runtime.book.get("TCS").quantity == 5

    runtime.stop()
    runtime.stop()
    assert not runtime.is_running


def test_fills_flow_into_the_position_book(runtime) -> None:
    runtime.start()
    record = runtime.gateway.place_order(
        Order(symbol="INFY", side=OrderSide.BUY, quantity=20)
    )

    assert record.state == OrderState.FILLED
    position = runtime.book.get("INFY")
    assert position.quantity == 20
    assert position.entry_price == 1500.0

    assert runtime.position_reconciler.reconcile() is not None
    assert runtime.book.get("INFY").quantity == 20


def test_failed_connect_leaves_runtime_stopped(runtime) -> None:
    runtime.broker.set_down()
    with pytest.raises(BrokerConnectionError):
        runtime.start()
    assert not runtime.is_running

    runtime.broker.set_down(False)
    runtime.start()
    assert runtime.is_running
    assert runtime.breakers.get(BROKER_CONNECTION) is not None


def test_status_report(runtime) -> None:
    runtime.start()
    status = runtime.get_status()

    assert status["running"] is True
    assert status["broker"] == "Paper"
    assert status["kill_switch"]["kill_switch_active"] is False
    for key in ("health", "breakers", "orders", "idempotency", "alerts", "metrics"):
        assert key in status


def test_breaker_open_triggers_reconnect(runtime) -> None:
    runtime.start(connect=False)
    breaker = runtime.breakers.get(BROKER_CONNECTION)

    breaker.force_open("test")
    for thread in list(runtime.recovery._threads):
        thread.join(timeout=5)

    assert runtime.broker.is_connected
    assert breaker.state == CircuitState.CLOSED
