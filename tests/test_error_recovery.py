import threading

import pytest

from config.settings import RecoveryConfig
from core.events import BreakerEvent, EventType
from core.exceptions import (
    BrokerAuthenticationError,
    BrokerConnectionError,
    InsufficientFundsError,
    ReconciliationError,
)
from trading.circuit_breaker import BROKER_CONNECTION, DATA_FETCH, CircuitBreakerRegistry
from trading.error_recovery import (
    ErrorRecoveryService,
    ErrorSeverity,
    RecoveryAction,
    categorize_error,
)
from trading.kill_switch import KillSwitch


class _Connection:
    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.connects = 0
        self.disconnects = 0

    def connect(self) -> bool:
        self.connects += 1
        return self.connects > self.failures

    def disconnect(self) -> None:
        self.disconnects += 1


class _Reconciler:
    def __init__(self, error=None) -> None:
        self.error = error
        self.syncs = 0

    def sync_from_broker(self) -> int:
        self.syncs += 1
        if self.error is not None:
            raise self.error
        return 2


def _no_wait(seconds: float) -> bool:
    return False


@pytest.mark.parametrize(
    ("error", "action", "severity"),
    [
        (BrokerConnectionError("reset", code="ECONNRESET"), RecoveryAction.RECONNECT, ErrorSeverity.HIGH),
        (ConnectionError("socket closed"), RecoveryAction.RECONNECT, ErrorSeverity.HIGH),
        (BrokerAuthenticationError("bad token"), RecoveryAction.RECONNECT, ErrorSeverity.CRITICAL),
        (RuntimeError("HTTP 429 rate limit"), RecoveryAction.RETRY, ErrorSeverity.MEDIUM),
        (InsufficientFundsError("insufficient funds"), RecoveryAction.ALERT_ONLY, ErrorSeverity.MEDIUM),
        (RuntimeError("Position mismatch for TCS"), RecoveryAction.RESYNC, ErrorSeverity.HIGH),
        (ReconciliationError("order book diverged"), RecoveryAction.RESYNC, ErrorSeverity.MEDIUM),
        (RuntimeError("stale data from feed"), RecoveryAction.RESYNC, ErrorSeverity.MEDIUM),
        (RuntimeError("fatal: ledger corrupted"), RecoveryAction.ACTIVATE_KILL_SWITCH, ErrorSeverity.CRITICAL),
        (ValueError("something odd"), RecoveryAction.RETRY, ErrorSeverity.LOW),
    ],
)
def test_categorize_error(error, action, severity) -> None:
    ctx = categorize_error(error, "engine", "tick")
    assert ctx.action == action
    assert ctx.severity == severity
    assert ctx.recovery_key == "engine:tick"


def test_categorize_keeps_status_as_code() -> None:
    error = BrokerConnectionError("unavailable", status_code=503)
    assert categorize_error(error).error_code == "503"


def test_network_error_reconnects(bus, recorder) -> None:
    connection = _Connection(failures=1)
    service = ErrorRecoveryService(connection=connection, bus=bus, sleep=_no_wait)

    outcome = service.handle_error(BrokerConnectionError("reset", code="ECONNRESET"), "gateway", "fetch")

    assert outcome.success
    assert outcome.action == RecoveryAction.RECONNECT
    assert outcome.attempts == 2
    assert connection.disconnects == 2
    assert len(recorder.of(EventType.RECOVERY_ATTEMPT)) == 1
    assert recorder.of(EventType.ERROR_RECORDED)[0].data["severity"] == "HIGH"
    completed = recorder.of(EventType.RECOVERY_COMPLETED)[0]
    assert completed.data["result"]["success"] is True


def test_reconnect_gives_up_after_configured_attempts() -> None:
    connection = _Connection(failures=99)
    service = ErrorRecoveryService(
        connection=connection, config=RecoveryConfig(reconnect_max_attempts=4), sleep=_no_wait,
    )
    outcome = service.handle_error(ConnectionError("down"))

    assert not outcome.success
    assert outcome.attempts == 4
    assert "Reconnection failed" in outcome.message


def test_resync_and_kill_switch_actions(bus) -> None:
    kill_switch = KillSwitch(bus)
    reconciler = _Reconciler()
    service = ErrorRecoveryService(
        kill_switch=kill_switch, position_reconciler=reconciler, bus=bus, sleep=_no_wait,
    )

    resync = service.handle_error(RuntimeError("position mismatch"), "recon", "positions")
    assert resync.success
    assert reconciler.syncs == 1

    critical = service.handle_error(RuntimeError("critical invariant broken"), "engine", "loop")
    assert critical.success
    assert kill_switch.is_active
    assert kill_switch.get_status()["activated_by"] == "error_recovery"


def test_failed_resync_is_reported() -> None:
    service = ErrorRecoveryService(position_reconciler=_Reconciler(BrokerConnectionError("down")))
    outcome = service.handle_error(ReconciliationError("drift"))
    assert not outcome.success
    assert "Resync failed" in outcome.message


def test_missing_collaborators_fail_cleanly() -> None:
    service = ErrorRecoveryService()
    assert not service.handle_error(ConnectionError("x")).success
    assert not service.handle_error(RuntimeError("fatal")).success
    assert service.handle_error(InsufficientFundsError("insufficient")).success


def test_concurrent_recovery_for_same_key_is_refused() -> None:
    entered = threading.Event()
    release = threading.Event()

    class _Slow(_Connection):
        def connect(self) -> bool:
            entered.set()
            release.wait(5)
            return True

    service = ErrorRecoveryService(connection=_Slow(), sleep=_no_wait)
    results = []
    worker = threading.Thread(
        target=lambda: results.append(service.handle_error(ConnectionError("a"), "gw", "op")),
    )
    worker.start()
    assert entered.wait(5)

    assert service.is_recovering("gw:op")
    second = service.handle_error(ConnectionError("b"), "gw", "op")
    assert not second.success
    assert second.message == "Recovery already in progress"

    release.set()
    worker.join(5)
    assert results[0].success
    assert not service.is_recovering("gw:op")


def test_breaker_open_triggers_connection_recovery(bus) -> None:
    breakers = CircuitBreakerRegistry(bus)
    breaker = breakers.get_or_create(BROKER_CONNECTION)
    breaker.force_open("test")
    reconciler = _Reconciler()
    service = ErrorRecoveryService(
        connection=_Connection(), position_reconciler=reconciler, breakers=breakers,
        bus=bus, sleep=_no_wait,
    )

    service.on_breaker_open(BreakerEvent(type=EventType.CIRCUIT_BREAKER_OPEN, breaker=DATA_FETCH))
    assert not service.is_recovering(f"{BROKER_CONNECTION}:reconnect")

    service.on_breaker_open(BreakerEvent(type=EventType.CIRCUIT_BREAKER_OPEN, breaker=BROKER_CONNECTION))
    for thread in list(service._threads):
        thread.join(5)

    assert not breaker.is_open
    assert reconciler.syncs == 1


def test_failed_connection_recovery_emits_event(bus, recorder) -> None:
    service = ErrorRecoveryService(
        connection=_Connection(failures=99), config=RecoveryConfig(reconnect_max_attempts=2),
        bus=bus, sleep=_no_wait,
    )
    outcome = service.recover_broker_connection()

    assert not outcome.success
    assert recorder.of(EventType.RECOVERY_FAILED)[0].data["scope"] == BROKER_CONNECTION


def test_error_stats() -> None:
    breakers = CircuitBreakerRegistry()
    service = ErrorRecoveryService(breakers=breakers)
    service.handle_error(ValueError("odd"), "a", "b")
    service.handle_error(ValueError("odd"), "a", "b")
    service.handle_error(InsufficientFundsError("insufficient"), "gw", "place")

    stats = service.get_error_stats()
    assert stats["total_errors"] == 3
    assert stats["last_15_minutes"] == 3
    assert stats["by_severity"]["low"] == 2
    assert stats["by_key"] == {"a:b": 2, "gw:place": 1}
    assert "circuit_breakers" in stats
    assert len(service.get_recent_errors(limit=1)) == 1


def test_stop_cancels_backoff() -> None:
    service = ErrorRecoveryService(
        connection=_Connection(failures=99),
        config=RecoveryConfig(reconnect_max_attempts=5, reconnect_initial_delay_seconds=30),
    )
    service.start()
    assert service.start_connection_recovery()
    service.stop(timeout=5)
    assert not service.is_recovering(f"{BROKER_CONNECTION}:reconnect")
