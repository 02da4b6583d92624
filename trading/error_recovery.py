"""
Error recovery service.

Engine code hands unexpected failures to ``handle_error``; the service
categorises them, records them and runs one recovery action per
``component:operation`` key at a time:

    network              RECONNECT              HIGH
    auth (401)           RECONNECT              CRITICAL
    rate limit (429)     RETRY                  MEDIUM
    rejection            ALERT_ONLY             MEDIUM
    position mismatch    RESYNC                 HIGH
    sync / stale data    RESYNC                 MEDIUM
    critical / fatal     ACTIVATE_KILL_SWITCH   CRITICAL
    anything else        RETRY                  LOW

It also owns the reconnect path that runs when the ``broker_connection``
circuit breaker opens.
"""
from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

from config.settings import RecoveryConfig
from core.events import Event, EventBus, EventType
from core.exceptions import BrokerConnectionError, ReconciliationError
from trading.circuit_breaker import BROKER_CONNECTION, CircuitBreakerRegistry
from trading.kill_switch import KillSwitch
from trading.retry import RetryPolicy, execute_with_retry
from utils.cancellation import CancellationToken
from utils.logger import format_fields, get_logger
from utils.recoverable import (
    RETRYABLE_ERROR_CODES,
    ErrorClass,
    classify_error,
    extract_error_code,
    extract_status_code,
)

log = get_logger(__name__)


class RecoveryAction(Enum):
    RETRY = "RETRY"
    RECONNECT = "RECONNECT"
    RESYNC = "RESYNC"
    ACTIVATE_KILL_SWITCH = "ACTIVATE_KILL_SWITCH"
    ALERT_ONLY = "ALERT_ONLY"


class ErrorSeverity(Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


@dataclass
class ErrorContext:
    error_type: str
    error_message: str
    component: str
    operation: str
    severity: ErrorSeverity
    action: RecoveryAction
    error_code: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def recovery_key(self) -> str:
        return f"{self.component}:{self.operation}"

    def to_dict(self) -> dict[str, Any]:
        return {
            'error_type': self.error_type,
            'error_message': self.error_message,
            'error_code': self.error_code,
            'component': self.component,
            'operation': self.operation,
            'severity': self.severity.value,
            'action': self.action.value,
            'timestamp': self.timestamp.isoformat(),
            'metadata': dict(self.metadata),
        }


@dataclass
class RecoveryOutcome:
    success: bool
    action: RecoveryAction
    message: str
    attempts: int = 0
    duration: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            'success': self.success,
            'action': self.action.value,
            'message': self.message,
            'attempts': self.attempts,
            'duration': self.duration,
        }


def _mentions(text: str, *markers: str) -> bool:
    return any(m in text for m in markers)


def categorize_error(
    error: BaseException,
    component: str = "unknown",
    operation: str = "unknown",
    metadata: Optional[dict[str, Any]] = None,
) -> ErrorContext:
    """Map an exception to a severity and recovery action."""
    text = str(error).lower()
    error_class = classify_error(error)
    status = extract_status_code(error)
    code = extract_error_code(error)

    if error_class == ErrorClass.AUTHENTICATION or status == 401 or _mentions(text, "authentication"):
        severity, action = ErrorSeverity.CRITICAL, RecoveryAction.RECONNECT
    elif error_class == ErrorClass.NETWORK or code in RETRYABLE_ERROR_CODES:
        severity, action = ErrorSeverity.HIGH, RecoveryAction.RECONNECT
    elif error_class == ErrorClass.RATE_LIMITED or _mentions(text, "rate limit"):
        severity, action = ErrorSeverity.MEDIUM, RecoveryAction.RETRY
    elif error_class == ErrorClass.BUSINESS:
        severity, action = ErrorSeverity.MEDIUM, RecoveryAction.ALERT_ONLY
    elif "position" in text and "mismatch" in text:
        severity, action = ErrorSeverity.HIGH, RecoveryAction.RESYNC
    elif isinstance(error, ReconciliationError) or _mentions(text, "sync", "stale data"):
        severity, action = ErrorSeverity.MEDIUM, RecoveryAction.RESYNC
    elif _mentions(text, "critical", "fatal"):
        severity, action = ErrorSeverity.CRITICAL, RecoveryAction.ACTIVATE_KILL_SWITCH
    else:
        severity, action = ErrorSeverity.LOW, RecoveryAction.RETRY

    if code is None and status is not None:
        code = str(status)
    return ErrorContext(
        error_type=type(error).__name__,
        error_message=str(error),
        error_code=code,
        component=component or "unknown",
        operation=operation or "unknown",
        severity=severity,
        action=action,
        metadata=dict(metadata or {}),
    )


class ErrorRecoveryService:
    """
    Categorises errors and runs recovery.

    Collaborators are optional so the service can run with only a kill
    switch: ``connection`` (connect/disconnect) enables RECONNECT,
    ``position_reconciler`` enables RESYNC, ``breakers`` lets a successful
    reconnect close the ``broker_connection`` breaker.
    """

    def __init__(
        self,
        connection: Any = None,
        kill_switch: Optional[KillSwitch] = None,
        position_reconciler: Any = None,
        breakers: Optional[CircuitBreakerRegistry] = None,
        config: Optional[RecoveryConfig] = None,
        bus: Optional[EventBus] = None,
        sleep: Optional[Callable[[float], bool]] = None,
    ) -> None:
        self._connection = connection
        self._kill_switch = kill_switch
        self._position_reconciler = position_reconciler
        self._breakers = breakers
        self.config = config or RecoveryConfig()
        self._bus = bus
        self._token = CancellationToken()
        self._sleep = sleep or self._token.sleep

        self._lock = threading.RLock()
        self._history: deque[ErrorContext] = deque(maxlen=self.config.error_history_size)
        self._in_progress: set[str] = set()
        self._key_counts: dict[str, int] = {}
        self._threads: list[threading.Thread] = []

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def handle_error(
        self,
        error: BaseException,
        component: str = "unknown",
        operation: str = "unknown",
        context: Optional[dict[str, Any]] = None,
    ) -> RecoveryOutcome:
        ctx = categorize_error(error, component, operation, context)
        key = ctx.recovery_key

        with self._lock:
            self._history.append(ctx)
            self._key_counts[key] = self._key_counts.get(key, 0) + 1
            busy = key in self._in_progress
            if not busy:
                self._in_progress.add(key)

        log.error(
            "Error detected - initiating recovery: "
            + format_fields(
                component=ctx.component,
                operation=ctx.operation,
                severity=ctx.severity.value,
                action=ctx.action.value,
                error=ctx.error_message,
            )
        )
        self._emit(EventType.ERROR_RECORDED, **ctx.to_dict())

        if busy:
            log.warning(f"Recovery already in progress: {key}")
            return RecoveryOutcome(False, ctx.action, "Recovery already in progress")

        try:
            outcome = self._execute(ctx)
        finally:
            with self._lock:
                self._in_progress.discard(key)

        log.info(
            "Recovery completed: "
            + format_fields(
                key=key,
                success=outcome.success,
                action=outcome.action.value,
                attempts=outcome.attempts,
                duration=f"{outcome.duration:.2f}s",
            )
        )
        self._emit(
            EventType.RECOVERY_COMPLETED,
            error=ctx.to_dict(),
            result=outcome.to_dict(),
        )
        return outcome

    def on_breaker_open(self, event: Event) -> None:
        """Bus handler: reconnect in the background when broker_connection opens."""
        if getattr(event, "breaker", "") != BROKER_CONNECTION:
            return
        log.error(f"Broker connection circuit breaker opened: {event.data.get('reason')}")
        self.start_connection_recovery()

    def start_connection_recovery(self) -> bool:
        """Launch ``recover_broker_connection`` on a daemon thread; no-op if running."""
        key = f"{BROKER_CONNECTION}:reconnect"
        with self._lock:
            if key in self._in_progress:
                log.info("Broker connection recovery already in progress")
                return False
            self._in_progress.add(key)

        def run() -> None:
            try:
                self.recover_broker_connection()
            finally:
                with self._lock:
                    self._in_progress.discard(key)

        thread = threading.Thread(target=run, daemon=True, name="broker_connection_recovery")
        with self._lock:
            self._threads = [t for t in self._threads if t.is_alive()]
            self._threads.append(thread)
        thread.start()
        return True

    def recover_broker_connection(self) -> RecoveryOutcome:
        """Reconnect and resync; closes the broker_connection breaker on success."""
        log.info("Initiating broker connection recovery")
        outcome = self._reconnect(resync=True)
        if outcome.success:
            log.info("✅ Broker connection recovered successfully")
            if self._breakers is not None:
                breaker = self._breakers.get(BROKER_CONNECTION)
                if breaker is not None:
                    breaker.force_close("reconnected")
        else:
            log.error("Broker connection recovery failed after all retries")
            self._emit(
                EventType.RECOVERY_FAILED,
                scope=BROKER_CONNECTION,
                attempts=outcome.attempts,
                message=outcome.message,
            )
        return outcome

    def start(self) -> None:
        self._token.reset()

    def stop(self, timeout: float = 5.0) -> None:
        """Cancel in-flight reconnect back-offs and wait for their threads."""
        self._token.cancel()
        with self._lock:
            threads = list(self._threads)
            self._threads.clear()
        for thread in threads:
            if thread is not threading.current_thread():
                thread.join(timeout=timeout)

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def _execute(self, ctx: ErrorContext) -> RecoveryOutcome:
        started = time.monotonic()
        if ctx.action == RecoveryAction.RECONNECT:
            outcome = self._reconnect(resync=False)
        elif ctx.action == RecoveryAction.RESYNC:
            outcome = self._resync()
        elif ctx.action == RecoveryAction.ACTIVATE_KILL_SWITCH:
            outcome = self._activate_kill_switch(ctx)
        elif ctx.action == RecoveryAction.ALERT_ONLY:
            outcome = RecoveryOutcome(True, ctx.action, "Alert sent, no automatic recovery")
        else:
            # The caller owns the operation and its retry.
            log.info(f"Retry left to caller: {ctx.recovery_key}")
            outcome = RecoveryOutcome(True, RecoveryAction.RETRY, "Retry scheduled", attempts=1)
        outcome.duration = time.monotonic() - started
        return outcome

    def _reconnect(self, resync: bool) -> RecoveryOutcome:
        if self._connection is None:
            return RecoveryOutcome(False, RecoveryAction.RECONNECT, "No broker connection to recover")
        log.info("Attempting broker reconnection")

        def attempt() -> bool:
            self._connection.disconnect()
            if not self._connection.connect():
                raise BrokerConnectionError("Broker connection failed")
            if resync and self._position_reconciler is not None:
                self._position_reconciler.sync_from_broker()
            return True

        policy = RetryPolicy(
            max_attempts=self.config.reconnect_max_attempts,
            initial_delay=self.config.reconnect_initial_delay_seconds,
            max_delay=self.config.reconnect_max_delay_seconds,
            backoff_multiplier=2.0,
            should_retry=lambda e: True,
            on_retry=lambda attempt_no, e: self._emit(
                EventType.RECOVERY_ATTEMPT,
                scope="reconnect",
                attempt=attempt_no,
                error=str(e),
            ),
        )
        result = execute_with_retry(
            attempt, policy, token=self._token, sleep=self._sleep, name="broker_reconnect",
        )
        return RecoveryOutcome(
            success=result.success,
            action=RecoveryAction.RECONNECT,
            message="Broker reconnected" if result.success else f"Reconnection failed: {result.error}",
            attempts=result.attempts,
        )

    def _resync(self) -> RecoveryOutcome:
        if self._position_reconciler is None:
            return RecoveryOutcome(False, RecoveryAction.RESYNC, "No position reconciler configured")
        log.info("Resyncing positions with broker")
        try:
            count = self._position_reconciler.sync_from_broker()
        except Exception as e:
            log.error(f"Resync failed: {e}")
            return RecoveryOutcome(False, RecoveryAction.RESYNC, f"Resync failed: {e}", attempts=1)
        return RecoveryOutcome(
            True, RecoveryAction.RESYNC, f"Data resynced successfully ({count} positions)", attempts=1,
        )

    def _activate_kill_switch(self, ctx: ErrorContext) -> RecoveryOutcome:
        log.critical(f"🛑 CRITICAL ERROR: Activating kill switch ({ctx.error_message})")
        if self._kill_switch is None:
            return RecoveryOutcome(False, ctx.action, "No kill switch configured")
        self._kill_switch.activate(
            f"critical error in {ctx.recovery_key}: {ctx.error_message}",
            activated_by="error_recovery",
        )
        return RecoveryOutcome(True, ctx.action, "Kill switch activated", attempts=1)

    def _emit(self, event_type: EventType, **data: Any) -> None:
        if self._bus is not None:
            self._bus.publish(Event(type=event_type, source="error_recovery", data=data))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_recovering(self, key: str) -> bool:
        with self._lock:
            return key in self._in_progress

    def get_recent_errors(self, limit: int = 50) -> list[ErrorContext]:
        with self._lock:
            return list(self._history)[-limit:]

    def get_error_stats(self) -> dict[str, Any]:
        now = datetime.now()
        with self._lock:
            history = list(self._history)
            by_key = dict(self._key_counts)
        by_severity = {s.value.lower(): 0 for s in ErrorSeverity}
        for ctx in history:
            by_severity[ctx.severity.value.lower()] += 1
        stats: dict[str, Any] = {
            'total_errors': len(history),
            'last_15_minutes': sum(1 for c in history if now - c.timestamp < timedelta(minutes=15)),
            'last_hour': sum(1 for c in history if now - c.timestamp < timedelta(hours=1)),
            'by_severity': by_severity,
            'by_key': by_key,
        }
        if self._breakers is not None:
            stats['circuit_breakers'] = self._breakers.get_all_stats()
        return stats
