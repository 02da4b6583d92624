# trading/health.py
"""
Broker health monitoring and safe mode.

A cheap probe (account balance) runs on a fixed period and drives:

    HEALTHY  -> DEGRADED    probe succeeds but slower than the latency limit
    *        -> DOWN        ``failure_threshold`` consecutive probe failures
    DOWN     -> RECOVERING  a probe or reconnect attempt succeeds
    DOWN/RECOVERING -> HEALTHY  ``recovery_threshold`` consecutive successes

Entering DOWN caches the last-known state, turns on the kill switch and
starts a bounded reconnect loop. Leaving it re-runs both reconciliations and
releases the kill switch only when the position count did not drift.
"""
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional, Protocol

import numpy as np

from config.settings import HealthConfig
from core.events import Event, EventBus, EventType
from core.exceptions import BrokerConnectionError
from core.types import BalanceSnapshot, Position
from trading.kill_switch import KillSwitch
from trading.retry import RetryPolicy, execute_with_retry
from utils.cancellation import CancellationToken, CancelledException
from utils.logger import format_fields, get_logger
from utils.metrics import MetricsRegistry
from utils.scheduler import Scheduler

log = get_logger(__name__)

TASK_NAME = "broker_health_probe"
IMPACTED_OPERATIONS = ("trading", "data_fetch", "position_sync")


class BrokerHealthStatus(Enum):
    HEALTHY = "HEALTHY"
    DEGRADED = "DEGRADED"
    DOWN = "DOWN"
    RECOVERING = "RECOVERING"


_STATUS_GAUGE = {
    BrokerHealthStatus.HEALTHY: 0,
    BrokerHealthStatus.DEGRADED: 1,
    BrokerHealthStatus.RECOVERING: 2,
    BrokerHealthStatus.DOWN: 3,
}


@dataclass
class HealthCheckResult:
    """One probe outcome"""
    timestamp: datetime
    success: bool
    latency: float
    status: BrokerHealthStatus
    consecutive_failures: int = 0
    error: str = ""


@dataclass
class DowntimeEpisode:
    start: datetime
    reason: str
    impacted_operations: list[str] = field(default_factory=lambda: list(IMPACTED_OPERATIONS))
    end: Optional[datetime] = None

    @property
    def duration(self) -> Optional[float]:
        if self.end is None:
            return None
        return (self.end - self.start).total_seconds()

    def to_dict(self) -> dict:
        return {
            'start': self.start.isoformat(),
            'end': self.end.isoformat() if self.end else None,
            'duration_seconds': self.duration,
            'reason': self.reason,
            'impacted_operations': list(self.impacted_operations),
        }


class Reconnectable(Protocol):
    def connect(self) -> bool:
        ...

    def disconnect(self) -> None:
        ...


class BrokerHealthMonitor:
    """Probes the broker and owns the safe-mode decision for broker outages.

    ``position_reconciler`` and ``order_reconciler`` are optional; without
    them recovery only checks the position book count supplied by
    ``positions_provider``.
    """

    def __init__(
        self,
        probe: Callable[[], Any],
        connection: Reconnectable,
        kill_switch: KillSwitch,
        config: Optional[HealthConfig] = None,
        bus: Optional[EventBus] = None,
        scheduler: Optional[Scheduler] = None,
        metrics: Optional[MetricsRegistry] = None,
        positions_provider: Optional[Callable[[], list[Position]]] = None,
        position_reconciler: Any = None,
        order_reconciler: Any = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._probe = probe
        self._connection = connection
        self._kill_switch = kill_switch
        self.config = config or HealthConfig()
        self._bus = bus
        self._scheduler = scheduler or Scheduler()
        self._metrics = metrics
        self._positions_provider = positions_provider
        self._position_reconciler = position_reconciler
        self._order_reconciler = order_reconciler
        self._clock = clock

        self._lock = threading.RLock()
        self._probe_lock = threading.Lock()
        self._token = CancellationToken()

        self._status = BrokerHealthStatus.HEALTHY
        self._consecutive_failures = 0
        self._consecutive_successes = 0
        self._history: deque[HealthCheckResult] = deque(maxlen=self.config.history_size)
        self._downtime_history: list[DowntimeEpisode] = []
        self._current_downtime: Optional[DowntimeEpisode] = None
        self._started_at = datetime.now()

        self._cached_positions: list[Position] = []
        self._cached_balance: Optional[float] = None
        self._last_balance: Optional[float] = None
        self._last_successful_sync: Optional[datetime] = None
        self._owns_safe_mode = False

        self._recovery_thread: Optional[threading.Thread] = None
        self._episode_token: Optional[CancellationToken] = None
        self._recovery_in_flight = False
        self._running = False

        self._publish_gauge()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._running:
            log.warning("Broker health monitoring already active")
            return
        self._running = True
        self._token.reset()
        self._scheduler.every(
            TASK_NAME,
            self.config.probe_interval_seconds,
            self.check_health,
            run_immediately=True,
        )
        log.info(
            "Broker health monitoring started: "
            + format_fields(
                interval=self.config.probe_interval_seconds,
                failure_threshold=self.config.failure_threshold,
            )
        )

    def stop(self, timeout: float = 10.0) -> None:
        """Stop probing and wait for an in-flight reconnect loop to wind down."""
        self._running = False
        self._scheduler.cancel_task(TASK_NAME)
        self._token.cancel()
        thread = self._recovery_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        log.info("Broker health monitoring stopped")

    # ------------------------------------------------------------------
    # Probing
    # ------------------------------------------------------------------

    def check_health(self) -> HealthCheckResult:
        """Run one probe and apply its outcome."""
        with self._probe_lock:
            started = self._clock()
            try:
                snapshot = BalanceSnapshot.parse(self._probe())
                if snapshot.balance < 0:
                    raise BrokerConnectionError(f"Invalid balance response: {snapshot.balance}")
            except Exception as e:
                return self._on_failure(e, self._clock() - started)
            return self._on_success(snapshot.balance, self._clock() - started)

    def force_health_check(self) -> HealthCheckResult:
        return self.check_health()

    def _on_success(self, balance: float, latency: float) -> HealthCheckResult:
        recovered = False
        change = None
        with self._lock:
            self._consecutive_failures = 0
            self._consecutive_successes += 1
            self._last_balance = balance
            self._last_successful_sync = datetime.now()

            if self._status in (BrokerHealthStatus.DOWN, BrokerHealthStatus.RECOVERING):
                if self._consecutive_successes >= self.config.recovery_threshold:
                    recovered = True
                else:
                    change = self._set_status(BrokerHealthStatus.RECOVERING, "probe succeeded")
            elif self._status == BrokerHealthStatus.DEGRADED:
                if (
                    latency <= self.config.degraded_latency_seconds
                    and self._consecutive_successes >= self.config.recovery_threshold
                ):
                    change = self._set_status(BrokerHealthStatus.HEALTHY, "latency back to normal")
            elif latency > self.config.degraded_latency_seconds:
                log.warning(f"Broker response time degraded: {latency:.2f}s")
                change = self._set_status(BrokerHealthStatus.DEGRADED, f"slow probe {latency:.2f}s")

            result = HealthCheckResult(
                timestamp=datetime.now(),
                success=True,
                latency=latency,
                status=self._status,
            )
            self._history.append(result)

        self._emit_status_change(change)
        if self._metrics is not None:
            self._metrics.observe("broker_probe_latency_seconds", latency)
        if recovered:
            self._on_broker_recovered()
            result.status = self.status
        return result

    def _on_failure(self, error: BaseException, latency: float) -> HealthCheckResult:
        went_down = False
        change = None
        with self._lock:
            self._consecutive_successes = 0
            self._consecutive_failures += 1
            failures = self._consecutive_failures

            if self._status == BrokerHealthStatus.RECOVERING:
                change = self._set_status(
                    BrokerHealthStatus.DOWN, f"probe failed while recovering: {error}"
                )
            elif (
                failures >= self.config.failure_threshold
                and self._status != BrokerHealthStatus.DOWN
            ):
                went_down = True

            result = HealthCheckResult(
                timestamp=datetime.now(),
                success=False,
                latency=latency,
                status=self._status,
                consecutive_failures=failures,
                error=str(error),
            )
            self._history.append(result)

        self._emit_status_change(change)
        log.error(
            "Broker health check failed: "
            + format_fields(consecutive_failures=failures, error=error)
        )
        if self._metrics is not None:
            self._metrics.inc_counter("broker_probe_failures_total")
        if went_down:
            self._on_broker_down(str(error))
            result.status = self.status
        return result

    # ------------------------------------------------------------------
    # Down / recovered
    # ------------------------------------------------------------------

    def _on_broker_down(self, reason: str) -> None:
        with self._lock:
            change = self._set_status(BrokerHealthStatus.DOWN, reason)
            self._current_downtime = DowntimeEpisode(start=datetime.now(), reason=reason)
            self._cache_current_state()
            failures = self._consecutive_failures
            cached_count = len(self._cached_positions)
        self._emit_status_change(change)

        log.critical(
            "🛑 BROKER DOWN DETECTED: "
            + format_fields(reason=reason, consecutive_failures=failures)
        )
        self._emit(
            EventType.BROKER_DOWN,
            reason=reason,
            consecutive_failures=failures,
            impacted_operations=list(IMPACTED_OPERATIONS),
        )
        self._enter_safe_mode(cached_count)

        if self.config.auto_recover:
            self._launch_recovery()

    def _cache_current_state(self) -> None:
        if self._positions_provider is not None:
            try:
                self._cached_positions = list(self._positions_provider())
            except Exception as e:
                log.error(f"Failed to cache positions: {e}")
        self._cached_balance = self._last_balance
        log.info(
            "Cached current state: "
            + format_fields(positions=len(self._cached_positions), balance=self._cached_balance)
        )

    def _enter_safe_mode(self, cached_count: int) -> None:
        log.warning("Entering safe mode due to broker downtime")
        activated = self._kill_switch.activate("broker_down", activated_by="health_monitor")
        with self._lock:
            # Only release what we took; someone else may hold the switch.
            self._owns_safe_mode = self._owns_safe_mode or activated
        self._emit(
            EventType.SAFE_MODE_ACTIVATED,
            reason="broker_down",
            cached_positions=cached_count,
        )

    def _on_broker_recovered(self) -> None:
        with self._lock:
            change = self._set_status(BrokerHealthStatus.HEALTHY, "recovery threshold reached")
            episode = self._current_downtime
            if episode is not None:
                episode.end = datetime.now()
                self._downtime_history.append(episode)
                self._current_downtime = None
            successes = self._consecutive_successes
            episode_token = self._episode_token
        self._emit_status_change(change)
        if episode_token is not None:
            # Stops a reconnect loop still backing off for this outage.
            episode_token.cancel()

        log.info(
            "✅ BROKER RECOVERED: "
            + format_fields(
                consecutive_successes=successes,
                downtime=episode.duration if episode else None,
            )
        )
        self._emit(
            EventType.BROKER_RECOVERED,
            consecutive_successes=successes,
            downtime=episode.to_dict() if episode else None,
        )
        self._exit_safe_mode()

    def _exit_safe_mode(self) -> bool:
        """Resync after recovery. Returns True when the kill switch was released."""
        log.info("Exiting safe mode - broker recovered, resyncing")

        if self._order_reconciler is not None:
            try:
                self._order_reconciler.perform_full_reconciliation()
            except Exception as e:
                log.error(f"Order resync after recovery failed: {e}")

        reconciled = True
        if self._position_reconciler is not None:
            reconciled = self._position_reconciler.reconcile() is not None

        with self._lock:
            cached = list(self._cached_positions)
            owns = self._owns_safe_mode
        current = self._current_positions()

        if not reconciled or len(current) != len(cached):
            log.warning(
                "Position count mismatch after recovery: "
                + format_fields(cached=len(cached), current=len(current), reconciled=reconciled)
            )
            self._emit(
                EventType.POSITION_MISMATCH,
                cached=[p.to_dict() for p in cached],
                current=[p.to_dict() for p in current],
                reconciled=reconciled,
            )
            return False

        if not owns:
            return False
        with self._lock:
            self._owns_safe_mode = False
        self._kill_switch.deactivate(deactivated_by="health_monitor")
        self._emit(EventType.SAFE_MODE_DEACTIVATED, positions=len(current))
        return True

    def _current_positions(self) -> list[Position]:
        if self._positions_provider is None:
            return []
        try:
            return list(self._positions_provider())
        except Exception as e:
            log.error(f"Failed to read positions after recovery: {e}")
            return []

    # ------------------------------------------------------------------
    # Reconnect loop
    # ------------------------------------------------------------------

    def _launch_recovery(self) -> bool:
        """Start the reconnect loop on its own thread; no-op if one is running."""
        with self._lock:
            if self._recovery_in_flight:
                log.info("Broker recovery already in progress")
                return False
            self._recovery_in_flight = True
            self._recovery_thread = threading.Thread(
                target=self.run_recovery, daemon=True, name="broker_recovery",
            )
            thread = self._recovery_thread
        thread.start()
        return True

    def run_recovery(self) -> bool:
        """Bounded, backed-off reconnect: disconnect, wait, connect, probe, resync."""
        episode = CancellationToken()
        with self._lock:
            self._recovery_in_flight = True
            self._episode_token = episode
        forward_cancel = self._token.on_cancel(episode.cancel)
        log.info("Attempting broker recovery")

        policy = RetryPolicy(
            max_attempts=self.config.recovery_max_attempts,
            initial_delay=self.config.recovery_initial_delay_seconds,
            max_delay=self.config.recovery_max_delay_seconds,
            backoff_multiplier=2.0,
            should_retry=lambda e: not isinstance(e, CancelledException),
            on_retry=self._on_recovery_retry,
        )
        try:
            outcome = execute_with_retry(
                lambda: self._reconnect_once(episode),
                policy,
                token=episode,
                name="broker_recovery",
            )
        finally:
            self._token.remove_callback(forward_cancel)
            with self._lock:
                self._recovery_in_flight = False
                if self._episode_token is episode:
                    self._episode_token = None

        if outcome.success:
            log.info(f"Broker reconnected after {outcome.attempts} attempt(s)")
            return True
        if self._has_recovered():
            log.info("Broker recovered by health checks; reconnect loop stood down")
            return True
        if outcome.cancelled or episode.is_cancelled:
            log.info("Broker recovery cancelled")
            return False

        log.error("Broker recovery failed after all attempts")
        self._emit(
            EventType.RECOVERY_FAILED,
            attempts=outcome.attempts,
            error=str(outcome.error) if outcome.error else None,
        )
        return False

    def _has_recovered(self) -> bool:
        with self._lock:
            return self._status in (BrokerHealthStatus.HEALTHY, BrokerHealthStatus.DEGRADED)

    def _reconnect_once(self, episode: CancellationToken) -> bool:
        # Never tear down a connection health checks have already declared live.
        if self._has_recovered():
            return True
        episode.raise_if_cancelled()

        self._connection.disconnect()
        if episode.sleep(self.config.reconnect_wait_seconds):
            raise CancelledException("Recovery cancelled")
        if not self._connection.connect():
            raise BrokerConnectionError("Broker connection failed")

        snapshot = BalanceSnapshot.parse(self._probe())
        change = None
        with self._lock:
            self._last_balance = snapshot.balance
            if self._status == BrokerHealthStatus.DOWN:
                change = self._set_status(BrokerHealthStatus.RECOVERING, "reconnected")
        self._emit_status_change(change)

        if self._position_reconciler is not None:
            self._position_reconciler.reconcile()
        return True

    def _on_recovery_retry(self, attempt: int, error: BaseException) -> None:
        log.warning(f"Broker recovery retry {attempt}/{self.config.recovery_max_attempts}: {error}")
        self._emit(
            EventType.RECOVERY_ATTEMPT,
            attempt=attempt,
            max_attempts=self.config.recovery_max_attempts,
            error=str(error),
        )

    # ------------------------------------------------------------------
    # State helpers
    # ------------------------------------------------------------------

    def _set_status(
        self, new_status: BrokerHealthStatus, reason: str = ""
    ) -> Optional[dict[str, str]]:
        """Caller holds the lock. Returns the change for ``_emit_status_change``."""
        old_status = self._status
        if old_status == new_status:
            return None
        self._status = new_status
        log.info(f"Broker status changed: {old_status.value} -> {new_status.value} ({reason})")
        self._publish_gauge()
        return {
            "from_status": old_status.value,
            "to_status": new_status.value,
            "reason": reason,
        }

    def _emit_status_change(self, change: Optional[dict[str, str]]) -> None:
        """Publish a change from ``_set_status`` once the lock is released."""
        if change is not None:
            self._emit(EventType.BROKER_HEALTH_CHANGED, **change)

    def _publish_gauge(self) -> None:
        if self._metrics is not None:
            self._metrics.set_gauge("broker_health_status", _STATUS_GAUGE[self._status])

    def _emit(self, event_type: EventType, **data: Any) -> None:
        if self._bus is not None:
            self._bus.publish(Event(type=event_type, source="broker_health", data=data))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def status(self) -> BrokerHealthStatus:
        with self._lock:
            return self._status

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def consecutive_successes(self) -> int:
        return self._consecutive_successes

    def is_broker_available(self) -> bool:
        return self.status in (BrokerHealthStatus.HEALTHY, BrokerHealthStatus.DEGRADED)

    def is_degraded(self) -> bool:
        return self.status == BrokerHealthStatus.DEGRADED

    def get_cached_positions(self) -> list[Position]:
        with self._lock:
            return list(self._cached_positions)

    def get_cached_balance(self) -> Optional[float]:
        with self._lock:
            return self._cached_balance

    def get_downtime_history(self) -> list[DowntimeEpisode]:
        with self._lock:
            return list(self._downtime_history)

    def get_history(self, limit: int = 100) -> list[HealthCheckResult]:
        with self._lock:
            return list(self._history)[-limit:]

    def get_stats(self) -> dict:
        with self._lock:
            cutoff = datetime.now() - timedelta(hours=1)
            recent = [c for c in self._history if c.timestamp >= cutoff]
            total = len(self._history)
            successes = sum(1 for c in self._history if c.success)
            latencies = np.array([c.latency for c in recent if c.success], dtype=float)
            stats = {
                'current_status': self._status.value,
                'is_available': self._status in (
                    BrokerHealthStatus.HEALTHY, BrokerHealthStatus.DEGRADED,
                ),
                'is_degraded': self._status == BrokerHealthStatus.DEGRADED,
                'consecutive_failures': self._consecutive_failures,
                'consecutive_successes': self._consecutive_successes,
                'last_successful_sync': (
                    self._last_successful_sync.isoformat()
                    if self._last_successful_sync
                    else None
                ),
                'cached_positions_count': len(self._cached_positions),
                'downtime_events': len(self._downtime_history),
                'current_downtime': (
                    self._current_downtime.to_dict() if self._current_downtime else None
                ),
                'recent_health_checks': len(recent),
                'uptime_pct': (successes / total * 100) if total else 100.0,
                'recovery_in_flight': self._recovery_in_flight,
            }
        if latencies.size:
            stats['avg_latency_seconds'] = float(latencies.mean())
            stats['p95_latency_seconds'] = float(np.percentile(latencies, 95))
        else:
            stats['avg_latency_seconds'] = 0.0
            stats['p95_latency_seconds'] = 0.0
        return stats
