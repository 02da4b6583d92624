"""
Per-operation-class circuit breakers.

Each broker operation class (order placement, data fetch, broker
connection) gets its own breaker so a failing quote endpoint never blocks
order placement and vice versa. Breakers share nothing but the event bus.

    CLOSED     calls pass; failures count up, successes decay the count
    OPEN       calls fail fast with CircuitOpenError until the timeout
    HALF_OPEN  a few probe calls decide between CLOSED and OPEN
"""
from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from config.settings import BreakerProfileConfig, Config
from core.events import BreakerEvent, EventBus, EventType
from core.exceptions import CircuitOpenError
from utils.logger import get_logger
from utils.metrics import MetricsRegistry
from utils.recoverable import counts_as_breaker_failure

log = get_logger(__name__)

T = TypeVar("T")

ORDER_PLACEMENT = "order_placement"
DATA_FETCH = "data_fetch"
BROKER_CONNECTION = "broker_connection"


class CircuitState(Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


_STATE_GAUGE = {CircuitState.CLOSED: 0, CircuitState.HALF_OPEN: 1, CircuitState.OPEN: 2}

_STATE_EVENTS = {
    CircuitState.OPEN: EventType.CIRCUIT_BREAKER_OPEN,
    CircuitState.HALF_OPEN: EventType.CIRCUIT_BREAKER_HALF_OPEN,
    CircuitState.CLOSED: EventType.CIRCUIT_BREAKER_CLOSED,
}


@dataclass
class CircuitBreakerOptions:
    """Breaker thresholds. Durations are in seconds."""
    failure_threshold: int = 5
    success_threshold: int = 2
    open_timeout: float = 60.0
    rolling_window: float = 60.0
    min_volume: int = 10
    failure_rate_threshold: float = 0.5
    error_filter: Callable[[BaseException], bool] = counts_as_breaker_failure

    @classmethod
    def from_profile(cls, profile: BreakerProfileConfig) -> CircuitBreakerOptions:
        return cls(
            failure_threshold=profile.failure_threshold,
            success_threshold=profile.success_threshold,
            open_timeout=profile.open_timeout_seconds,
            rolling_window=profile.rolling_window_seconds,
            min_volume=profile.min_volume,
        )


DEFAULT_PROFILES: dict[str, CircuitBreakerOptions] = {
    ORDER_PLACEMENT: CircuitBreakerOptions(
        failure_threshold=5, success_threshold=2, open_timeout=30.0, min_volume=3,
    ),
    DATA_FETCH: CircuitBreakerOptions(
        failure_threshold=10, success_threshold=3, open_timeout=15.0, min_volume=5,
    ),
    BROKER_CONNECTION: CircuitBreakerOptions(
        failure_threshold=3, success_threshold=1, open_timeout=60.0, min_volume=2,
    ),
}


@dataclass
class BreakerStats:
    name: str
    state: CircuitState
    failure_count: int
    success_count: int
    total_requests: int
    failed_requests: int
    failure_rate: float
    rejected_calls: int
    next_attempt_in: float | None
    state_changes: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "total_requests": self.total_requests,
            "failed_requests": self.failed_requests,
            "failure_rate": round(self.failure_rate, 4),
            "rejected_calls": self.rejected_calls,
            "next_attempt_in": self.next_attempt_in,
        }


class CircuitBreaker:
    """Failure gate around one operation class."""

    def __init__(
        self,
        name: str,
        options: CircuitBreakerOptions | None = None,
        bus: EventBus | None = None,
        clock: Callable[[], float] = time.monotonic,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self.name = name
        self.options = options or CircuitBreakerOptions()
        self._bus = bus
        self._clock = clock
        self._metrics = metrics
        self._lock = threading.RLock()

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._next_attempt: float | None = None
        self._window: deque[tuple[float, bool]] = deque()
        self._half_open_in_flight = 0
        self._rejected_calls = 0
        self._state_changes: deque[dict[str, Any]] = deque(maxlen=50)

        self._publish_gauge()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def execute(self, operation: Callable[[], T]) -> T:
        """Run ``operation`` through the breaker.

        Raises CircuitOpenError without calling ``operation`` while OPEN, or
        when HALF_OPEN already has its full probe volume in flight.
        """
        pending: list[tuple[CircuitState, CircuitState, str]] = []
        rejection: CircuitOpenError | None = None
        probe = False
        with self._lock:
            now = self._clock()
            if self._state == CircuitState.OPEN:
                if self._next_attempt is not None and now >= self._next_attempt:
                    pending.append(self._transition(CircuitState.HALF_OPEN, "open timeout elapsed"))
                else:
                    retry_in = max(0.0, (self._next_attempt or now) - now)
                    rejection = CircuitOpenError(
                        f"Circuit breaker '{self.name}' is OPEN",
                        details={"breaker": self.name, "retry_in": round(retry_in, 3)},
                    )

            if rejection is None and self._state == CircuitState.HALF_OPEN:
                if self._half_open_in_flight >= self.options.success_threshold:
                    rejection = CircuitOpenError(
                        f"Circuit breaker '{self.name}' is HALF_OPEN with probes in flight",
                        details={"breaker": self.name},
                    )
                else:
                    self._half_open_in_flight += 1
                    probe = True

            if rejection is not None:
                self._rejected_calls += 1

        self._emit(pending)
        if rejection is not None:
            if self._metrics is not None:
                self._metrics.inc_counter(
                    "circuit_breaker_rejected_total", labels={"breaker": self.name}
                )
            raise rejection

        try:
            result = operation()
        except Exception as exc:
            self._on_failure(exc, probe)
            raise
        self._on_success(probe)
        return result

    def force_open(self, reason: str = "manual") -> None:
        with self._lock:
            pending = [self._transition(CircuitState.OPEN, reason)] if self._state != CircuitState.OPEN else []
        self._emit(pending)

    def force_close(self, reason: str = "manual") -> None:
        with self._lock:
            pending = [self._transition(CircuitState.CLOSED, reason)] if self._state != CircuitState.CLOSED else []
        self._emit(pending)

    def reset(self) -> None:
        """Return to CLOSED and forget all samples."""
        self.force_close("reset")
        with self._lock:
            self._window.clear()
            self._rejected_calls = 0

    def get_stats(self) -> BreakerStats:
        with self._lock:
            now = self._clock()
            self._prune(now)
            total = len(self._window)
            failed = sum(1 for _, ok in self._window if not ok)
            next_in = None
            if self._state == CircuitState.OPEN and self._next_attempt is not None:
                next_in = max(0.0, self._next_attempt - now)
            return BreakerStats(
                name=self.name,
                state=self._state,
                failure_count=self._failure_count,
                success_count=self._success_count,
                total_requests=total,
                failed_requests=failed,
                failure_rate=(failed / total) if total else 0.0,
                rejected_calls=self._rejected_calls,
                next_attempt_in=next_in,
                state_changes=list(self._state_changes),
            )

    # ------------------------------------------------------------------
    # Outcome bookkeeping
    # ------------------------------------------------------------------

    def _on_success(self, probe: bool) -> None:
        pending = []
        with self._lock:
            if probe:
                self._half_open_in_flight = max(0, self._half_open_in_flight - 1)
            now = self._clock()
            self._record(now, True)

            if self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.options.success_threshold:
                    pending.append(self._transition(
                        CircuitState.CLOSED,
                        f"{self._success_count} successful probes",
                    ))
            elif self._state == CircuitState.CLOSED:
                self._failure_count = max(0, self._failure_count - 1)
        self._emit(pending)

    def _on_failure(self, exc: BaseException, probe: bool) -> None:
        pending = []
        with self._lock:
            if probe:
                self._half_open_in_flight = max(0, self._half_open_in_flight - 1)
            if not self.options.error_filter(exc):
                log.debug(f"Breaker {self.name}: ignoring filtered error {type(exc).__name__}")
                return

            now = self._clock()
            self._record(now, False)
            self._failure_count += 1

            if self._state == CircuitState.HALF_OPEN:
                pending.append(self._transition(CircuitState.OPEN, f"probe failed: {exc}"))
            elif self._state == CircuitState.CLOSED and self._should_open(now):
                pending.append(self._transition(
                    CircuitState.OPEN,
                    f"{self._failure_count} failures, last: {exc}",
                ))
        self._emit(pending)

    def _should_open(self, now: float) -> bool:
        if self._failure_count < self.options.failure_threshold:
            return False
        self._prune(now)
        volume = len(self._window)
        if volume < self.options.min_volume:
            return False
        failures = sum(1 for _, ok in self._window if not ok)
        return failures / volume >= self.options.failure_rate_threshold

    def _record(self, now: float, ok: bool) -> None:
        self._window.append((now, ok))
        self._prune(now)

    def _prune(self, now: float) -> None:
        cutoff = now - self.options.rolling_window
        while self._window and self._window[0][0] < cutoff:
            self._window.popleft()

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _transition(
        self,
        new_state: CircuitState,
        reason: str,
    ) -> tuple[CircuitState, CircuitState, str]:
        """Change state under the lock; the caller emits after releasing it."""
        old_state = self._state
        self._state = new_state
        now = self._clock()

        if new_state == CircuitState.OPEN:
            self._next_attempt = now + self.options.open_timeout
            self._success_count = 0
            self._half_open_in_flight = 0
        elif new_state == CircuitState.HALF_OPEN:
            self._success_count = 0
            self._half_open_in_flight = 0
        else:
            self._failure_count = 0
            self._success_count = 0
            self._next_attempt = None
            self._half_open_in_flight = 0

        self._state_changes.append({
            "from": old_state.value,
            "to": new_state.value,
            "reason": reason,
            "at": now,
        })
        return old_state, new_state, reason

    def _emit(self, transitions: list[tuple[CircuitState, CircuitState, str]]) -> None:
        for old_state, new_state, reason in transitions:
            if new_state == CircuitState.OPEN:
                log.error(
                    f"⚡ Circuit breaker '{self.name}' OPEN: {reason} "
                    f"(retry in {self.options.open_timeout:.0f}s)"
                )
            elif new_state == CircuitState.HALF_OPEN:
                log.info(f"Circuit breaker '{self.name}' HALF_OPEN: testing recovery")
            else:
                log.info(f"✅ Circuit breaker '{self.name}' CLOSED: {reason}")

            self._publish_gauge()
            if self._bus is None:
                continue
            data = {"reason": reason}
            self._bus.publish(BreakerEvent(
                type=EventType.CIRCUIT_BREAKER_STATE_CHANGED,
                source=f"circuit_breaker:{self.name}",
                breaker=self.name,
                from_state=old_state.value,
                to_state=new_state.value,
                data=data,
            ))
            self._bus.publish(BreakerEvent(
                type=_STATE_EVENTS[new_state],
                source=f"circuit_breaker:{self.name}",
                breaker=self.name,
                from_state=old_state.value,
                to_state=new_state.value,
                data=data,
            ))

    def _publish_gauge(self) -> None:
        if self._metrics is not None:
            self._metrics.set_gauge(
                "circuit_breaker_state",
                _STATE_GAUGE[self.state],
                labels={"breaker": self.name},
            )


class CircuitBreakerRegistry:
    """Creates one breaker per operation class and hands the same instance back."""

    def __init__(
        self,
        bus: EventBus | None = None,
        config: Config | None = None,
        clock: Callable[[], float] = time.monotonic,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self._bus = bus
        self._config = config
        self._clock = clock
        self._metrics = metrics
        self._lock = threading.Lock()
        self._breakers: dict[str, CircuitBreaker] = {}

    def _default_options(self, name: str) -> CircuitBreakerOptions:
        if self._config is not None and name in DEFAULT_PROFILES:
            return CircuitBreakerOptions.from_profile(self._config.breaker_profile(name))
        template = DEFAULT_PROFILES.get(name)
        if template is None:
            return CircuitBreakerOptions()
        return CircuitBreakerOptions(
            failure_threshold=template.failure_threshold,
            success_threshold=template.success_threshold,
            open_timeout=template.open_timeout,
            rolling_window=template.rolling_window,
            min_volume=template.min_volume,
        )

    def get_or_create(
        self,
        name: str,
        options: CircuitBreakerOptions | None = None,
    ) -> CircuitBreaker:
        """Return the breaker for ``name``; ``options`` only apply on first creation."""
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(
                    name,
                    options or self._default_options(name),
                    bus=self._bus,
                    clock=self._clock,
                    metrics=self._metrics,
                )
                self._breakers[name] = breaker
            return breaker

    def get(self, name: str) -> CircuitBreaker | None:
        with self._lock:
            return self._breakers.get(name)

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._breakers)

    def get_all_stats(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {b.name: b.get_stats().to_dict() for b in breakers}

    def reset_all(self) -> None:
        with self._lock:
            breakers = list(self._breakers.values())
        for breaker in breakers:
            breaker.reset()
