"""
Retry with exponential back-off and jitter.

    delay(n) = min(initial * multiplier ** (n - 1), max) * (1 +/- jitter)

Only errors accepted by ``should_retry`` are retried (network-class errors
and HTTP 429/502/503/504 by default). Waits go through a CancellationToken
so shutdown never blocks on a long back-off.
"""
from __future__ import annotations

import functools
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Generic, Optional, TypeVar

from config.settings import RetryConfig
from core.exceptions import RetryExhaustedError
from utils.cancellation import CancellationToken
from utils.logger import get_logger
from utils.metrics import MetricsRegistry
from utils.recoverable import is_retryable

log = get_logger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    jitter: float = 0.25
    should_retry: Callable[[BaseException], bool] = is_retryable
    on_retry: Optional[Callable[[int, BaseException], None]] = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")
        if not 0 <= self.jitter <= 1:
            raise ValueError(f"jitter must be within [0, 1], got {self.jitter}")

    @classmethod
    def from_config(cls, cfg: RetryConfig, **overrides: Any) -> RetryPolicy:
        values: dict[str, Any] = {
            "max_attempts": cfg.max_attempts,
            "initial_delay": cfg.initial_delay_seconds,
            "max_delay": cfg.max_delay_seconds,
            "backoff_multiplier": cfg.backoff_multiplier,
            "jitter": cfg.jitter,
        }
        values.update(overrides)
        return cls(**values)


@dataclass
class RetryResult(Generic[T]):
    success: bool
    result: Optional[T] = None
    error: Optional[BaseException] = None
    attempts: int = 0
    total_duration: float = 0.0
    cancelled: bool = False
    delays: list[float] = field(default_factory=list)

    def unwrap(self) -> T:
        """Return the result or raise RetryExhaustedError."""
        if self.success:
            return self.result  # type: ignore[return-value]
        raise RetryExhaustedError(
            f"Operation failed after {self.attempts} attempt(s): {self.error}",
            attempts=self.attempts,
            last_error=self.error,
        )


def compute_delay(
    attempt: int,
    policy: RetryPolicy,
    rng: Callable[[float, float], float] = random.uniform,
) -> float:
    """Back-off before retrying after failed attempt number ``attempt`` (1-based)."""
    base = policy.initial_delay * (policy.backoff_multiplier ** max(0, attempt - 1))
    base = min(base, policy.max_delay)
    if policy.jitter:
        base *= 1.0 + rng(-policy.jitter, policy.jitter)
    return max(0.0, base)


def execute_with_retry(
    operation: Callable[[], T],
    policy: Optional[RetryPolicy] = None,
    token: Optional[CancellationToken] = None,
    sleep: Optional[Callable[[float], bool]] = None,
    rng: Callable[[float, float], float] = random.uniform,
    name: str = "",
    metrics: Optional[MetricsRegistry] = None,
) -> RetryResult[T]:
    """Run ``operation`` until it succeeds, a non-retryable error occurs,
    attempts run out, or ``token`` is cancelled.

    ``sleep(seconds)`` returns True when the wait was interrupted; by
    default it waits on ``token``. Never raises for operation errors.
    """
    policy = policy or RetryPolicy()
    token = token or CancellationToken()
    sleep = sleep or token.sleep
    label = name or getattr(operation, "__name__", "operation")

    started = time.monotonic()
    result: RetryResult[T] = RetryResult(success=False)

    for attempt in range(1, policy.max_attempts + 1):
        if token.is_cancelled:
            result.cancelled = True
            break

        result.attempts = attempt
        try:
            value = operation()
        except Exception as e:
            result.error = e
            if metrics is not None:
                metrics.inc_counter("retry_attempt_failures_total", labels={"operation": label})

            if not policy.should_retry(e):
                log.debug(f"{label}: not retrying {type(e).__name__}: {e}")
                break
            if attempt >= policy.max_attempts:
                log.error(f"All retries exhausted for {label} after {attempt} attempt(s): {e}")
                break

            delay = compute_delay(attempt, policy, rng)
            result.delays.append(delay)
            log.warning(
                f"Retryable error in {label}: {e}. "
                f"Attempt {attempt}/{policy.max_attempts}. "
                f"Retrying in {delay:.2f}s..."
            )
            if policy.on_retry is not None:
                try:
                    policy.on_retry(attempt, e)
                except Exception as cb_err:
                    log.warning(f"on_retry callback failed for {label}: {cb_err}")

            if sleep(delay):
                result.cancelled = True
                log.info(f"{label}: retry cancelled during back-off")
                break
            continue

        result.success = True
        result.result = value
        result.error = None
        break

    result.total_duration = time.monotonic() - started
    return result


class RetryExecutor:
    """Binds a default policy and cancellation token to ``execute_with_retry``."""

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        token: Optional[CancellationToken] = None,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self.token = token or CancellationToken()
        self._metrics = metrics

    def execute(
        self,
        operation: Callable[[], T],
        policy: Optional[RetryPolicy] = None,
        name: str = "",
    ) -> RetryResult[T]:
        return execute_with_retry(
            operation,
            policy or self.policy,
            token=self.token,
            name=name,
            metrics=self._metrics,
        )

    def call(
        self,
        operation: Callable[[], T],
        policy: Optional[RetryPolicy] = None,
        name: str = "",
    ) -> T:
        """Like ``execute`` but returns the value or raises the last error.

        The last error is re-raised as-is so an enclosing circuit breaker
        classifies the real failure. RetryExhaustedError is raised only when
        cancellation ended the run before any attempt failed.
        """
        outcome = self.execute(operation, policy, name=name)
        if outcome.success:
            return outcome.result  # type: ignore[return-value]
        if outcome.error is not None:
            raise outcome.error
        return outcome.unwrap()

    def cancel(self) -> None:
        self.token.cancel()


def retryable(policy: Optional[RetryPolicy] = None) -> Callable:
    """
    Decorator form of ``execute_with_retry``.

    Usage:
        @retryable(RetryPolicy(max_attempts=5))
        def fetch_positions():
            ...

    Raises RetryExhaustedError with the last error attached on failure.
    """
    def decorator(fn: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            outcome = execute_with_retry(
                lambda: fn(*args, **kwargs),
                policy,
                name=fn.__name__,
            )
            return outcome.unwrap()
        return wrapper
    return decorator


def retry(
    fn: Callable[[], T],
    max_attempts: int = 3,
    delay: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Retry any exception with linear back-off (``delay * attempt``)."""
    last_error: Optional[Exception] = None
    for attempt in range(1, max_attempts + 1):
        try:
            return fn()
        except Exception as e:
            last_error = e
            if attempt < max_attempts:
                sleep(delay * attempt)
    raise RetryExhaustedError(
        f"Operation failed after {max_attempts} attempt(s): {last_error}",
        attempts=max_attempts,
        last_error=last_error,
    )
