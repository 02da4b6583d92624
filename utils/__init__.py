"""Utility package exports with lazy imports.

Keeps ``import utils`` cheap: numpy and requests are only imported when
metrics or error classification are first used.
"""

from __future__ import annotations

from importlib import import_module

_LAZY_EXPORTS = {
    # Logging
    "log": (".logger", "log"),
    "get_logger": (".logger", "get_logger"),
    "setup_logging": (".logger", "setup_logging"),
    "teardown_logging": (".logger", "teardown_logging"),
    "format_fields": (".logger", "format_fields"),
    # Cancellation
    "CancellationToken": (".cancellation", "CancellationToken"),
    "CancelledException": (".cancellation", "CancelledException"),
    # Scheduling
    "PeriodicTask": (".scheduler", "PeriodicTask"),
    "Scheduler": (".scheduler", "Scheduler"),
    "TimerHandle": (".scheduler", "TimerHandle"),
    # Error classification
    "ErrorClass": (".recoverable", "ErrorClass"),
    "classify_error": (".recoverable", "classify_error"),
    "is_retryable": (".recoverable", "is_retryable"),
    "counts_as_breaker_failure": (".recoverable", "counts_as_breaker_failure"),
    # Metrics
    "MetricsRegistry": (".metrics", "MetricsRegistry"),
}

__all__ = list(_LAZY_EXPORTS.keys())


def __getattr__(name: str):
    target = _LAZY_EXPORTS.get(str(name))
    if target is None:
        raise AttributeError(f"module 'utils' has no attribute {name!r}")
    mod_name, attr_name = target
    module = import_module(mod_name, __name__)
    value = getattr(module, attr_name)
    globals()[name] = value
    return value
