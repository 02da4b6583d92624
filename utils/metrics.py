# utils/metrics.py
from __future__ import annotations

import re
import threading
from collections import deque
from typing import Any

import numpy as np

from utils.logger import get_logger

log = get_logger(__name__)

_VALID_LABEL_NAME = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


def _sanitize_name(name: str) -> str:
    """Replace characters that are invalid in metric names with underscores."""
    sanitized = re.sub(r"[^a-zA-Z0-9_:]", "_", name)
    if sanitized and sanitized[0].isdigit():
        sanitized = "_" + sanitized
    return sanitized or "_unnamed"


def _validate_labels(labels: dict[str, str] | None) -> None:
    if labels is None:
        return
    for key, value in labels.items():
        if not _VALID_LABEL_NAME.match(key):
            raise ValueError(f"Invalid label name {key!r}")
        if not isinstance(value, str):
            raise TypeError(
                f"Label value for {key!r} must be a string, got {type(value).__name__}"
            )


class MetricsRegistry:
    """
    In-process counters, gauges and bounded histograms.

    One registry is created by the runtime and handed to the components that
    report breaker states, retry attempts, reconciliation mismatches and
    probe latency. ``snapshot()`` is what status endpoints read.
    """

    def __init__(self, max_keys: int = 5000, max_observations: int = 1000) -> None:
        self._lock = threading.RLock()
        self._counters: dict[str, float] = {}
        self._gauges: dict[str, float] = {}
        self._histograms: dict[str, deque[float]] = {}
        self._max_keys = max_keys
        self._max_observations = max_observations

    @staticmethod
    def _make_key(name: str, labels: dict[str, str] | None = None) -> str:
        name = _sanitize_name(name)
        if not labels:
            return name
        label_str = ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"

    def _has_room(self, key: str, store: dict) -> bool:
        if key in store:
            return True
        total = len(self._counters) + len(self._gauges) + len(self._histograms)
        if total >= self._max_keys:
            log.debug("Metric key limit reached; dropping %s", key)
            return False
        return True

    def inc_counter(
        self,
        name: str,
        value: float = 1.0,
        labels: dict[str, str] | None = None,
    ) -> None:
        if value < 0:
            raise ValueError("Counter can only be incremented (value >= 0)")
        _validate_labels(labels)
        key = self._make_key(name, labels)
        with self._lock:
            if self._has_room(key, self._counters):
                self._counters[key] = self._counters.get(key, 0.0) + value

    def set_gauge(
        self,
        name: str,
        value: float,
        labels: dict[str, str] | None = None,
    ) -> None:
        _validate_labels(labels)
        key = self._make_key(name, labels)
        with self._lock:
            if self._has_room(key, self._gauges):
                self._gauges[key] = float(value)

    def observe(
        self,
        name: str,
        value: float,
        labels: dict[str, str] | None = None,
    ) -> None:
        _validate_labels(labels)
        key = self._make_key(name, labels)
        with self._lock:
            if not self._has_room(key, self._histograms):
                return
            series = self._histograms.get(key)
            if series is None:
                series = deque(maxlen=self._max_observations)
                self._histograms[key] = series
            series.append(float(value))

    def get_counter(self, name: str, labels: dict[str, str] | None = None) -> float:
        with self._lock:
            return self._counters.get(self._make_key(name, labels), 0.0)

    def get_gauge(self, name: str, labels: dict[str, str] | None = None) -> float | None:
        with self._lock:
            return self._gauges.get(self._make_key(name, labels))

    def get_histogram_summary(
        self,
        name: str,
        labels: dict[str, str] | None = None,
    ) -> dict[str, float]:
        with self._lock:
            series = self._histograms.get(self._make_key(name, labels))
            values = np.fromiter(series, dtype=float) if series else np.empty(0)
        return summarize(values)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            histograms = {k: np.fromiter(v, dtype=float) for k, v in self._histograms.items()}
            result: dict[str, Any] = {
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
            }
        result["histograms"] = {k: summarize(v) for k, v in histograms.items()}
        return result

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()


def summarize(values: np.ndarray) -> dict[str, float]:
    """count/mean/p50/p95/max of a 1-D array; zeros when empty."""
    if values.size == 0:
        return {"count": 0, "mean": 0.0, "p50": 0.0, "p95": 0.0, "max": 0.0}
    p50, p95 = np.percentile(values, [50, 95])
    return {
        "count": int(values.size),
        "mean": float(values.mean()),
        "p50": float(p50),
        "p95": float(p95),
        "max": float(values.max()),
    }
