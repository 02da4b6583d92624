# utils/cancellation.py
"""
Cooperative cancellation.

Loops and back-off sleeps wait on a CancellationToken instead of calling
time.sleep, so stopping a component wakes them up immediately. Nothing is
interrupted forcibly: a broker call already in flight runs to completion and
the owner checks the token afterwards.
"""
from __future__ import annotations

import threading
from typing import Callable, Optional

from utils.logger import get_logger

log = get_logger(__name__)


class CancelledException(Exception):
    """Raised when a cancellable operation is cancelled."""


class CancellationToken:
    """
    Thread-safe cancellation flag with callbacks.

    Usage:
        token = CancellationToken()

        # worker
        while not token.is_cancelled:
            do_work()
            if token.sleep(5.0):
                break

        # owner
        token.cancel()
    """

    def __init__(self) -> None:
        self._cancelled = threading.Event()
        self._callbacks: list[Callable[[], object]] = []
        self._lock = threading.Lock()

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        """Request cancellation and run callbacks once. Idempotent."""
        with self._lock:
            if self._cancelled.is_set():
                return
            self._cancelled.set()
            callbacks = list(self._callbacks)

        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                log.warning(f"Cancellation callback failed: {e}")

    def on_cancel(self, callback: Callable[[], object]) -> Callable[[], object]:
        """Register a callback; fires immediately if already cancelled."""
        with self._lock:
            already = self._cancelled.is_set()
            if not already:
                self._callbacks.append(callback)
        if already:
            callback()
        return callback

    def remove_callback(self, callback: Callable[[], object]) -> bool:
        with self._lock:
            try:
                self._callbacks.remove(callback)
                return True
            except ValueError:
                return False

    def raise_if_cancelled(self) -> None:
        if self._cancelled.is_set():
            raise CancelledException("Operation was cancelled")

    def sleep(self, seconds: float) -> bool:
        """Wait up to ``seconds``. Returns True if cancelled meanwhile."""
        if seconds <= 0:
            return self._cancelled.is_set()
        return self._cancelled.wait(seconds)

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._cancelled.wait(timeout)

    def reset(self) -> None:
        """Re-arm the token for reuse and drop callbacks."""
        with self._lock:
            self._cancelled.clear()
            self._callbacks.clear()
