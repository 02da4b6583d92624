# trading/position_lock.py
"""
Per-symbol locks that stop two signals from opening or closing the same
position at once. Acquisition never blocks: a busy symbol is skipped.
Locks release themselves after ``timeout`` seconds so a stuck holder cannot
freeze a symbol for the session.
"""
import threading
import time
from typing import Callable, Dict, List, Optional, TypeVar

from utils.logger import get_logger

log = get_logger(__name__)

T = TypeVar("T")

DEFAULT_LOCK_TIMEOUT = 5.0


class PositionLockManager:

    def __init__(
        self,
        timeout: float = DEFAULT_LOCK_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.timeout = float(timeout)
        self._clock = clock
        self._lock = threading.Lock()
        self._held: Dict[str, float] = {}  # symbol -> expiry

    def _expire_locked(self, symbol: str, now: float) -> None:
        expiry = self._held.get(symbol)
        if expiry is not None and now >= expiry:
            del self._held[symbol]
            log.warning(f"Position lock auto-released for {symbol} after timeout")

    def acquire(self, symbol: str) -> bool:
        """Take the lock for ``symbol``; False if someone else holds it."""
        now = self._clock()
        with self._lock:
            self._expire_locked(symbol, now)
            if symbol in self._held:
                log.warning(f"Position lock already held for {symbol}")
                return False
            self._held[symbol] = now + self.timeout
        log.debug(f"Position lock acquired for {symbol}")
        return True

    def release(self, symbol: str) -> None:
        with self._lock:
            self._held.pop(symbol, None)
        log.debug(f"Position lock released for {symbol}")

    def is_locked(self, symbol: str) -> bool:
        now = self._clock()
        with self._lock:
            self._expire_locked(symbol, now)
            return symbol in self._held

    def with_lock(self, symbol: str, fn: Callable[[], T]) -> Optional[T]:
        """Run ``fn`` holding the symbol lock. Returns None if the lock is busy."""
        if not self.acquire(symbol):
            log.warning(f"Could not acquire lock for {symbol}, operation skipped")
            return None
        try:
            return fn()
        finally:
            self.release(symbol)

    def locked_symbols(self) -> List[str]:
        now = self._clock()
        with self._lock:
            for symbol in list(self._held):
                self._expire_locked(symbol, now)
            return sorted(self._held)

    def release_all(self) -> None:
        log.warning("⚠️ Force releasing all position locks")
        with self._lock:
            self._held.clear()

    def get_stats(self) -> dict:
        symbols = self.locked_symbols()
        return {'active_locks': len(symbols), 'locked_symbols': symbols}
