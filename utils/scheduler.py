# utils/scheduler.py
"""
Cancellable periodic tasks and one-shot timers.

Every background loop in the execution layer (health probe, order and
position reconciliation, idempotency sweep) is a PeriodicTask owned by a
Scheduler. Stopping a task wakes its wait immediately and joins the thread,
so an iteration that is already running finishes before ``stop`` returns.
"""
from __future__ import annotations

import threading
from typing import Callable, Optional

from utils.cancellation import CancellationToken
from utils.logger import get_logger

log = get_logger(__name__)


class PeriodicTask:
    """Runs ``fn`` every ``interval`` seconds on a daemon thread."""

    def __init__(
        self,
        name: str,
        interval: float,
        fn: Callable[[], object],
        run_immediately: bool = False,
    ) -> None:
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self.name = name
        self.interval = float(interval)
        self._fn = fn
        self._run_immediately = run_immediately
        self._token = CancellationToken()
        self._run_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._iterations = 0
        self._errors = 0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def iterations(self) -> int:
        return self._iterations

    @property
    def errors(self) -> int:
        return self._errors

    def start(self) -> "PeriodicTask":
        if self.is_running:
            return self
        self._token.reset()
        self._thread = threading.Thread(
            target=self._loop, daemon=True, name=f"task:{self.name}"
        )
        self._thread.start()
        log.debug(f"Periodic task started: {self.name} every {self.interval}s")
        return self

    def stop(self, timeout: Optional[float] = 10.0) -> None:
        """Stop the loop and wait for an in-flight iteration to finish."""
        self._token.cancel()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
            if thread.is_alive():
                log.warning(f"Periodic task {self.name} did not stop within {timeout}s")

    def run_once(self) -> None:
        """Run one iteration now, serialised with the loop."""
        with self._run_lock:
            self._iterations += 1
            try:
                self._fn()
            except Exception as e:
                self._errors += 1
                log.error(f"Periodic task {self.name} failed: {e}")

    def _loop(self) -> None:
        if self._run_immediately and not self._token.is_cancelled:
            self.run_once()
        while not self._token.sleep(self.interval):
            self.run_once()


class TimerHandle:
    """One-shot timer. ``cancel()`` returns True only if the callback had not run."""

    def __init__(
        self,
        delay: float,
        fn: Callable[[], object],
        name: str = "",
        on_done: Optional[Callable[["TimerHandle"], None]] = None,
    ) -> None:
        self.name = name
        self.delay = max(0.0, float(delay))
        self._fn = fn
        self._on_done = on_done
        self._lock = threading.Lock()
        self._state = "pending"
        self._timer = threading.Timer(self.delay, self._fire)
        self._timer.daemon = True

    @property
    def pending(self) -> bool:
        return self._state == "pending"

    @property
    def fired(self) -> bool:
        return self._state == "fired"

    def start(self) -> "TimerHandle":
        self._timer.start()
        return self

    def cancel(self) -> bool:
        with self._lock:
            if self._state != "pending":
                return False
            self._state = "cancelled"
        self._timer.cancel()
        if self._on_done:
            self._on_done(self)
        return True

    def _fire(self) -> None:
        with self._lock:
            if self._state != "pending":
                return
            self._state = "fired"
        try:
            self._fn()
        except Exception as e:
            log.error(f"Timer {self.name or 'anonymous'} failed: {e}")
        finally:
            if self._on_done:
                self._on_done(self)


class Scheduler:
    """Owns the periodic tasks and pending timers of one runtime."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tasks: dict[str, PeriodicTask] = {}
        self._timers: set[TimerHandle] = set()

    def every(
        self,
        name: str,
        interval: float,
        fn: Callable[[], object],
        run_immediately: bool = False,
    ) -> PeriodicTask:
        """Start a named periodic task, replacing one with the same name."""
        task = PeriodicTask(name, interval, fn, run_immediately=run_immediately)
        with self._lock:
            previous = self._tasks.pop(name, None)
            self._tasks[name] = task
        if previous is not None:
            previous.stop()
        return task.start()

    def cancel_task(self, name: str) -> bool:
        with self._lock:
            task = self._tasks.pop(name, None)
        if task is None:
            return False
        task.stop()
        return True

    def schedule_once(
        self,
        delay: float,
        fn: Callable[[], object],
        name: str = "",
    ) -> TimerHandle:
        handle = TimerHandle(delay, fn, name=name, on_done=self._forget)
        with self._lock:
            self._timers.add(handle)
        return handle.start()

    def _forget(self, handle: TimerHandle) -> None:
        with self._lock:
            self._timers.discard(handle)

    @property
    def pending_timers(self) -> int:
        with self._lock:
            return len(self._timers)

    def task_names(self) -> list[str]:
        with self._lock:
            return sorted(self._tasks)

    def shutdown(self) -> None:
        """Stop every periodic task and cancel every pending timer."""
        with self._lock:
            tasks = list(self._tasks.values())
            timers = list(self._timers)
            self._tasks.clear()
        for timer in timers:
            timer.cancel()
        for task in tasks:
            task.stop()
