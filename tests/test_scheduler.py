import threading

import pytest

from utils.cancellation import CancellationToken, CancelledException
from utils.scheduler import PeriodicTask, Scheduler, TimerHandle


def test_periodic_task_runs_immediately_and_stops() -> None:
    ran = threading.Event()
    scheduler = Scheduler()
    task = scheduler.every("probe", 60.0, ran.set, run_immediately=True)

    assert ran.wait(5)
    assert scheduler.task_names() == ["probe"]
    assert scheduler.cancel_task("probe")
    assert not task.is_running
    assert not scheduler.cancel_task("probe")


def test_periodic_task_survives_failures() -> None:
    calls = []

    def flaky() -> None:
        calls.append(1)
        raise RuntimeError("boom")

    task = PeriodicTask("flaky", 1.0, flaky)
    task.run_once()
    task.run_once()
    assert task.iterations == 2
    assert task.errors == 2

    with pytest.raises(ValueError):
        PeriodicTask("bad", 0, flaky)


def test_replacing_a_task_stops_the_old_one() -> None:
    scheduler = Scheduler()
    first = scheduler.every("sweep", 60.0, lambda: None)
    second = scheduler.every("sweep", 60.0, lambda: None)

    assert not first.is_running
    assert second.is_running
    scheduler.shutdown()
    assert not second.is_running
    assert scheduler.task_names() == []


def test_timer_fires_once() -> None:
    fired = threading.Event()
    scheduler = Scheduler()
    handle = scheduler.schedule_once(0.01, fired.set, name="quick")

    assert fired.wait(5)
    assert not handle.cancel()
    assert handle.fired


def test_cancelled_timer_never_fires() -> None:
    calls = []
    scheduler = Scheduler()
    handle = scheduler.schedule_once(60.0, lambda: calls.append(1))
    assert scheduler.pending_timers == 1

    assert handle.cancel()
    assert scheduler.pending_timers == 0
    assert calls == []


def test_shutdown_cancels_pending_timers() -> None:
    scheduler = Scheduler()
    handles = [scheduler.schedule_once(60.0, lambda: None) for _ in range(3)]
    scheduler.shutdown()
    assert scheduler.pending_timers == 0
    assert not any(h.pending for h in handles)


def test_timer_errors_are_contained() -> None:
    done = threading.Event()

    def boom() -> None:
        raise RuntimeError("timer failed")

    handle = TimerHandle(0.0, boom, on_done=lambda h: done.set()).start()
    assert done.wait(5)
    assert handle.fired


def test_cancellation_token() -> None:
    token = CancellationToken()
    seen = []
    token.on_cancel(lambda: seen.append("a"))

    assert not token.sleep(0)
    token.cancel()
    token.cancel()
    assert seen == ["a"]
    assert token.sleep(60)
    with pytest.raises(CancelledException):
        token.raise_if_cancelled()

    token.on_cancel(lambda: seen.append("late"))
    assert seen == ["a", "late"]

    token.reset()
    assert not token.is_cancelled
