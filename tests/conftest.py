# tests/conftest.py
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from core.events import EventBus, EventType  # noqa: E402
from trading.broker_sim import PaperBroker  # noqa: E402


class ManualClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += float(seconds)
        return self.now


class ManualTimers:
    """schedule_once stand-in; tests fire pending callbacks explicitly."""

    class Handle:
        def __init__(self, fn, name: str) -> None:
            self.fn = fn
            self.name = name
            self.cancelled = False

        def cancel(self) -> None:
            self.cancelled = True

    def __init__(self) -> None:
        self.handles = []

    def schedule_once(self, delay: float, fn, name: str = ""):
        handle = self.Handle(fn, name)
        self.handles.append(handle)
        return handle

    def pending(self) -> list:
        return [h for h in self.handles if not h.cancelled]

    def fire_all(self) -> int:
        fired = 0
        for handle in list(self.handles):
            if not handle.cancelled:
                handle.cancelled = True
                handle.fn()
                fired += 1
        return fired


class EventRecorder:
    def __init__(self, bus: EventBus) -> None:
        self.events = []
        self._subs = bus.subscribe_many(list(EventType), self.events.append)

    def of(self, event_type: EventType) -> list:
        return [e for e in self.events if e.type == event_type]

    def types(self) -> list:
        return [e.type for e in self.events]

    def clear(self) -> None:
        self.events.clear()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def recorder(bus):
    return EventRecorder(bus)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def timers():
    return ManualTimers()


@pytest.fixture
def broker():
    paper = PaperBroker(initial_balance=1_000_000.0)
    paper.connect()
    return paper
