# core/events.py
import queue
import threading
from collections import defaultdict, deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from typing import Any

from utils.logger import get_logger

log = get_logger(__name__)


class EventType(Enum):
    """All event types published by the execution layer."""
    # Order lifecycle
    ORDER_STATE_CHANGED = auto()
    ORDER_FILLED = auto()
    ORDER_PARTIALLY_FILLED = auto()
    ORDER_REJECTED = auto()
    ORDER_CANCELLED = auto()
    ORDER_FAILED = auto()
    ORDER_TIMEOUT = auto()
    CHILD_ORDERS_CANCELLED = auto()
    DUPLICATE_ORDER_PREVENTED = auto()

    # Order reconciliation
    ORDER_UPDATE = auto()
    ORDER_RECONCILIATION_FAILED = auto()
    UNTRACKED_ORDER_FOUND = auto()
    RECONCILIATION_ERROR = auto()

    # Position reconciliation
    RECONCILIATION_MISMATCH = auto()
    RECONCILIATION_CRITICAL = auto()
    ORPHANED_POSITION = auto()

    # Circuit breakers
    CIRCUIT_BREAKER_STATE_CHANGED = auto()
    CIRCUIT_BREAKER_OPEN = auto()
    CIRCUIT_BREAKER_HALF_OPEN = auto()
    CIRCUIT_BREAKER_CLOSED = auto()

    # Broker health and safe mode
    BROKER_HEALTH_CHANGED = auto()
    BROKER_DOWN = auto()
    BROKER_RECOVERED = auto()
    RECOVERY_ATTEMPT = auto()
    RECOVERY_FAILED = auto()
    POSITION_MISMATCH = auto()
    SAFE_MODE_ACTIVATED = auto()
    SAFE_MODE_DEACTIVATED = auto()
    KILL_SWITCH_ACTIVATED = auto()
    KILL_SWITCH_DEACTIVATED = auto()

    # Error recovery
    ERROR_RECORDED = auto()
    RECOVERY_COMPLETED = auto()

    ERROR = auto()


@dataclass
class Event:
    """Base event class."""
    type: EventType = EventType.ERROR
    timestamp: datetime = field(default_factory=datetime.now)
    source: str = ""
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class OrderEvent(Event):
    """Order lifecycle event."""
    type: EventType = EventType.ORDER_STATE_CHANGED
    order_id: str = ""
    symbol: str = ""
    from_state: str = ""
    to_state: str = ""
    reason: str = ""


@dataclass
class BreakerEvent(Event):
    """Circuit breaker state change."""
    type: EventType = EventType.CIRCUIT_BREAKER_STATE_CHANGED
    breaker: str = ""
    from_state: str = ""
    to_state: str = ""


Handler = Callable[[Event], None]


class Subscription:
    """Handle returned by EventBus.subscribe; ``cancel()`` removes the handler."""

    def __init__(self, bus: "EventBus", event_type: EventType, handler: Handler) -> None:
        self._bus = bus
        self.event_type = event_type
        self.handler = handler
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self) -> None:
        if self._active:
            self._active = False
            self._bus.unsubscribe(self.event_type, self.handler)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.cancel()


class EventBus:
    """Publish/subscribe channel shared by the components of one runtime.

    Thread-safe. Dispatch is synchronous unless ``start()`` was called, in
    which case events are delivered from a single worker thread in publish
    order. Handler failures are logged and republished once as ERROR events.
    """

    def __init__(
        self,
        max_history: int = 1000,
        max_handlers_per_type: int = 64,
    ) -> None:
        self._subscribers: dict[EventType, list[Handler]] = defaultdict(list)
        self._sub_lock = threading.RLock()
        self._max_handlers = max_handlers_per_type

        self._queue: queue.Queue = queue.Queue()
        self._running = False
        self._worker_thread: threading.Thread | None = None

        self._history: deque[Event] = deque(maxlen=max_history)
        self._error_depth = threading.local()

    def subscribe(self, event_type: EventType, handler: Handler) -> Subscription:
        """Register a handler. Raises ValueError when the per-type cap is reached."""
        with self._sub_lock:
            handlers = self._subscribers[event_type]
            if handler not in handlers:
                if len(handlers) >= self._max_handlers:
                    raise ValueError(
                        f"Too many handlers for {event_type.name} "
                        f"(max {self._max_handlers})"
                    )
                handlers.append(handler)
        return Subscription(self, event_type, handler)

    def subscribe_many(
        self,
        event_types: Iterable[EventType],
        handler: Handler,
    ) -> list[Subscription]:
        return [self.subscribe(t, handler) for t in event_types]

    def unsubscribe(self, event_type: EventType, handler: Handler) -> None:
        with self._sub_lock:
            try:
                self._subscribers[event_type].remove(handler)
            except ValueError:
                pass

    def clear_subscribers(self, event_type: EventType | None = None) -> None:
        with self._sub_lock:
            if event_type is not None:
                self._subscribers[event_type].clear()
            else:
                self._subscribers.clear()

    def handler_count(self, event_type: EventType) -> int:
        with self._sub_lock:
            return len(self._subscribers.get(event_type, []))

    def publish(self, event: Event) -> None:
        self._history.append(event)
        if self._running:
            self._queue.put(event)
        else:
            self._dispatch(event)

    def emit(self, event_type: EventType, source: str = "", **data: Any) -> Event:
        """Build and publish a plain Event."""
        event = Event(type=event_type, source=source, data=data)
        self.publish(event)
        return event

    def _dispatch(self, event: Event) -> None:
        with self._sub_lock:
            handlers = list(self._subscribers.get(event.type, []))

        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                log.error(f"Event handler failed for {event.type.name}: {e}")
                if event.type != EventType.ERROR:
                    self._publish_handler_error(event, handler, e)

    def _publish_handler_error(self, event: Event, handler: Handler, error: Exception) -> None:
        depth = getattr(self._error_depth, "value", 0)
        if depth >= 1:
            return
        self._error_depth.value = depth + 1
        try:
            self._dispatch(Event(
                type=EventType.ERROR,
                source="event_bus",
                data={
                    "error": str(error),
                    "handler": getattr(handler, "__qualname__", repr(handler)),
                    "original_event_type": event.type.name,
                },
            ))
        finally:
            self._error_depth.value = depth

    def start(self) -> None:
        """Switch to asynchronous delivery on a worker thread."""
        if self._running:
            return
        self._running = True
        self._worker_thread = threading.Thread(
            target=self._worker, daemon=True, name="event_bus_worker"
        )
        self._worker_thread.start()

    def stop(self) -> None:
        """Stop the worker and deliver anything still queued."""
        if not self._running:
            return
        self._running = False
        self._queue.put(None)
        if self._worker_thread:
            self._worker_thread.join(timeout=5)
            self._worker_thread = None

        while True:
            try:
                event = self._queue.get_nowait()
            except queue.Empty:
                break
            if event is not None:
                self._dispatch(event)

    def _worker(self) -> None:
        while self._running:
            try:
                event = self._queue.get(timeout=0.1)
            except queue.Empty:
                continue
            if event is None:
                break
            self._dispatch(event)

    def get_history(
        self,
        event_type: EventType | None = None,
        limit: int = 100,
    ) -> list[Event]:
        snapshot = list(self._history)
        if event_type is not None:
            snapshot = [e for e in snapshot if e.type == event_type]
        return snapshot[-limit:]

    def clear_history(self) -> None:
        self._history.clear()

    @property
    def is_running(self) -> bool:
        return self._running
