# trading/kill_switch.py
import threading
from collections.abc import Callable
from datetime import datetime

from core.events import Event, EventBus, EventType
from utils.logger import get_logger

log = get_logger(__name__)


class KillSwitch:
    """System-wide safe-mode flag.

    Any code that places new orders must check ``can_trade`` first. The
    switch lives in memory only; the broker is the durable source of truth
    and reconciliation decides whether it is safe to release it.
    """

    def __init__(self, bus: EventBus | None = None) -> None:
        self._lock = threading.RLock()
        self._bus = bus

        self._active = False
        self._since: datetime | None = None
        self._owner = ""
        self._reason = ""
        self._activations = 0

        self._activate_hooks: list[Callable[[str], object]] = []
        self._release_hooks: list[Callable[[], object]] = []

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def can_trade(self) -> bool:
        return not self._active

    @property
    def reason(self) -> str:
        return self._reason

    def activate(self, reason: str, activated_by: str = "system") -> bool:
        """Enter safe mode. Returns False if already active.

        Hooks and the event run outside the lock so handlers may query
        the switch.
        """
        with self._lock:
            if self._active:
                return False
            self._active = True
            self._since = datetime.now()
            self._owner = activated_by
            self._reason = reason
            self._activations += 1
            hooks = list(self._activate_hooks)

        log.critical(f"🛑 KILL SWITCH ACTIVATED: {reason} (by {activated_by})")
        self._run_hooks(hooks, reason)
        self._publish(
            EventType.KILL_SWITCH_ACTIVATED, reason=reason, activated_by=activated_by,
        )
        return True

    def deactivate(self, deactivated_by: str = "system") -> bool:
        """Leave safe mode. Returns False if it was not active."""
        with self._lock:
            if not self._active:
                return False
            held_for = (datetime.now() - self._since).total_seconds() if self._since else 0.0
            self._active = False
            hooks = list(self._release_hooks)

        log.info(f"✅ Kill switch released by {deactivated_by} after {held_for:.0f}s")
        self._run_hooks(hooks)
        self._publish(
            EventType.KILL_SWITCH_DEACTIVATED,
            deactivated_by=deactivated_by,
            was_active_for=held_for,
        )
        return True

    @staticmethod
    def _run_hooks(hooks: list[Callable[..., object]], *args) -> None:
        for hook in hooks:
            try:
                hook(*args)
            except Exception as e:
                log.error(f"Kill switch hook {getattr(hook, '__qualname__', hook)!s} failed: {e}")

    def _publish(self, event_type: EventType, **data) -> None:
        if self._bus is not None:
            self._bus.publish(Event(type=event_type, source="kill_switch", data=data))

    def get_status(self) -> dict:
        with self._lock:
            return {
                "kill_switch_active": self._active,
                "can_trade": not self._active,
                "reason": self._reason,
                "activated_by": self._owner,
                "activated_at": self._since.isoformat() if self._since else None,
                "activation_count": self._activations,
            }

    def on_activate(self, callback: Callable[[str], object]) -> None:
        with self._lock:
            self._activate_hooks.append(callback)

    def on_deactivate(self, callback: Callable[[], object]) -> None:
        with self._lock:
            self._release_hooks.append(callback)
