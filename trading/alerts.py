# trading/alerts.py
"""
Operator alerts for the resilience layer.

Critical bus events (breaker trips, broker outages, safe mode, persistent
reconciliation drift) are mapped to alerts through ``ALERT_RULES`` and
delivered to the log and, when configured, a JSON webhook. Per-subject
throttling keeps a flapping symbol or breaker from flooding the channel;
rules marked unthrottled (outages, safe mode) always go out.
"""
from __future__ import annotations

import queue
import threading
import uuid
from collections import Counter, deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

import requests

from config.settings import AlertConfig
from core.events import Event, EventBus, EventType, Subscription
from utils.logger import get_logger

log = get_logger(__name__)


class AlertPriority(Enum):
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4


class AlertChannel(Enum):
    LOG = "log"
    WEBHOOK = "webhook"


class AlertCategory(Enum):
    CONNECTION = "connection"
    TRADING = "trading"
    RECONCILIATION = "reconciliation"
    SYSTEM = "system"


@dataclass
class Alert:
    category: AlertCategory = AlertCategory.SYSTEM
    priority: AlertPriority = AlertPriority.MEDIUM
    title: str = ""
    message: str = ""
    details: dict = field(default_factory=dict)
    channels: list[AlertChannel] = field(default_factory=lambda: [AlertChannel.LOG])
    throttle_key: str = ""
    alert_id: str = field(default_factory=lambda: f"ALERT_{uuid.uuid4().hex[:12].upper()}")
    raised_at: datetime = field(default_factory=datetime.now)
    delivered_at: datetime | None = None

    @property
    def repeat_key(self) -> str:
        return f"{self.category.value}:{self.throttle_key or self.title}"

    def to_dict(self) -> dict:
        return {
            "alert_id": self.alert_id,
            "category": self.category.value,
            "priority": self.priority.name,
            "title": self.title,
            "message": self.message,
            "details": self.details,
            "raised_at": self.raised_at.isoformat(),
        }


@dataclass(frozen=True)
class AlertRule:
    category: AlertCategory
    priority: AlertPriority
    title: str
    throttled: bool = True


ALERT_RULES: dict[EventType, AlertRule] = {
    EventType.CIRCUIT_BREAKER_OPEN: AlertRule(
        AlertCategory.CONNECTION, AlertPriority.HIGH, "Circuit breaker open",
    ),
    EventType.BROKER_DOWN: AlertRule(
        AlertCategory.CONNECTION, AlertPriority.CRITICAL, "Broker down", throttled=False,
    ),
    EventType.BROKER_RECOVERED: AlertRule(
        AlertCategory.CONNECTION, AlertPriority.MEDIUM, "Broker recovered", throttled=False,
    ),
    EventType.SAFE_MODE_ACTIVATED: AlertRule(
        AlertCategory.TRADING, AlertPriority.CRITICAL, "Safe mode activated", throttled=False,
    ),
    EventType.RECONCILIATION_CRITICAL: AlertRule(
        AlertCategory.RECONCILIATION, AlertPriority.CRITICAL,
        "Persistent position mismatch", throttled=False,
    ),
    EventType.ORPHANED_POSITION: AlertRule(
        AlertCategory.RECONCILIATION, AlertPriority.HIGH, "Orphaned position",
    ),
    EventType.POSITION_MISMATCH: AlertRule(
        AlertCategory.RECONCILIATION, AlertPriority.HIGH, "Position count changed during outage",
    ),
    EventType.ORDER_RECONCILIATION_FAILED: AlertRule(
        AlertCategory.RECONCILIATION, AlertPriority.HIGH, "Order lost at broker",
    ),
}

# Minimum gap between two alerts with the same throttle key.
THROTTLE_WINDOWS: dict[AlertPriority, timedelta] = {
    AlertPriority.LOW: timedelta(minutes=30),
    AlertPriority.MEDIUM: timedelta(minutes=10),
    AlertPriority.HIGH: timedelta(minutes=2),
    AlertPriority.CRITICAL: timedelta(seconds=30),
}

ESCALATE_AFTER_REPEATS = 3


class AlertThrottler:
    """Remembers when each throttle key last went out."""

    def __init__(
        self,
        windows: dict[AlertPriority, timedelta] | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._windows = dict(windows or THROTTLE_WINDOWS)
        self._clock = clock
        self._lock = threading.Lock()
        self._last_sent: dict[str, datetime] = {}

    def should_send(self, alert: Alert) -> bool:
        if not alert.throttle_key:
            return True
        window = self._windows.get(alert.priority, timedelta(minutes=5))
        key = alert.repeat_key
        with self._lock:
            now = self._clock()
            previous = self._last_sent.get(key)
            if previous is not None and now - previous <= window:
                return False
            self._last_sent[key] = now
            return True

    def reset(self, throttle_key: str | None = None):
        with self._lock:
            if throttle_key is None:
                self._last_sent.clear()
                return
            self._last_sent = {
                k: v for k, v in self._last_sent.items() if throttle_key not in k
            }


@dataclass
class ChannelStats:
    sent: int = 0
    failed: int = 0
    last_sent_at: str | None = None
    last_error: str = ""

    def to_dict(self) -> dict:
        return {
            "sent": self.sent,
            "failed": self.failed,
            "last_sent_at": self.last_sent_at,
            "last_error": self.last_error,
        }


class AlertManager:
    """Turns critical resilience events into alerts on the log and a webhook.

    Delivery is synchronous until ``start()`` is called; after that alerts
    go through a queue drained by one worker thread so a slow webhook never
    blocks the component that published the event. A MEDIUM alert seen for
    the third time is raised to HIGH.
    """

    def __init__(
        self,
        config: AlertConfig | None = None,
        bus: EventBus | None = None,
        post: Callable[..., Any] = requests.post,
        throttler: AlertThrottler | None = None,
    ):
        self.config = config or AlertConfig()
        self._bus = bus
        self._post = post
        self._throttler = throttler or AlertThrottler()

        self._lock = threading.RLock()
        self._history: deque[Alert] = deque(maxlen=self.config.max_history)
        self._repeats: Counter[str] = Counter()
        self._channels: dict[AlertChannel, ChannelStats] = {}
        self._throttled = 0

        self._queue: queue.Queue[Alert | None] = queue.Queue()
        self._worker: threading.Thread | None = None
        self._subscriptions: list[Subscription] = []

    # ------------------------------------------------------------------
    # Bus wiring
    # ------------------------------------------------------------------

    def attach(self) -> None:
        """Subscribe to every event that has an alert rule."""
        if self._bus is None or self._subscriptions:
            return
        self._subscriptions = self._bus.subscribe_many(list(ALERT_RULES), self.on_event)

    def detach(self) -> None:
        for sub in self._subscriptions:
            sub.cancel()
        self._subscriptions = []

    def on_event(self, event: Event) -> None:
        rule = ALERT_RULES.get(event.type)
        if rule is None or not self.config.enabled:
            return
        subject = str(
            getattr(event, "breaker", "")
            or event.data.get("symbol")
            or event.data.get("order_id")
            or ""
        )
        reason = str(event.data.get("reason") or event.data.get("details") or "")
        message = " - ".join(p for p in (subject, reason) if p) or event.type.name

        self.send(Alert(
            category=rule.category,
            priority=rule.priority,
            title=rule.title,
            message=message,
            details={"event": event.type.name, "source": event.source, **event.data},
            channels=[AlertChannel.LOG, AlertChannel.WEBHOOK],
            throttle_key=f"{event.type.name}:{subject}" if rule.throttled else "",
        ))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._worker is not None

    def start(self):
        if self._worker is not None:
            return
        self._worker = threading.Thread(target=self._drain, daemon=True, name="alerts")
        self._worker.start()
        log.info("Alert delivery worker started")

    def stop(self):
        """Detach from the bus and flush queued alerts."""
        self.detach()
        worker, self._worker = self._worker, None
        if worker is None:
            return
        self._queue.put(None)
        worker.join(timeout=5)
        log.info("Alert delivery worker stopped")

    def send(self, alert: Alert):
        if self._worker is not None:
            self._queue.put(alert)
        else:
            self._deliver(alert)

    def _drain(self):
        while True:
            alert = self._queue.get()
            if alert is None:
                return
            try:
                self._deliver(alert)
            except Exception as e:
                log.error(f"Alert delivery crashed for '{alert.title}': {e}")

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def _deliver(self, alert: Alert):
        with self._lock:
            self._repeats[alert.repeat_key] += 1
            seen = self._repeats[alert.repeat_key]
        if alert.priority == AlertPriority.MEDIUM and seen >= ESCALATE_AFTER_REPEATS:
            alert.priority = AlertPriority.HIGH

        if not self._throttler.should_send(alert):
            with self._lock:
                self._throttled += 1
            log.debug(f"Alert suppressed by throttle: {alert.repeat_key}")
            return

        for channel in alert.channels:
            try:
                if channel == AlertChannel.LOG:
                    self._to_log(alert)
                elif not self._to_webhook(alert):
                    continue
            except requests.RequestException as e:
                self._record(channel, error=str(e))
                log.error(f"Alert channel {channel.value} failed: {e}")
                continue
            self._record(channel)

        alert.delivered_at = datetime.now()
        with self._lock:
            self._history.append(alert)

    def _record(self, channel: AlertChannel, error: str = "") -> None:
        with self._lock:
            stats = self._channels.setdefault(channel, ChannelStats())
            if error:
                stats.failed += 1
                stats.last_error = error[:300]
            else:
                stats.sent += 1
                stats.last_sent_at = datetime.now().isoformat()

    @staticmethod
    def _to_log(alert: Alert):
        emit = {
            AlertPriority.LOW: log.info,
            AlertPriority.MEDIUM: log.warning,
            AlertPriority.HIGH: log.error,
            AlertPriority.CRITICAL: log.critical,
        }[alert.priority]
        emit(f"🚨 [{alert.category.value.upper()}] {alert.title}: {alert.message}")

    def _to_webhook(self, alert: Alert) -> bool:
        """POST the alert as JSON, one retry. False when no webhook is configured."""
        if not (self.config.webhook_enabled and self.config.webhook_url):
            return False
        body = {
            "system": "trading_resilience",
            "alert": alert.to_dict(),
            "timestamp": datetime.now().isoformat(),
        }
        for attempt in (1, 2):
            try:
                response = self._post(
                    self.config.webhook_url,
                    json=body,
                    timeout=self.config.webhook_timeout_seconds,
                )
                response.raise_for_status()
            except requests.RequestException as e:
                if attempt == 2:
                    raise
                log.warning(f"Webhook delivery failed, retrying: {e}")
                continue
            log.info(f"Webhook alert delivered: {alert.title}")
            return True
        return False

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_history(
        self,
        category: AlertCategory | None = None,
        priority: AlertPriority | None = None,
        limit: int = 100,
    ) -> list[Alert]:
        with self._lock:
            alerts = list(self._history)
        alerts = [
            a for a in alerts
            if (category is None or a.category == category)
            and (priority is None or a.priority == priority)
        ]
        return alerts[-limit:]

    def get_alert_stats(self) -> dict[str, Any]:
        with self._lock:
            history = list(self._history)
            repeats = [(k, n) for k, n in self._repeats.most_common(10) if n > 1]
            return {
                "total": len(history),
                "throttled": self._throttled,
                "by_priority": dict(Counter(a.priority.name for a in history)),
                "by_category": dict(Counter(a.category.value for a in history)),
                "channel_delivery": {
                    ch.value: stats.to_dict() for ch, stats in self._channels.items()
                },
                "top_repeats": [{"key": k, "count": n} for k, n in repeats],
            }
