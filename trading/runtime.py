"""
Composition root for the resilience layer.

Builds every component exactly once around one ``Broker`` and wires the
cross-component hooks:

- order registry fills  -> position book
- broker_connection breaker OPEN -> error recovery reconnect
- broker health DOWN / recovered -> kill switch and both reconciliations
- critical events -> alerts

Usage:
    runtime = ResilienceRuntime(PaperBroker())
    runtime.start()
    record = runtime.gateway.place_order(Order(symbol="RELIANCE", ...))
    runtime.stop()
"""
from __future__ import annotations

import threading
from typing import Any, Optional

from config.settings import Config
from core.events import EventBus, EventType, Subscription
from trading.alerts import AlertManager
from trading.broker_base import Broker
from trading.circuit_breaker import (
    BROKER_CONNECTION,
    DATA_FETCH,
    ORDER_PLACEMENT,
    CircuitBreakerRegistry,
)
from trading.error_recovery import ErrorRecoveryService
from trading.gateway import ExecutionGateway
from trading.health import BrokerHealthMonitor
from trading.idempotency import IdempotencyGuard
from trading.kill_switch import KillSwitch
from trading.oms import OrderRegistry
from trading.order_reconciliation import OrderReconciler
from trading.portfolio import PositionBook
from trading.position_lock import PositionLockManager
from trading.position_reconciliation import PositionReconciler
from trading.retry import RetryExecutor, RetryPolicy
from utils.logger import get_logger
from utils.metrics import MetricsRegistry
from utils.scheduler import Scheduler

log = get_logger(__name__)


class ResilienceRuntime:
    """Owns the lifetime of every resilience component for one broker."""

    def __init__(
        self,
        broker: Broker,
        config: Optional[Config] = None,
        bus: Optional[EventBus] = None,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self.broker = broker
        self.config = config or Config()
        self.bus = bus or EventBus()
        self.metrics = metrics or MetricsRegistry()
        self.scheduler = Scheduler()

        cfg = self.config
        self.breakers = CircuitBreakerRegistry(self.bus, cfg, metrics=self.metrics)
        for name in (ORDER_PLACEMENT, DATA_FETCH, BROKER_CONNECTION):
            self.breakers.get_or_create(name)

        self.retry = RetryExecutor(RetryPolicy.from_config(cfg.retry), metrics=self.metrics)
        self.kill_switch = KillSwitch(self.bus)
        self.idempotency = IdempotencyGuard(cfg.idempotency, self.bus, scheduler=self.scheduler)
        self.registry = OrderRegistry(cfg.orders, self.bus, self.scheduler, self.metrics)
        self.book = PositionBook()
        self.locks = PositionLockManager()

        self.gateway = ExecutionGateway(
            broker,
            self.registry,
            self.idempotency,
            self.breakers,
            self.kill_switch,
            retry=self.retry,
            locks=self.locks,
        )
        self.position_reconciler = PositionReconciler(
            self.gateway.fetch_positions,
            self.book,
            cfg.reconciliation,
            self.bus,
            self.scheduler,
            self.metrics,
        )
        self.order_reconciler = OrderReconciler(
            self.registry,
            self.gateway.fetch_orders,
            cfg.reconciliation,
            self.bus,
            self.scheduler,
            self.metrics,
        )
        # The probe goes straight to the broker: an open breaker must not
        # hide a recovered broker from the health monitor.
        self.health = BrokerHealthMonitor(
            broker.get_account_balance,
            broker,
            self.kill_switch,
            cfg.health,
            self.bus,
            self.scheduler,
            self.metrics,
            positions_provider=self.book.get_all,
            position_reconciler=self.position_reconciler,
            order_reconciler=self.order_reconciler,
        )
        self.recovery = ErrorRecoveryService(
            connection=broker,
            kill_switch=self.kill_switch,
            position_reconciler=self.position_reconciler,
            breakers=self.breakers,
            config=cfg.recovery,
            bus=self.bus,
        )
        self.alerts = AlertManager(cfg.alerts, self.bus)

        self._lock = threading.Lock()
        self._started = False
        self._subscriptions: list[Subscription] = []
        self._wire()

    def _wire(self) -> None:
        self._subscriptions.extend(self.bus.subscribe_many(
            [EventType.ORDER_FILLED, EventType.ORDER_PARTIALLY_FILLED],
            self.book.on_fill_event,
        ))
        self._subscriptions.append(
            self.bus.subscribe(EventType.ORDER_STATE_CHANGED, self.book.on_order_closed)
        )
        self._subscriptions.append(
            self.bus.subscribe(EventType.CIRCUIT_BREAKER_OPEN, self.recovery.on_breaker_open)
        )
        self.alerts.attach()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, connect: bool = True) -> None:
        """Connect, resync from the broker, then start every loop."""
        with self._lock:
            if self._started:
                return
            self._started = True

        log.info(f"Starting resilience runtime for {self.broker.name}")
        if connect:
            try:
                self.gateway.connect()
            except Exception:
                with self._lock:
                    self._started = False
                raise
            try:
                self.position_reconciler.sync_from_broker()
                self.order_reconciler.perform_full_reconciliation()
            except Exception as e:
                # Health monitoring will notice a dead broker; start anyway.
                log.error(f"Initial resync failed: {e}")

        self.recovery.start()
        self.alerts.attach()
        self.alerts.start()
        self.idempotency.start()
        self.order_reconciler.start()
        self.position_reconciler.start()
        self.health.start()
        log.info("✅ Resilience runtime started")

    def stop(self) -> None:
        """Stop loops and timers in reverse start order. Safe to call twice."""
        with self._lock:
            if not self._started:
                return
            self._started = False

        log.info("Stopping resilience runtime")
        self.health.stop()
        self.position_reconciler.stop()
        self.order_reconciler.stop()
        self.idempotency.stop()
        self.recovery.stop()
        self.alerts.stop()
        self.registry.shutdown()
        self.scheduler.shutdown()
        log.info("Resilience runtime stopped")

    def close(self) -> None:
        """Stop and drop the runtime's bus subscriptions."""
        self.stop()
        for sub in self._subscriptions:
            sub.cancel()
        self._subscriptions.clear()
        self.alerts.detach()

    @property
    def is_running(self) -> bool:
        return self._started

    def get_status(self) -> dict[str, Any]:
        return {
            "running": self._started,
            "broker": self.broker.name,
            "kill_switch": self.kill_switch.get_status(),
            "health": self.health.get_stats(),
            "breakers": self.breakers.get_all_stats(),
            "orders": self.registry.get_statistics(),
            "idempotency": self.idempotency.get_stats(),
            "order_reconciliation": self.order_reconciler.get_status(),
            "position_reconciliation": self.position_reconciler.get_status(),
            "positions": [p.to_dict() for p in self.book.get_all()],
            "errors": self.recovery.get_error_stats(),
            "alerts": self.alerts.get_alert_stats(),
            "metrics": self.metrics.snapshot(),
        }
