"""
Duplicate-order protection.

An intent is fingerprinted as ``symbol_action_quantity_bucket`` where the
bucket is wall-clock time floored to ``bucket_seconds``. Retries, double
clicks and racing strategy threads that produce the same fingerprint are
refused while the first attempt is pending or was settled only moments ago.
"""
from __future__ import annotations

import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Optional

from config.settings import IdempotencyConfig
from core.events import EventBus, EventType
from utils.logger import format_fields, get_logger
from utils.scheduler import Scheduler

log = get_logger(__name__)

NOT_FOUND = "NOT_FOUND"


class IdempotencyStatus(Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass
class IdempotencyRecord:
    key: str
    status: IdempotencyStatus
    created_at: float
    completed_at: Optional[float] = None
    broker_order_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "status": self.status.value,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
            "broker_order_id": self.broker_order_id,
            "error": self.error,
        }


class IdempotencyGuard:
    """Thread-safe table of recent order intents."""

    def __init__(
        self,
        config: Optional[IdempotencyConfig] = None,
        bus: Optional[EventBus] = None,
        clock: Callable[[], float] = time.time,
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        self.config = config or IdempotencyConfig()
        self._bus = bus
        self._clock = clock
        self._scheduler = scheduler
        self._owns_scheduler = False
        self._lock = threading.RLock()
        self._records: dict[str, IdempotencyRecord] = {}
        self._duplicates_prevented = 0

    def generate_key(self, symbol: str, action: str, quantity: int | float) -> str:
        bucket = int(math.floor(self._clock() / self.config.bucket_seconds))
        return f"{symbol}_{action}_{quantity}_{bucket}"

    def can_proceed(self, key: str) -> bool:
        """Admit ``key`` (registering it PENDING) or refuse it as a duplicate."""
        reason = None
        with self._lock:
            now = self._clock()
            existing = self._records.get(key)
            if existing is not None:
                age = now - existing.created_at
                if existing.status == IdempotencyStatus.PENDING:
                    reason = "Order still pending"
                elif age < self.config.rearm_seconds:
                    reason = "Too soon after previous order"
                else:
                    log.info(
                        "Allowing order, previous attempt is old enough: "
                        + format_fields(key=key, age=age, previous=existing.status.value)
                    )

            if reason is None:
                self._records[key] = IdempotencyRecord(
                    key=key, status=IdempotencyStatus.PENDING, created_at=now,
                )
                return True

            self._duplicates_prevented += 1
            previous_status = existing.status.value

        log.warning(f"Duplicate order attempt prevented: {reason} ({key})")
        if self._bus is not None:
            self._bus.emit(
                EventType.DUPLICATE_ORDER_PREVENTED,
                source="idempotency",
                key=key,
                reason=reason,
                previous_status=previous_status,
            )
        return False

    def mark_completed(self, key: str, broker_order_id: Optional[str] = None) -> None:
        with self._lock:
            record = self._records.get(key)
            if record is None:
                return
            record.status = IdempotencyStatus.COMPLETED
            record.broker_order_id = broker_order_id
            record.completed_at = self._clock()
        log.debug(f"Idempotency key completed: {format_fields(key=key, order_id=broker_order_id)}")

    def mark_failed(self, key: str, error: Optional[str] = None) -> None:
        with self._lock:
            record = self._records.get(key)
            if record is None:
                return
            record.status = IdempotencyStatus.FAILED
            record.error = error
            record.completed_at = self._clock()
        log.debug(f"Idempotency key failed: {format_fields(key=key, error=error)}")

    def get_status(self, key: str) -> str:
        """Record status name, or ``NOT_FOUND``."""
        with self._lock:
            record = self._records.get(key)
            return record.status.value if record else NOT_FOUND

    def get_record(self, key: str) -> Optional[IdempotencyRecord]:
        with self._lock:
            record = self._records.get(key)
            return replace(record) if record else None

    def cleanup(self) -> int:
        """Evict records older than ``max_age_seconds``; returns how many."""
        with self._lock:
            cutoff = self._clock() - self.config.max_age_seconds
            stale = [k for k, r in self._records.items() if r.created_at < cutoff]
            for key in stale:
                del self._records[key]
            remaining = len(self._records)
        if stale:
            log.debug(f"Idempotency cleanup: removed={len(stale)} remaining={remaining}")
        return len(stale)

    def get_stats(self) -> dict[str, int]:
        with self._lock:
            records = list(self._records.values())
            prevented = self._duplicates_prevented
        return {
            "total": len(records),
            "pending": sum(1 for r in records if r.status == IdempotencyStatus.PENDING),
            "completed": sum(1 for r in records if r.status == IdempotencyStatus.COMPLETED),
            "failed": sum(1 for r in records if r.status == IdempotencyStatus.FAILED),
            "duplicates_prevented": prevented,
        }

    def start(self) -> None:
        if self._scheduler is None:
            self._scheduler = Scheduler()
            self._owns_scheduler = True
        self._scheduler.every(
            "idempotency_cleanup",
            self.config.cleanup_interval_seconds,
            self.cleanup,
        )
        log.info("Order idempotency guard started")

    def stop(self) -> None:
        """Stop the sweep and forget every record."""
        if self._scheduler is not None:
            self._scheduler.cancel_task("idempotency_cleanup")
            if self._owns_scheduler:
                self._scheduler.shutdown()
                self._scheduler = None
                self._owns_scheduler = False
        with self._lock:
            self._records.clear()
        log.info("Order idempotency guard stopped")
