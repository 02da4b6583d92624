"""
Position reconciliation.

Compares the local PositionBook with the broker's position list by symbol
and repairs the book where the broker's answer is unambiguous:

    MISSING_IN_BOT      broker holds it, we do not      -> adopt broker view
    MISSING_IN_BROKER   we hold it, broker does not     -> flag orphan only
    QUANTITY_MISMATCH   both hold it, sizes differ      -> adopt broker size
    PRICE_MISMATCH      entry prices differ > tolerance -> adopt broker price

A single mismatching cycle is often fill-timing skew; several in a row raise
RECONCILIATION_CRITICAL.
"""
from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any, Optional

from config.settings import ReconciliationConfig
from core.events import Event, EventBus, EventType
from core.types import MismatchKind, Position, PositionSnapshot, ReconciliationMismatch
from trading.portfolio import PositionBook
from utils.logger import format_fields, get_logger
from utils.metrics import MetricsRegistry
from utils.scheduler import Scheduler

log = get_logger(__name__)

TASK_NAME = "position_reconciliation"


def diff_positions(
    local: dict[str, Position],
    broker: dict[str, Position],
    price_tolerance_pct: float = 1.0,
) -> list[ReconciliationMismatch]:
    """Pure comparison of two symbol -> Position maps."""
    mismatches: list[ReconciliationMismatch] = []

    for symbol, broker_pos in broker.items():
        local_pos = local.get(symbol)
        if local_pos is None:
            mismatches.append(ReconciliationMismatch(
                symbol=symbol,
                kind=MismatchKind.MISSING_IN_BOT,
                local=None,
                broker=broker_pos,
                details=(
                    f"Position exists at broker ({broker_pos.quantity} shares) "
                    f"but not in local tracking"
                ),
            ))
            continue

        if local_pos.quantity != broker_pos.quantity or local_pos.side != broker_pos.side:
            mismatches.append(ReconciliationMismatch(
                symbol=symbol,
                kind=MismatchKind.QUANTITY_MISMATCH,
                local=local_pos,
                broker=broker_pos,
                details=(
                    f"Quantity mismatch - Local: {local_pos.side.value} {local_pos.quantity}, "
                    f"Broker: {broker_pos.side.value} {broker_pos.quantity}"
                ),
            ))

        if broker_pos.entry_price > 0:
            diff_pct = abs(local_pos.entry_price - broker_pos.entry_price) / broker_pos.entry_price * 100
            if diff_pct > price_tolerance_pct:
                mismatches.append(ReconciliationMismatch(
                    symbol=symbol,
                    kind=MismatchKind.PRICE_MISMATCH,
                    local=local_pos,
                    broker=broker_pos,
                    details=(
                        f"Entry price mismatch - Local: {local_pos.entry_price:.2f}, "
                        f"Broker: {broker_pos.entry_price:.2f} ({diff_pct:.2f}% diff)"
                    ),
                ))

    for symbol, local_pos in local.items():
        if symbol not in broker:
            mismatches.append(ReconciliationMismatch(
                symbol=symbol,
                kind=MismatchKind.MISSING_IN_BROKER,
                local=local_pos,
                broker=None,
                details=(
                    f"Position exists in local tracking ({local_pos.quantity} shares) "
                    f"but not at broker"
                ),
            ))

    return mismatches


class PositionReconciler:
    """Periodic diff of the local position book against broker positions."""

    def __init__(
        self,
        fetch_positions: Callable[[], Iterable[Any]],
        book: PositionBook,
        config: Optional[ReconciliationConfig] = None,
        bus: Optional[EventBus] = None,
        scheduler: Optional[Scheduler] = None,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self._fetch_positions = fetch_positions
        self.book = book
        self.config = config or ReconciliationConfig()
        self._bus = bus
        self._scheduler = scheduler or Scheduler()
        self._metrics = metrics

        # Serialises whole passes: the periodic task, forced passes and
        # recovery-triggered passes may all fire in the same tick.
        self._pass_lock = threading.Lock()
        self._running = False
        self._last_run: Optional[datetime] = None
        self._last_mismatch_count = 0
        self._consecutive_mismatch_cycles = 0
        self._critical_raised = False
        self._total_mismatches = 0
        self._cycles = 0
        self._errors = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._running:
            log.warning("Position reconciliation already running")
            return
        self._running = True
        self._scheduler.every(
            TASK_NAME,
            self.config.position_interval_seconds,
            self.reconcile,
            run_immediately=True,
        )
        log.info(
            f"✅ Position reconciliation started "
            f"(every {self.config.position_interval_seconds:.0f}s)"
        )

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self._scheduler.cancel_task(TASK_NAME)
        log.info("Position reconciliation stopped")

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    def _fetch_broker_map(self) -> dict[str, Position]:
        snapshot = PositionSnapshot.parse(list(self._fetch_positions()))
        return snapshot.by_symbol()

    def reconcile(self) -> Optional[list[ReconciliationMismatch]]:
        """Run one pass. Returns the mismatches, or None if the broker fetch failed."""
        with self._pass_lock:
            try:
                broker_map = self._fetch_broker_map()
            except Exception as e:
                self._errors += 1
                log.error(f"Error during position reconciliation: {e}")
                self._emit(EventType.RECONCILIATION_ERROR, scope="positions", error=str(e))
                return None

            local_map = self.book.as_dict()
            mismatches = diff_positions(
                local_map, broker_map, self.config.price_tolerance_pct,
            )
            for mismatch in mismatches:
                self._repair(mismatch)

            self._cycles += 1
            self._last_run = datetime.now()
            self._last_mismatch_count = len(mismatches)
            self._total_mismatches += len(mismatches)
            critical = self._track_streak(bool(mismatches))

        if mismatches:
            log.error(
                "⚠️ POSITION MISMATCHES DETECTED: "
                + format_fields(count=len(mismatches), streak=self._consecutive_mismatch_cycles)
            )
            for mismatch in mismatches:
                self._emit(
                    EventType.RECONCILIATION_MISMATCH,
                    symbol=mismatch.symbol,
                    kind=mismatch.kind.name,
                    details=mismatch.details,
                    mismatch=mismatch.to_dict(),
                )
                if mismatch.kind == MismatchKind.MISSING_IN_BROKER:
                    self._emit(
                        EventType.ORPHANED_POSITION,
                        symbol=mismatch.symbol,
                        position=mismatch.local.to_dict() if mismatch.local else None,
                    )
                if self._metrics is not None:
                    self._metrics.inc_counter(
                        "reconciliation_mismatches_total",
                        labels={"kind": mismatch.kind.name.lower()},
                    )
        else:
            log.info(
                "✅ Position reconciliation complete - all positions match "
                + format_fields(local=len(local_map), broker=len(broker_map))
            )

        if critical:
            log.critical(
                f"🛑 Position mismatches for {self._consecutive_mismatch_cycles} "
                f"consecutive cycles"
            )
            self._emit(
                EventType.RECONCILIATION_CRITICAL,
                consecutive_cycles=self._consecutive_mismatch_cycles,
                mismatches=[m.to_dict() for m in mismatches],
            )
        return mismatches

    def force_reconcile(self) -> Optional[list[ReconciliationMismatch]]:
        log.info("🔄 Forcing immediate position reconciliation...")
        return self.reconcile()

    def sync_from_broker(self) -> int:
        """Replace the whole book with the broker's positions (startup, crash recovery).

        Raises whatever the fetch raises; the caller decides how to recover.
        """
        with self._pass_lock:
            broker_map = self._fetch_broker_map()
            count = self.book.replace_all(list(broker_map.values()))
            self._consecutive_mismatch_cycles = 0
            self._critical_raised = False
        log.info(
            "✅ Position sync complete: "
            + format_fields(synced=count, symbols=",".join(sorted(broker_map)) or None)
        )
        return count

    def _repair(self, mismatch: ReconciliationMismatch) -> None:
        symbol = mismatch.symbol
        if mismatch.kind == MismatchKind.MISSING_IN_BOT and mismatch.broker is not None:
            log.warning(f"🔧 AUTO-FIX: Adding missing position to local tracking: {symbol}")
            self.book.set(mismatch.broker)
        elif mismatch.kind == MismatchKind.MISSING_IN_BROKER:
            log.error(f"❌ Position in local tracking but not at broker: {symbol}")
        elif mismatch.kind == MismatchKind.QUANTITY_MISMATCH and mismatch.broker is not None:
            log.error(f"❌ Quantity mismatch for {symbol}: {mismatch.details}")
            self.book.update_quantity(symbol, mismatch.broker.quantity, side=mismatch.broker.side)
        elif mismatch.kind == MismatchKind.PRICE_MISMATCH and mismatch.broker is not None:
            log.warning(f"⚠️ Entry price mismatch for {symbol}: {mismatch.details}")
            self.book.update_entry_price(symbol, mismatch.broker.entry_price)

    def _track_streak(self, had_mismatch: bool) -> bool:
        """Update the consecutive-mismatch streak; True when it just went critical."""
        if not had_mismatch:
            if self._consecutive_mismatch_cycles:
                log.info("Position mismatch streak cleared")
            self._consecutive_mismatch_cycles = 0
            self._critical_raised = False
            return False

        self._consecutive_mismatch_cycles += 1
        if (
            self._consecutive_mismatch_cycles >= self.config.critical_after_cycles
            and not self._critical_raised
        ):
            self._critical_raised = True
            return True
        return False

    def _emit(self, event_type: EventType, **data: Any) -> None:
        if self._bus is not None:
            self._bus.publish(Event(type=event_type, source="position_reconciliation", data=data))

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self) -> dict[str, Any]:
        return {
            "is_running": self._running,
            "last_reconciliation_time": self._last_run.isoformat() if self._last_run else None,
            "mismatch_count": self._last_mismatch_count,
            "consecutive_mismatch_cycles": self._consecutive_mismatch_cycles,
            "total_mismatches": self._total_mismatches,
            "cycles": self._cycles,
            "errors": self._errors,
            "local_positions_count": self.book.count(),
        }
