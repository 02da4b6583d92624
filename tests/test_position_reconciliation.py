import pytest

from config.settings import ReconciliationConfig
from core.events import EventType
from core.exceptions import BrokerConnectionError
from core.types import MismatchKind, Position, PositionSide
from trading.portfolio import PositionBook
from trading.position_reconciliation import PositionReconciler, diff_positions


def _pos(symbol: str, qty: int, entry: float = 100.0, side=PositionSide.LONG) -> Position:
    return Position(symbol=symbol, side=side, quantity=qty, entry_price=entry, current_price=entry)


class _Positions:
    def __init__(self, positions=None) -> None:
        self.positions = list(positions or [])
        self.error = None

    def __call__(self):
        if self.error is not None:
            raise self.error
        return list(self.positions)


def test_diff_classifies_every_kind() -> None:
    local = {
        "A": _pos("A", 10),
        "B": _pos("B", 5),
        "C": _pos("C", 7, entry=100.0),
    }
    broker = {
        "B": _pos("B", 8),
        "C": _pos("C", 7, entry=103.0),
        "D": _pos("D", 2),
    }
    kinds = {(m.symbol, m.kind) for m in diff_positions(local, broker, price_tolerance_pct=1.0)}

    assert kinds == {
        ("A", MismatchKind.MISSING_IN_BROKER),
        ("B", MismatchKind.QUANTITY_MISMATCH),
        ("C", MismatchKind.PRICE_MISMATCH),
        ("D", MismatchKind.MISSING_IN_BOT),
    }


def test_price_within_tolerance_matches() -> None:
    assert diff_positions({"A": _pos("A", 1, 100.0)}, {"A": _pos("A", 1, 100.5)}, 1.0) == []


def test_side_difference_is_a_quantity_mismatch() -> None:
    local = {"A": _pos("A", 10)}
    broker = {"A": _pos("A", 10, side=PositionSide.SHORT)}
    assert diff_positions(local, broker)[0].kind == MismatchKind.QUANTITY_MISMATCH


def test_reconcile_repairs_book_and_flags_orphans(bus, recorder) -> None:
    book = PositionBook([_pos("A", 10), _pos("B", 5)])
    fetch = _Positions([_pos("B", 8), _pos("D", 2)])
    reconciler = PositionReconciler(fetch, book, bus=bus)

    mismatches = reconciler.reconcile()

    assert len(mismatches) == 3
    assert book.get("B").quantity == 8
    assert book.get("D").quantity == 2
    # Orphans are reported, not removed.
    assert "A" in book
    orphan = recorder.of(EventType.ORPHANED_POSITION)
    assert orphan[0].data["symbol"] == "A"
    assert len(recorder.of(EventType.RECONCILIATION_MISMATCH)) == 3


def test_critical_after_consecutive_cycles(bus, recorder) -> None:
    book = PositionBook([_pos("A", 10)])
    fetch = _Positions([])
    reconciler = PositionReconciler(
        fetch, book, ReconciliationConfig(critical_after_cycles=3), bus=bus,
    )

    for _ in range(4):
        reconciler.reconcile()

    critical = recorder.of(EventType.RECONCILIATION_CRITICAL)
    assert len(critical) == 1
    assert critical[0].data["consecutive_cycles"] == 3

    fetch.positions = [_pos("A", 10)]
    assert reconciler.reconcile() == []
    assert reconciler.get_status()["consecutive_mismatch_cycles"] == 0


def test_fetch_failure_returns_none(bus, recorder) -> None:
    fetch = _Positions()
    fetch.error = BrokerConnectionError("down", code="ETIMEDOUT")
    reconciler = PositionReconciler(fetch, PositionBook(), bus=bus)

    assert reconciler.reconcile() is None
    assert recorder.of(EventType.RECONCILIATION_ERROR)[0].data["scope"] == "positions"
    assert reconciler.get_status()["errors"] == 1


def test_sync_from_broker_replaces_book() -> None:
    book = PositionBook([_pos("OLD", 1)])
    reconciler = PositionReconciler(_Positions([_pos("X", 3), _pos("Y", 4)]), book)

    assert reconciler.sync_from_broker() == 2
    assert book.symbols() == ["X", "Y"]


def test_sync_from_broker_raises_on_fetch_error() -> None:
    fetch = _Positions()
    fetch.error = BrokerConnectionError("down")
    book = PositionBook([_pos("KEEP", 1)])
    with pytest.raises(BrokerConnectionError):
        PositionReconciler(fetch, book).sync_from_broker()
    assert "KEEP" in book


def test_quantity_repair_takes_broker_side_and_keeps_entry(bus) -> None:
    book = PositionBook([_pos("A", 10, 100.0)])
    fetch = _Positions([_pos("A", 4, 100.0, side=PositionSide.SHORT)])

    PositionReconciler(fetch, book, bus=bus).reconcile()

    repaired = book.get("A")
    assert repaired.side == PositionSide.SHORT
    assert repaired.quantity == 4
    assert repaired.entry_price == 100.0
