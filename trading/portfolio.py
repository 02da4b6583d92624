# trading/portfolio.py

import copy
import threading
from collections import OrderedDict
from typing import Dict, List, Optional

from core.events import Event, EventType
from core.types import TERMINAL_STATES, OrderSide, OrderState, Position, PositionSide
from utils.logger import get_logger

log = get_logger(__name__)

_TERMINAL_VALUES = frozenset(s.value for s in TERMINAL_STATES)

# Fully filled order ids remembered to ignore a repeated ORDER_FILLED.
CLOSED_ORDER_MEMORY = 1000


class PositionBook:
    """
    Thread-safe local view of open positions, keyed by symbol.

    Responsibilities:
        - Apply fills reported by the order registry
        - Accept corrections from position reconciliation
        - Hand out copies only; callers never hold a live Position

    Fill events carry the cumulative filled quantity, so the book remembers
    how much of each open order it has already applied. The entry is dropped
    once the order is filled or otherwise closed.
    """

    def __init__(self, positions: Optional[List[Position]] = None):
        self._lock = threading.RLock()
        self._positions: Dict[str, Position] = {}
        self._applied_fills: Dict[str, int] = {}
        self._filled_orders: "OrderedDict[str, None]" = OrderedDict()
        for pos in positions or []:
            self._positions[pos.symbol] = copy.deepcopy(pos)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, symbol: str) -> Optional[Position]:
        with self._lock:
            pos = self._positions.get(symbol)
            return copy.deepcopy(pos) if pos else None

    def get_all(self) -> List[Position]:
        with self._lock:
            return [copy.deepcopy(p) for p in self._positions.values()]

    def as_dict(self) -> Dict[str, Position]:
        with self._lock:
            return {s: copy.deepcopy(p) for s, p in self._positions.items()}

    def symbols(self) -> List[str]:
        with self._lock:
            return sorted(self._positions)

    def count(self) -> int:
        with self._lock:
            return len(self._positions)

    def __contains__(self, symbol: str) -> bool:
        with self._lock:
            return symbol in self._positions

    def __len__(self) -> int:
        return self.count()

    # ------------------------------------------------------------------
    # Corrections
    # ------------------------------------------------------------------

    def set(self, position: Position) -> None:
        with self._lock:
            self._positions[position.symbol] = copy.deepcopy(position)

    def update_quantity(
        self, symbol: str, quantity: int, side: Optional[PositionSide] = None
    ) -> bool:
        with self._lock:
            pos = self._positions.get(symbol)
            if pos is None:
                return False
            if side is not None:
                pos.side = side
            pos.quantity = int(quantity)
            pos.update_price(pos.current_price or pos.entry_price)
            return True

    def update_entry_price(self, symbol: str, entry_price: float) -> bool:
        with self._lock:
            pos = self._positions.get(symbol)
            if pos is None:
                return False
            pos.entry_price = float(entry_price)
            pos.update_price(pos.current_price or pos.entry_price)
            return True

    def replace_all(self, positions: List[Position]) -> int:
        """Swap the whole book for ``positions``; returns the new count."""
        with self._lock:
            self._positions = {p.symbol: copy.deepcopy(p) for p in positions}
            return len(self._positions)

    def clear(self) -> None:
        with self._lock:
            self._positions.clear()
            self._applied_fills.clear()
            self._filled_orders.clear()

    # ------------------------------------------------------------------
    # Fills
    # ------------------------------------------------------------------

    def apply_fill(
        self,
        symbol: str,
        side: OrderSide,
        quantity: int,
        price: float,
    ) -> Optional[Position]:
        """Net a fill into the book. Returns the resulting position, or None if flat."""
        if quantity <= 0:
            return self.get(symbol)

        signed = quantity if side == OrderSide.BUY else -quantity
        with self._lock:
            pos = self._positions.get(symbol)
            if pos is None:
                pos = Position(
                    symbol=symbol,
                    side=PositionSide.LONG if signed > 0 else PositionSide.SHORT,
                    quantity=abs(signed),
                    entry_price=float(price),
                    current_price=float(price),
                )
                self._positions[symbol] = pos
                return copy.deepcopy(pos)

            current = pos.quantity if pos.side == PositionSide.LONG else -pos.quantity
            new_qty = current + signed
            if new_qty == 0:
                del self._positions[symbol]
                log.info(f"Position closed: {symbol}")
                return None

            if (current > 0) == (signed > 0):
                pos.entry_price = (
                    pos.entry_price * abs(current) + float(price) * quantity
                ) / abs(new_qty)
            elif (current > 0) != (new_qty > 0):
                # Flipped through zero: the remainder was opened at this price.
                pos.entry_price = float(price)

            pos.side = PositionSide.LONG if new_qty > 0 else PositionSide.SHORT
            pos.quantity = abs(new_qty)
            pos.update_price(price)
            return copy.deepcopy(pos)

    def on_fill_event(self, event: Event) -> None:
        """Bus handler for ORDER_FILLED / ORDER_PARTIALLY_FILLED."""
        if event.type not in (EventType.ORDER_FILLED, EventType.ORDER_PARTIALLY_FILLED):
            return
        order_id = getattr(event, "order_id", "")
        symbol = getattr(event, "symbol", "")
        data = event.data or {}
        filled = int(data.get("filled_quantity") or 0)
        price = float(data.get("average_price") or 0.0)
        side_text = data.get("side")
        if not order_id or not symbol or not side_text:
            log.warning(f"Ignoring fill event without order details: {event}")
            return

        with self._lock:
            if order_id in self._filled_orders:
                return
            already = self._applied_fills.get(order_id, 0)
            delta = filled - already
            if event.type == EventType.ORDER_FILLED:
                self._applied_fills.pop(order_id, None)
                self._filled_orders[order_id] = None
                while len(self._filled_orders) > CLOSED_ORDER_MEMORY:
                    self._filled_orders.popitem(last=False)
            elif delta > 0:
                self._applied_fills[order_id] = filled
            if delta <= 0:
                return
            self.apply_fill(symbol, OrderSide(side_text), delta, price)
        log.info(f"Position book applied fill: {order_id} {side_text} {delta} {symbol} @ {price:.2f}")

    def on_order_closed(self, event: Event) -> None:
        """Bus handler for ORDER_STATE_CHANGED; forgets orders closed without a full fill."""
        to_state = getattr(event, "to_state", "")
        if to_state == OrderState.FILLED.value or to_state not in _TERMINAL_VALUES:
            return
        with self._lock:
            self._applied_fills.pop(getattr(event, "order_id", ""), None)

    def tracked_orders(self) -> int:
        """Orders with partial fills applied but not yet closed."""
        with self._lock:
            return len(self._applied_fills)
