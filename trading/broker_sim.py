"""
Paper Broker - in-memory broker used for dry runs and tests.

Fills are deterministic: market orders fill at the last price set with
``set_price``, limit orders rest until the price crosses or ``fill_order``
is called. Fault injection helpers (``fail_next``, ``set_down``,
``set_latency``) make the broker behave like a flaky remote API.
"""
import copy
import itertools
import threading
import time
from collections import deque
from datetime import datetime
from typing import Dict, List, Optional

from core.exceptions import (
    BrokerConnectionError,
    InsufficientFundsError,
    InvalidInstrumentError,
)
from core.types import (
    Order,
    OrderSide,
    OrderStatus,
    OrderType,
    Position,
    PositionSide,
)
from trading.broker_base import Broker
from utils.logger import get_logger

log = get_logger(__name__)


class PaperBroker(Broker):
    """
    Paper trading broker with fault injection:
    - Immediate market fills, resting limit orders, manual partial fills
    - Broker-side position edits to simulate drift
    - Queued exceptions, full outages and artificial latency
    """

    def __init__(self, initial_balance: float = 1_000_000.0) -> None:
        self._lock = threading.RLock()
        self._initial_balance = float(initial_balance)
        self._balance = float(initial_balance)
        self._orders: Dict[str, Order] = {}
        self._positions: Dict[str, Position] = {}
        self._prices: Dict[str, float] = {}
        self._counter = itertools.count(1)
        self._connected = False

        self._down = False
        self._latency = 0.0
        self._failures: deque[BaseException] = deque()
        self.calls: Dict[str, int] = {}

    @property
    def name(self) -> str:
        return "Paper"

    @property
    def is_connected(self) -> bool:
        return self._connected

    # ------------------------------------------------------------------
    # Fault injection
    # ------------------------------------------------------------------

    def fail_next(self, count: int = 1, error: Optional[BaseException] = None) -> None:
        """Make the next ``count`` calls raise ``error`` (connection reset by default)."""
        with self._lock:
            for _ in range(count):
                self._failures.append(
                    error or BrokerConnectionError("Connection reset by peer", code="ECONNRESET")
                )

    def set_down(self, down: bool = True) -> None:
        """Simulate a full outage: every call raises until cleared."""
        with self._lock:
            self._down = down
        log.info(f"Paper broker {'DOWN' if down else 'UP'}")

    def set_latency(self, seconds: float) -> None:
        self._latency = max(0.0, float(seconds))

    def _enter(self, call: str) -> None:
        with self._lock:
            self.calls[call] = self.calls.get(call, 0) + 1
            if self._down:
                raise BrokerConnectionError(
                    "Broker unreachable", code="ETIMEDOUT", status_code=503,
                )
            error = self._failures.popleft() if self._failures else None
        if self._latency:
            time.sleep(self._latency)
        if error is not None:
            raise error

    # ------------------------------------------------------------------
    # Market simulation
    # ------------------------------------------------------------------

    def set_price(self, symbol: str, price: float) -> None:
        """Update the last price and fill resting limit orders it crosses."""
        with self._lock:
            self._prices[symbol] = float(price)
            resting = [
                o for o in self._orders.values()
                if o.symbol == symbol and o.status.is_open and o.order_type == OrderType.LIMIT
            ]
            for order in resting:
                if self._crosses(order, price):
                    self._fill(order, order.remaining_quantity, order.price or price)

    def fill_order(
        self,
        order_id: str,
        quantity: Optional[int] = None,
        price: Optional[float] = None,
    ) -> Order:
        """Fill ``quantity`` (default: all remaining) of a resting order."""
        with self._lock:
            order = self._orders[order_id]
            qty = order.remaining_quantity if quantity is None else int(quantity)
            fill_price = price or order.price or self._prices.get(order.symbol, 0.0)
            self._fill(order, qty, fill_price)
            return copy.deepcopy(order)

    def set_order_status(self, order_id: str, status: OrderStatus) -> None:
        with self._lock:
            self._orders[order_id].status = status

    def drop_order(self, order_id: str) -> None:
        """Forget an order, as if the broker lost it."""
        with self._lock:
            self._orders.pop(order_id, None)

    def set_position(
        self,
        symbol: str,
        quantity: int,
        entry_price: float,
        side: PositionSide = PositionSide.LONG,
    ) -> None:
        with self._lock:
            self._positions[symbol] = Position(
                symbol=symbol,
                side=side,
                quantity=int(quantity),
                entry_price=float(entry_price),
                current_price=self._prices.get(symbol, float(entry_price)),
            )

    def remove_position(self, symbol: str) -> None:
        with self._lock:
            self._positions.pop(symbol, None)

    def _crosses(self, order: Order, price: float) -> bool:
        if order.price is None:
            return True
        if order.side == OrderSide.BUY:
            return price <= order.price
        return price >= order.price

    def _fill(self, order: Order, quantity: int, price: float) -> None:
        quantity = max(0, min(quantity, order.remaining_quantity))
        if quantity == 0:
            return
        previous = order.filled_quantity
        order.filled_quantity = previous + quantity
        order.average_price = (
            (order.average_price * previous + price * quantity) / order.filled_quantity
        )
        order.status = (
            OrderStatus.FILLED
            if order.filled_quantity == order.quantity
            else OrderStatus.PARTIALLY_FILLED
        )
        self._apply_to_position(order.symbol, order.side, quantity, price)
        log.info(
            f"Paper fill: {order.side.value} {quantity} {order.symbol} @ {price:.2f} "
            f"({order.filled_quantity}/{order.quantity})"
        )

    def _apply_to_position(self, symbol: str, side: OrderSide, qty: int, price: float) -> None:
        signed = qty if side == OrderSide.BUY else -qty
        self._balance -= signed * price

        pos = self._positions.get(symbol)
        if pos is None:
            self._positions[symbol] = Position(
                symbol=symbol,
                side=PositionSide.LONG if signed > 0 else PositionSide.SHORT,
                quantity=abs(signed),
                entry_price=price,
                current_price=price,
            )
            return

        current = pos.quantity if pos.side == PositionSide.LONG else -pos.quantity
        new_qty = current + signed
        if new_qty == 0:
            del self._positions[symbol]
            return
        if (current > 0) == (signed > 0):
            pos.entry_price = (pos.entry_price * abs(current) + price * qty) / abs(new_qty)
        pos.side = PositionSide.LONG if new_qty > 0 else PositionSide.SHORT
        pos.quantity = abs(new_qty)
        pos.update_price(price)

    # ------------------------------------------------------------------
    # Broker interface
    # ------------------------------------------------------------------

    def connect(self) -> bool:
        self._enter("connect")
        self._connected = True
        log.info(f"Paper broker connected with {self._balance:,.2f}")
        return True

    def disconnect(self) -> None:
        with self._lock:
            self.calls["disconnect"] = self.calls.get("disconnect", 0) + 1
        self._connected = False
        log.info("Paper broker disconnected")

    def place_order(
        self,
        symbol: str,
        side: OrderSide,
        order_type: OrderType,
        quantity: int,
        price: Optional[float] = None,
        stop_price: Optional[float] = None,
        target: Optional[float] = None,
    ) -> Optional[Order]:
        self._enter("place_order")
        with self._lock:
            market = self._prices.get(symbol)
            if market is None and price is None:
                raise InvalidInstrumentError(
                    f"Invalid instrument: no price for {symbol}",
                    details={"symbol": symbol},
                )
            reference = price if price is not None else market
            if side == OrderSide.BUY and quantity * reference > self._balance:
                raise InsufficientFundsError(
                    f"Insufficient funds for {quantity} {symbol}",
                    details={"required": quantity * reference, "available": self._balance},
                )

            order = Order(
                order_id=f"PAPER_{datetime.now():%Y%m%d%H%M%S}_{next(self._counter)}",
                symbol=symbol,
                side=side,
                order_type=order_type,
                quantity=int(quantity),
                price=price,
                stop_price=stop_price,
                target=target,
                status=OrderStatus.SUBMITTED,
            )
            self._orders[order.order_id] = order

            if order_type == OrderType.MARKET and market is not None:
                self._fill(order, order.quantity, market)
            elif order_type == OrderType.LIMIT and market is not None and self._crosses(order, market):
                self._fill(order, order.quantity, price or market)
            return copy.deepcopy(order)

    def cancel_order(self, order_id: str) -> bool:
        self._enter("cancel_order")
        with self._lock:
            order = self._orders.get(order_id)
            if order is None or not order.status.is_open:
                return False
            order.status = OrderStatus.CANCELLED
            return True

    def get_orders(self) -> List[Order]:
        self._enter("get_orders")
        with self._lock:
            return [copy.deepcopy(o) for o in self._orders.values()]

    def get_positions(self) -> List[Position]:
        self._enter("get_positions")
        with self._lock:
            return [copy.deepcopy(p) for p in self._positions.values()]

    def get_account_balance(self) -> float:
        self._enter("get_account_balance")
        with self._lock:
            return self._balance

    def get_ltp(self, symbol: str) -> Optional[float]:
        self._enter("get_ltp")
        with self._lock:
            return self._prices.get(symbol)

    def reset(self) -> None:
        """Reset to the initial balance with no orders, positions or faults."""
        with self._lock:
            self._balance = self._initial_balance
            self._orders.clear()
            self._positions.clear()
            self._prices.clear()
            self._failures.clear()
            self._down = False
            self._latency = 0.0
            self.calls.clear()
        log.info("Paper broker reset")
