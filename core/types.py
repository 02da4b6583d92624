"""
Canonical types shared by the execution layer.

Broker payloads enter the system only through the tagged response types at
the bottom of this module; a payload that does not fit raises
BrokerResponseParseError instead of being defaulted.
"""
from __future__ import annotations

import copy
import math
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from core.exceptions import BrokerResponseParseError, OrderValidationError

# ============================================================
# Enums
# ============================================================

class OrderSide(Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderType(Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"
    STOP_LOSS = "STOP_LOSS"
    STOP_LOSS_MARKET = "STOP_LOSS_MARKET"


class OrderStatus(Enum):
    """Order status as reported by the broker."""
    PENDING = "PENDING"
    SUBMITTED = "SUBMITTED"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"

    @property
    def is_open(self) -> bool:
        return self in (
            OrderStatus.PENDING,
            OrderStatus.SUBMITTED,
            OrderStatus.PARTIALLY_FILLED,
        )


class PositionSide(Enum):
    LONG = "LONG"
    SHORT = "SHORT"


class OrderState(Enum):
    """Local order lifecycle; a superset of the broker status."""
    CREATED = "CREATED"
    PENDING = "PENDING"
    SUBMITTED = "SUBMITTED"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    OrderState.FILLED,
    OrderState.CANCELLED,
    OrderState.REJECTED,
    OrderState.EXPIRED,
})


def _new_order_id() -> str:
    return f"ORD_{datetime.now():%Y%m%d%H%M%S}_{uuid.uuid4().hex[:8].upper()}"


# ============================================================
# Order / Position
# ============================================================

@dataclass
class Order:
    """Order as known locally or reported by the broker."""
    order_id: str = ""
    symbol: str = ""
    side: OrderSide = OrderSide.BUY
    order_type: OrderType = OrderType.MARKET
    quantity: int = 0
    price: Optional[float] = None
    stop_price: Optional[float] = None
    target: Optional[float] = None
    status: OrderStatus = OrderStatus.PENDING
    filled_quantity: int = 0
    average_price: float = 0.0
    timestamp: datetime = field(default_factory=datetime.now)

    def __post_init__(self) -> None:
        if not self.order_id:
            self.order_id = _new_order_id()
        if self.quantity < 0:
            raise OrderValidationError(
                f"Order quantity must be >= 0, got {self.quantity}",
                details={"order_id": self.order_id},
            )
        if not 0 <= self.filled_quantity <= self.quantity:
            raise OrderValidationError(
                f"filled_quantity {self.filled_quantity} outside [0, {self.quantity}]",
                details={"order_id": self.order_id},
            )

    @property
    def remaining_quantity(self) -> int:
        return self.quantity - self.filled_quantity

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "symbol": self.symbol,
            "side": self.side.value,
            "order_type": self.order_type.value,
            "quantity": self.quantity,
            "price": self.price,
            "stop_price": self.stop_price,
            "target": self.target,
            "status": self.status.value,
            "filled_quantity": self.filled_quantity,
            "average_price": self.average_price,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_payload(cls, payload: Any) -> Order:
        """Parse a broker order payload (an Order or a mapping)."""
        if isinstance(payload, Order):
            return copy.deepcopy(payload)
        if not isinstance(payload, Mapping):
            raise BrokerResponseParseError(
                f"Expected order mapping, got {type(payload).__name__}"
            )

        order_id = _first(payload, "order_id", "orderId", "orderid")
        symbol = _first(payload, "symbol", "tradingsymbol")
        if not order_id or not symbol:
            raise BrokerResponseParseError(
                "Order payload missing order_id or symbol",
                details={"keys": sorted(str(k) for k in payload.keys())},
            )

        try:
            return cls(
                order_id=str(order_id),
                symbol=str(symbol),
                side=_enum(OrderSide, _first(payload, "side", "transactiontype")),
                order_type=_enum(
                    OrderType, _first(payload, "order_type", "type", "ordertype") or "MARKET"
                ),
                quantity=_int(_first(payload, "quantity", "qty"), "quantity"),
                price=_opt_float(_first(payload, "price")),
                stop_price=_opt_float(_first(payload, "stop_price", "triggerprice")),
                status=_enum(OrderStatus, _first(payload, "status", "orderstatus")),
                filled_quantity=_int(
                    _first(payload, "filled_quantity", "filledshares") or 0, "filled_quantity"
                ),
                average_price=_opt_float(_first(payload, "average_price", "averageprice")) or 0.0,
            )
        except OrderValidationError as e:
            raise BrokerResponseParseError(
                f"Inconsistent order payload: {e.message}",
                details={"order_id": str(order_id)},
            ) from e


@dataclass
class Position:
    symbol: str = ""
    side: PositionSide = PositionSide.LONG
    quantity: int = 0
    entry_price: float = 0.0
    current_price: float = 0.0
    stop_loss: Optional[float] = None
    target: Optional[float] = None
    pnl: float = 0.0
    pnl_percent: float = 0.0
    entry_time: datetime = field(default_factory=datetime.now)

    def update_price(self, price: float) -> None:
        self.current_price = float(price)
        direction = 1 if self.side == PositionSide.LONG else -1
        self.pnl = (self.current_price - self.entry_price) * self.quantity * direction
        if self.entry_price > 0:
            self.pnl_percent = (
                (self.current_price - self.entry_price) / self.entry_price * 100 * direction
            )

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "side": self.side.value,
            "quantity": self.quantity,
            "entry_price": self.entry_price,
            "current_price": self.current_price,
            "pnl": self.pnl,
        }

    @classmethod
    def from_payload(cls, payload: Any) -> Position:
        if isinstance(payload, Position):
            return copy.deepcopy(payload)
        if not isinstance(payload, Mapping):
            raise BrokerResponseParseError(
                f"Expected position mapping, got {type(payload).__name__}"
            )
        symbol = _first(payload, "symbol", "tradingsymbol")
        if not symbol:
            raise BrokerResponseParseError("Position payload missing symbol")

        quantity = _int(_first(payload, "quantity", "netqty"), "quantity")
        raw_side = _first(payload, "side", "type")
        side = (
            _enum(PositionSide, raw_side) if raw_side
            else (PositionSide.LONG if quantity >= 0 else PositionSide.SHORT)
        )
        entry_price = _opt_float(_first(payload, "entry_price", "avgnetprice"))
        if entry_price is None:
            raise BrokerResponseParseError(
                "Position payload missing entry_price", details={"symbol": str(symbol)}
            )
        return cls(
            symbol=str(symbol),
            side=side,
            quantity=abs(quantity),
            entry_price=entry_price,
            current_price=_opt_float(_first(payload, "current_price", "ltp")) or entry_price,
            pnl=_opt_float(_first(payload, "pnl")) or 0.0,
        )


# ============================================================
# Order state records
# ============================================================

@dataclass(frozen=True)
class StateTransition:
    from_state: OrderState
    to_state: OrderState
    reason: str
    timestamp: datetime


@dataclass
class OrderStateRecord:
    """Order plus its local lifecycle bookkeeping. Owned by the OrderRegistry."""
    order: Order
    state: OrderState = OrderState.CREATED
    history: list[StateTransition] = field(default_factory=list)
    retry_count: int = 0
    parent_order_id: Optional[str] = None
    child_order_ids: list[str] = field(default_factory=list)
    broker_order_id: Optional[str] = None
    error_message: str = ""
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def order_id(self) -> str:
        return self.order.order_id

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def to_dict(self) -> dict:
        return {
            "order": self.order.to_dict(),
            "state": self.state.value,
            "retry_count": self.retry_count,
            "parent_order_id": self.parent_order_id,
            "child_order_ids": list(self.child_order_ids),
            "broker_order_id": self.broker_order_id,
            "error_message": self.error_message,
            "history": [
                {
                    "from": t.from_state.value,
                    "to": t.to_state.value,
                    "reason": t.reason,
                    "timestamp": t.timestamp.isoformat(),
                }
                for t in self.history
            ],
        }


# ============================================================
# Reconciliation
# ============================================================

class MismatchKind(Enum):
    MISSING_IN_BOT = "missing_local"
    MISSING_IN_BROKER = "missing_remote"
    QUANTITY_MISMATCH = "quantity_mismatch"
    PRICE_MISMATCH = "price_mismatch"


@dataclass(frozen=True)
class ReconciliationMismatch:
    symbol: str
    kind: MismatchKind
    local: Optional[Position]
    broker: Optional[Position]
    details: str

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "kind": self.kind.name,
            "local": self.local.to_dict() if self.local else None,
            "broker": self.broker.to_dict() if self.broker else None,
            "details": self.details,
        }


# ============================================================
# Tagged broker responses
# ============================================================

@dataclass(frozen=True)
class OrderAck:
    """Result of place_order. ``order`` is None when the broker placed nothing."""
    order: Optional[Order]
    kind: str = "order_ack"

    @property
    def accepted(self) -> bool:
        return self.order is not None and self.order.status != OrderStatus.REJECTED

    @classmethod
    def parse(cls, payload: Any) -> OrderAck:
        if payload is None:
            return cls(order=None)
        return cls(order=Order.from_payload(payload))


@dataclass(frozen=True)
class OrderBookSnapshot:
    orders: tuple[Order, ...]
    fetched_at: datetime = field(default_factory=datetime.now)
    kind: str = "order_book"

    def by_id(self) -> dict[str, Order]:
        return {o.order_id: o for o in self.orders}

    @classmethod
    def parse(cls, payload: Any) -> OrderBookSnapshot:
        if not isinstance(payload, (list, tuple)):
            raise BrokerResponseParseError(
                f"Expected order list, got {type(payload).__name__}"
            )
        return cls(orders=tuple(Order.from_payload(p) for p in payload))


@dataclass(frozen=True)
class PositionSnapshot:
    positions: tuple[Position, ...]
    fetched_at: datetime = field(default_factory=datetime.now)
    kind: str = "positions"

    def by_symbol(self) -> dict[str, Position]:
        return {p.symbol: p for p in self.positions}

    @classmethod
    def parse(cls, payload: Any) -> PositionSnapshot:
        if not isinstance(payload, (list, tuple)):
            raise BrokerResponseParseError(
                f"Expected position list, got {type(payload).__name__}"
            )
        parsed = (Position.from_payload(p) for p in payload)
        # Brokers keep squared-off rows for the day with a net quantity of zero.
        return cls(positions=tuple(p for p in parsed if p.quantity != 0))


@dataclass(frozen=True)
class BalanceSnapshot:
    balance: float
    fetched_at: datetime = field(default_factory=datetime.now)
    kind: str = "balance"

    @classmethod
    def parse(cls, payload: Any) -> BalanceSnapshot:
        value = payload
        if isinstance(payload, Mapping):
            value = _first(payload, "balance", "availablecash", "net")
        if value is None or isinstance(value, bool):
            raise BrokerResponseParseError(
                f"Expected numeric balance, got {type(payload).__name__}"
            )
        try:
            balance = float(value)
        except (TypeError, ValueError) as e:
            raise BrokerResponseParseError(f"Unparseable balance {value!r}") from e
        if not math.isfinite(balance):
            raise BrokerResponseParseError(f"Non-finite balance {value!r}")
        return cls(balance=balance)


@dataclass(frozen=True)
class QuoteSnapshot:
    symbol: str
    ltp: Optional[float]
    kind: str = "quote"

    @classmethod
    def parse(cls, symbol: str, payload: Any) -> QuoteSnapshot:
        if payload is None:
            return cls(symbol=symbol, ltp=None)
        price = _opt_float(payload)
        if price is None or price < 0:
            raise BrokerResponseParseError(f"Bad LTP for {symbol}: {payload!r}")
        return cls(symbol=symbol, ltp=price)


# ============================================================
# Payload helpers
# ============================================================

def _first(payload: Mapping, *keys: str) -> Any:
    for key in keys:
        value = payload.get(key)
        if value is not None and value != "":
            return value
    return None


def _enum(enum_cls: type[Enum], value: Any) -> Any:
    if isinstance(value, enum_cls):
        return value
    if value is None:
        raise BrokerResponseParseError(f"Missing {enum_cls.__name__} value")
    text = str(value).strip().upper()
    try:
        return enum_cls(text)
    except ValueError:
        try:
            return enum_cls[text]
        except KeyError as e:
            raise BrokerResponseParseError(
                f"Unknown {enum_cls.__name__} value {value!r}"
            ) from e


def _int(value: Any, name: str) -> int:
    if value is None or isinstance(value, bool):
        raise BrokerResponseParseError(f"Missing or invalid {name}: {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError) as e:
        raise BrokerResponseParseError(f"Unparseable {name}: {value!r}") from e
    if not number.is_integer():
        raise BrokerResponseParseError(f"Non-integer {name}: {value!r}")
    return int(number)


def _opt_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError) as e:
        raise BrokerResponseParseError(f"Unparseable number {value!r}") from e
    return number if math.isfinite(number) else None
