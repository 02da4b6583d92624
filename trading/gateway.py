"""
Execution gateway.

The one path engine code uses to reach the broker. Order placement is
guarded, in order, by the kill switch, a per-symbol lock and the
idempotency guard; the broker call itself runs as

    breaker(order_placement)( retry( broker.place_order ) )

so the breaker only sees the outcome after retries are spent. Reads run
under the ``data_fetch`` breaker and connection management under
``broker_connection``. Every broker payload is parsed into a tagged
response before it reaches the rest of the system.
"""
from __future__ import annotations

from collections.abc import Callable
from typing import Any, Optional, TypeVar

from core.exceptions import (
    BrokerConnectionError,
    DuplicateOrderError,
    KillSwitchActiveError,
    OrderRejectedError,
    OrderValidationError,
)
from core.types import (
    BalanceSnapshot,
    Order,
    OrderAck,
    OrderBookSnapshot,
    OrderStateRecord,
    OrderStatus,
    Position,
    PositionSnapshot,
    QuoteSnapshot,
)
from trading.broker_base import Broker
from trading.circuit_breaker import (
    BROKER_CONNECTION,
    DATA_FETCH,
    ORDER_PLACEMENT,
    CircuitBreakerRegistry,
)
from trading.idempotency import IdempotencyGuard
from trading.kill_switch import KillSwitch
from trading.oms import OrderRegistry
from trading.position_lock import PositionLockManager
from trading.retry import RetryExecutor
from utils.logger import format_fields, get_logger

log = get_logger(__name__)

T = TypeVar("T")


class ExecutionGateway:
    """Resilient facade over a ``Broker``."""

    def __init__(
        self,
        broker: Broker,
        registry: OrderRegistry,
        idempotency: IdempotencyGuard,
        breakers: CircuitBreakerRegistry,
        kill_switch: KillSwitch,
        retry: Optional[RetryExecutor] = None,
        locks: Optional[PositionLockManager] = None,
    ) -> None:
        self.broker = broker
        self.registry = registry
        self.idempotency = idempotency
        self.breakers = breakers
        self.kill_switch = kill_switch
        self.retry = retry or RetryExecutor()
        self.locks = locks or PositionLockManager()

    def _guarded(self, breaker_name: str, name: str, operation: Callable[[], T]) -> T:
        breaker = self.breakers.get_or_create(breaker_name)
        return breaker.execute(lambda: self.retry.call(operation, name=name))

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def place_order(
        self,
        order: Order,
        parent_order_id: Optional[str] = None,
    ) -> OrderStateRecord:
        """Register and submit ``order``.

        Returns the registry record (ACKNOWLEDGED, FILLED, or REJECTED for a
        business rejection). Raises KillSwitchActiveError in safe mode,
        DuplicateOrderError when the intent was already submitted or the
        symbol is busy, and re-raises transport errors after marking the
        order FAILED.
        """
        if not self.kill_switch.can_trade:
            raise KillSwitchActiveError(
                f"Kill switch active: {self.kill_switch.reason}",
                details={"symbol": order.symbol},
            )

        symbol = order.symbol
        if not self.locks.acquire(symbol):
            raise DuplicateOrderError(
                f"Another order for {symbol} is in flight",
                code="SYMBOL_LOCKED",
                details={"symbol": symbol},
            )
        try:
            key = self.idempotency.generate_key(symbol, order.side.value, order.quantity)
            if not self.idempotency.can_proceed(key):
                raise DuplicateOrderError(
                    f"Duplicate order intent {key}",
                    details={"key": key, "symbol": symbol},
                )
            return self._submit(order, key, parent_order_id)
        finally:
            self.locks.release(symbol)

    def _submit(self, order: Order, key: str, parent_order_id: Optional[str]) -> OrderStateRecord:
        order_id = order.order_id
        self.registry.create_order(order, parent_order_id)
        self.registry.mark_submitted(order_id)

        try:
            ack = self._guarded(
                ORDER_PLACEMENT,
                "place_order",
                lambda: OrderAck.parse(self.broker.place_order(
                    order.symbol,
                    order.side,
                    order.order_type,
                    order.quantity,
                    price=order.price,
                    stop_price=order.stop_price,
                    target=order.target,
                )),
            )
        except OrderRejectedError as e:
            log.warning(f"Order rejected: {format_fields(order_id=order_id, reason=e)}")
            self.registry.mark_rejected(order_id, str(e))
            self.idempotency.mark_failed(key, str(e))
            return self._record(order_id)
        except Exception as e:
            log.error(f"Order placement failed: {format_fields(order_id=order_id, error=e)}")
            self.registry.mark_failed(order_id, str(e))
            self.idempotency.mark_failed(key, str(e))
            raise

        if not ack.accepted:
            reason = "Broker rejected order" if ack.order else "Broker returned no order"
            self.registry.mark_rejected(order_id, reason)
            self.idempotency.mark_failed(key, reason)
            return self._record(order_id)

        broker_order = ack.order
        self.registry.mark_acknowledged(order_id, broker_order.order_id)
        self.idempotency.mark_completed(key, broker_order.order_id)
        if broker_order.status not in (OrderStatus.PENDING, OrderStatus.SUBMITTED):
            self.registry.apply_broker_status(
                order_id,
                broker_order.status,
                broker_order.filled_quantity,
                broker_order.average_price or None,
            )

        log.info(
            "Order placed: "
            + format_fields(
                order_id=order_id,
                broker_order_id=broker_order.order_id,
                symbol=order.symbol,
                side=order.side.value,
                qty=order.quantity,
            )
        )
        return self._record(order_id)

    def _record(self, order_id: str) -> OrderStateRecord:
        record = self.registry.get_order(order_id)
        if record is None:
            raise OrderValidationError(f"Order {order_id} vanished from the registry")
        return record

    def cancel_order(self, order_id: str) -> bool:
        """Cancel at the broker (if it has the order) and locally."""
        record = self.registry.get_order(order_id)
        if record is None:
            raise OrderValidationError(f"Unknown order {order_id}")
        if record.is_terminal:
            log.info(f"Order {order_id} already {record.state.value}, nothing to cancel")
            return False

        if record.broker_order_id:
            broker_id = record.broker_order_id
            cancelled = self._guarded(
                DATA_FETCH, "cancel_order", lambda: bool(self.broker.cancel_order(broker_id)),
            )
            if not cancelled:
                log.warning(f"Broker refused to cancel {order_id} ({broker_id})")
                return False

        return self.registry.mark_cancelled(order_id, "Cancelled by request")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def fetch_orders(self) -> list[Order]:
        book = self._guarded(
            DATA_FETCH, "get_orders", lambda: OrderBookSnapshot.parse(self.broker.get_orders()),
        )
        return list(book.orders)

    def fetch_positions(self) -> list[Position]:
        snapshot = self._guarded(
            DATA_FETCH, "get_positions", lambda: PositionSnapshot.parse(self.broker.get_positions()),
        )
        return list(snapshot.positions)

    def fetch_balance(self) -> float:
        snapshot = self._guarded(
            DATA_FETCH,
            "get_account_balance",
            lambda: BalanceSnapshot.parse(self.broker.get_account_balance()),
        )
        return snapshot.balance

    def fetch_ltp(self, symbol: str) -> Optional[float]:
        quote = self._guarded(
            DATA_FETCH, "get_ltp", lambda: QuoteSnapshot.parse(symbol, self.broker.get_ltp(symbol)),
        )
        return quote.ltp

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def connect(self) -> bool:
        connected = self._guarded(BROKER_CONNECTION, "connect", self._connect_once)
        log.info(f"✅ Connected to {self.broker.name}")
        return connected

    def _connect_once(self) -> bool:
        if not self.broker.connect():
            raise BrokerConnectionError(f"{self.broker.name} refused connection")
        return True

    def disconnect(self) -> None:
        self._guarded(BROKER_CONNECTION, "disconnect", self.broker.disconnect)

    def get_status(self) -> dict[str, Any]:
        return {
            "broker": self.broker.name,
            "can_trade": self.kill_switch.can_trade,
            "breakers": self.breakers.get_all_stats(),
            "locks": self.locks.get_stats(),
            "idempotency": self.idempotency.get_stats(),
        }

