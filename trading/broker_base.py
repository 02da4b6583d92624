"""
Broker Interface - the capability the execution layer consumes.

Concrete HTTP/WebSocket clients live outside this package. Every method may
raise network-class errors (BrokerConnectionError, requests exceptions,
socket errors) or business-class errors (OrderRejectedError and subclasses);
callers wrap them with circuit breakers and retries, never the broker itself.
"""
from abc import ABC, abstractmethod
from typing import List, Optional

from core.types import Order, OrderSide, OrderType, Position


class Broker(ABC):
    """Abstract broker interface"""

    @property
    @abstractmethod
    def name(self) -> str:
        """Broker name"""

    @abstractmethod
    def connect(self) -> bool:
        """Connect (or re-login) to the broker"""

    @abstractmethod
    def disconnect(self) -> None:
        """Disconnect from the broker"""

    @abstractmethod
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
        """Place an order. Returns the broker's view of it, or None."""

    @abstractmethod
    def cancel_order(self, order_id: str) -> bool:
        """Cancel an order by broker order id"""

    @abstractmethod
    def get_orders(self) -> List[Order]:
        """Get the day's order book"""

    @abstractmethod
    def get_positions(self) -> List[Position]:
        """Get open positions"""

    @abstractmethod
    def get_account_balance(self) -> float:
        """Get available balance"""

    def get_ltp(self, symbol: str) -> Optional[float]:
        """Last traded price; brokers without quotes return None"""
        return None
