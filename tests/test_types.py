import pytest

from core.exceptions import (
    BrokerConnectionError,
    BrokerResponseParseError,
    OrderValidationError,
    RetryExhaustedError,
)
from core.types import (
    BalanceSnapshot,
    Order,
    OrderAck,
    OrderBookSnapshot,
    OrderSide,
    OrderState,
    OrderStatus,
    Position,
    PositionSide,
    PositionSnapshot,
    QuoteSnapshot,
)


def test_order_validates_quantities() -> None:
    order = Order(symbol="TCS", quantity=10, filled_quantity=4)
    assert order.order_id.startswith("ORD_")
    assert order.remaining_quantity == 6

    with pytest.raises(OrderValidationError):
        Order(symbol="TCS", quantity=-1)
    with pytest.raises(OrderValidationError):
        Order(symbol="TCS", quantity=5, filled_quantity=6)


def test_order_from_broker_payload() -> None:
    order = Order.from_payload({
        "orderid": "B1", "tradingsymbol": "SBIN", "transactiontype": "sell",
        "ordertype": "LIMIT", "quantity": "25", "price": "600.5",
        "orderstatus": "partially_filled", "filledshares": 10, "averageprice": 600.4,
    })

    assert order.side == OrderSide.SELL
    assert order.status == OrderStatus.PARTIALLY_FILLED
    assert order.quantity == 25
    assert order.price == 600.5
    assert order.filled_quantity == 10


@pytest.mark.parametrize(
    "payload",
    [
        "not a mapping",
        {"symbol": "SBIN", "side": "BUY", "quantity": 1, "status": "FILLED"},
        {"order_id": "B1", "symbol": "SBIN", "side": "HOLD", "quantity": 1, "status": "FILLED"},
        {"order_id": "B1", "symbol": "SBIN", "side": "BUY", "quantity": 1.5, "status": "FILLED"},
        {"order_id": "B1", "symbol": "SBIN", "side": "BUY", "quantity": 1,
         "status": "FILLED", "filled_quantity": 3},
    ],
)
def test_bad_order_payloads_raise(payload) -> None:
    with pytest.raises(BrokerResponseParseError):
        Order.from_payload(payload)


def test_order_ack() -> None:
    assert not OrderAck.parse(None).accepted
    rejected = OrderAck.parse({
        "order_id": "B1", "symbol": "SBIN", "side": "BUY", "quantity": 1, "status": "REJECTED",
    })
    assert rejected.order is not None
    assert not rejected.accepted
    assert OrderAck.parse(Order(order_id="B2", symbol="SBIN", quantity=1)).accepted


def test_snapshots_require_lists() -> None:
    with pytest.raises(BrokerResponseParseError):
        OrderBookSnapshot.parse(None)
    with pytest.raises(BrokerResponseParseError):
        PositionSnapshot.parse({"symbol": "X"})

    snapshot = PositionSnapshot.parse([
        {"tradingsymbol": "SBIN", "netqty": -20, "avgnetprice": 600},
    ])
    pos = snapshot.by_symbol()["SBIN"]
    assert pos.side == PositionSide.SHORT
    assert pos.quantity == 20
    assert pos.current_price == 600.0


def test_flat_positions_are_skipped() -> None:
    snapshot = PositionSnapshot.parse([
        {"tradingsymbol": "SBIN", "netqty": "0", "avgnetprice": 600},
        {"tradingsymbol": "INFY", "netqty": 5, "avgnetprice": 1500},
        Position(symbol="TCS", quantity=0, entry_price=3500.0),
    ])

    assert list(snapshot.by_symbol()) == ["INFY"]


def test_position_payload_needs_entry_price() -> None:
    with pytest.raises(BrokerResponseParseError):
        PositionSnapshot.parse([{"symbol": "SBIN", "quantity": 1}])


def test_balance_and_quote_parsing() -> None:
    assert BalanceSnapshot.parse(1000).balance == 1000.0
    assert BalanceSnapshot.parse({"availablecash": "2500.5"}).balance == 2500.5
    for bad in (None, True, "abc", {"other": 1}, float("nan")):
        with pytest.raises(BrokerResponseParseError):
            BalanceSnapshot.parse(bad)

    assert QuoteSnapshot.parse("SBIN", None).ltp is None
    assert QuoteSnapshot.parse("SBIN", "601.25").ltp == 601.25
    with pytest.raises(BrokerResponseParseError):
        QuoteSnapshot.parse("SBIN", -1)


def test_terminal_states() -> None:
    assert OrderState.EXPIRED.is_terminal
    assert not OrderState.FAILED.is_terminal
    assert OrderStatus.PARTIALLY_FILLED.is_open


def test_exception_formatting() -> None:
    error = BrokerConnectionError("reset", code="ECONNRESET", details={"host": "api"})
    assert str(error) == "[ECONNRESET] reset (details: {'host': 'api'})"
    assert error.to_dict()["error"] == "ECONNRESET"

    exhausted = RetryExhaustedError("gave up", attempts=3, last_error=error)
    assert exhausted.attempts == 3
    assert exhausted.last_error is error
