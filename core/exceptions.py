# core/exceptions.py
"""
Exception taxonomy for the execution layer.

Every error carries a message, a short code and a details dict so it can be
logged or published on the event bus without losing context. The families
map onto the handling policy:

- BrokerConnectionError: transient, retried with back-off
- BrokerAuthenticationError: never retried, drives a reconnect
- OrderRejectedError and friends: business rejections, never retried
- ResilienceError: exhaustion (breaker open, retries spent, duplicate intent)
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional


class TradingSystemError(Exception):
    """Base exception for the trading system."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__
        self.details: Dict[str, Any] = dict(details) if details else {}
        self.timestamp = datetime.now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": self.__class__.__name__,
            "error": self.code,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }

    def __str__(self) -> str:
        parts = [self.message]
        if self.code and self.code != self.__class__.__name__:
            parts.insert(0, f"[{self.code}]")
        if self.details:
            parts.append(f"(details: {self.details})")
        return " ".join(parts)

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code!r}, "
            f"details={self.details!r})"
        )


# ── Broker Errors ────────────────────────────────────────────


class BrokerError(TradingSystemError):
    """Base broker error."""


class BrokerConnectionError(BrokerError):
    """Network-class failure talking to the broker."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message, code=code, details=details)
        self.status_code = status_code
        if status_code is not None:
            self.details.setdefault("status_code", status_code)


class BrokerAuthenticationError(BrokerError):
    """Broker authentication failed or the session expired."""


class BrokerResponseParseError(BrokerError):
    """Broker payload did not match the expected response shape."""


class BrokerOrderError(BrokerError):
    """Broker refused an order operation for a non-business reason."""


# ── Order Errors ─────────────────────────────────────────────


class OrderError(TradingSystemError):
    """Order-related error."""


class OrderValidationError(OrderError):
    """Order fields are inconsistent."""


class OrderRejectedError(OrderError):
    """Broker rejected the order (business rejection)."""


class InsufficientFundsError(OrderRejectedError):
    """Insufficient funds for order."""


class InvalidInstrumentError(OrderRejectedError):
    """Unknown or untradeable instrument."""


class InvalidTransitionError(OrderError):
    """Order state transition not present in the transition table."""


# ── Resilience Errors ────────────────────────────────────────


class ResilienceError(TradingSystemError):
    """A protective mechanism refused or gave up on a call."""


class CircuitOpenError(ResilienceError):
    """Circuit breaker is open; the call was not attempted."""


class RetryExhaustedError(ResilienceError):
    """All retry attempts failed."""

    def __init__(
        self,
        message: str,
        attempts: int = 0,
        last_error: Optional[BaseException] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        merged = dict(details or {})
        merged.setdefault("attempts", attempts)
        if last_error is not None:
            merged.setdefault("last_error", str(last_error))
        super().__init__(message, details=merged)
        self.attempts = attempts
        self.last_error = last_error


class DuplicateOrderError(ResilienceError):
    """Idempotency guard refused a duplicate order intent."""


class KillSwitchActiveError(ResilienceError):
    """Safe mode is active; new orders are blocked."""


# ── Reconciliation Errors ────────────────────────────────────


class ReconciliationError(TradingSystemError):
    """Local state could not be reconciled against the broker."""
