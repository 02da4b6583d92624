from __future__ import annotations

import errno
import socket
from enum import Enum
from typing import Any, TypeAlias

import requests

from core.exceptions import (
    BrokerAuthenticationError,
    BrokerConnectionError,
    BrokerResponseParseError,
    OrderRejectedError,
    ResilienceError,
)

RecoverableExceptions: TypeAlias = tuple[type[BaseException], ...]

NETWORK_RECOVERABLE_EXCEPTIONS: RecoverableExceptions = (
    ConnectionError,
    TimeoutError,
    socket.gaierror,
    socket.timeout,
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
    BrokerConnectionError,
)

RETRYABLE_ERROR_CODES: frozenset[str] = frozenset({
    "ECONNRESET",
    "ETIMEDOUT",
    "ECONNREFUSED",
    "EHOSTUNREACH",
    "ENETUNREACH",
    "EAI_AGAIN",
})

RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({429, 502, 503, 504})

_AUTH_MARKERS = ("invalid credentials", "unauthorized", "token expired", "session expired")
_BUSINESS_MARKERS = ("insufficient", "rejected", "invalid instrument", "invalid symbol")


class ErrorClass(Enum):
    """How an exception should be treated by retry and breaker logic."""
    NETWORK = "network"
    RATE_LIMITED = "rate_limited"
    SERVER = "server"
    AUTHENTICATION = "authentication"
    BUSINESS = "business"
    CLIENT = "client"
    PARSE = "parse"
    EXHAUSTION = "exhaustion"
    UNKNOWN = "unknown"


def extract_status_code(exc: BaseException) -> int | None:
    """HTTP status from our broker errors or a ``requests`` response, if any."""
    status = getattr(exc, "status_code", None)
    if status is None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
    if status is None:
        details = getattr(exc, "details", None)
        if isinstance(details, dict):
            status = details.get("status_code")
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def extract_error_code(exc: BaseException) -> str | None:
    """Symbolic network error code such as ``ECONNRESET``."""
    code: Any = getattr(exc, "code", None)
    if isinstance(code, str) and code.upper() in RETRYABLE_ERROR_CODES:
        return code.upper()

    err_no = getattr(exc, "errno", None)
    if isinstance(exc, socket.gaierror) and err_no == getattr(socket, "EAI_AGAIN", None):
        return "EAI_AGAIN"
    if isinstance(err_no, int) and err_no in errno.errorcode:
        return errno.errorcode[err_no]
    return None


def classify_error(exc: BaseException) -> ErrorClass:
    if isinstance(exc, ResilienceError):
        return ErrorClass.EXHAUSTION
    if isinstance(exc, BrokerResponseParseError):
        return ErrorClass.PARSE
    if isinstance(exc, OrderRejectedError):
        return ErrorClass.BUSINESS
    if isinstance(exc, BrokerAuthenticationError):
        return ErrorClass.AUTHENTICATION

    status = extract_status_code(exc)
    if status is not None:
        if status in (401, 403):
            return ErrorClass.AUTHENTICATION
        if status == 429:
            return ErrorClass.RATE_LIMITED
        if status in RETRYABLE_STATUS_CODES:
            return ErrorClass.SERVER
        if 400 <= status < 500:
            return ErrorClass.CLIENT
        if status >= 500:
            return ErrorClass.SERVER

    text = str(exc).lower()
    if any(marker in text for marker in _AUTH_MARKERS):
        return ErrorClass.AUTHENTICATION
    if any(marker in text for marker in _BUSINESS_MARKERS):
        return ErrorClass.BUSINESS

    if extract_error_code(exc) in RETRYABLE_ERROR_CODES:
        return ErrorClass.NETWORK
    if isinstance(exc, NETWORK_RECOVERABLE_EXCEPTIONS):
        return ErrorClass.NETWORK
    return ErrorClass.UNKNOWN


def is_retryable(exc: BaseException) -> bool:
    """Default retry classifier: network errors and HTTP 429/502/503/504 only."""
    error_class = classify_error(exc)
    if error_class in (ErrorClass.NETWORK, ErrorClass.RATE_LIMITED):
        return True
    if error_class == ErrorClass.SERVER:
        return extract_status_code(exc) in RETRYABLE_STATUS_CODES
    return False


def counts_as_breaker_failure(exc: BaseException) -> bool:
    """Default breaker filter: business rejections and 4xx (except 429) do not count."""
    return classify_error(exc) not in (
        ErrorClass.BUSINESS,
        ErrorClass.CLIENT,
        ErrorClass.AUTHENTICATION,
        ErrorClass.EXHAUSTION,
    )
