import asyncio
from typing import Optional

import httpx

from trainer_service.core.errors import (
    TransportAuthError,
    TransportError,
    TransportNetworkError,
    TransportRateLimitError,
    TransportServerError,
    TransportTimeoutError,
    TransportUnknownError,
)
from trainer_service.core.types import FailureReason


def error_for_status(status_code: int, message: str = "", retry_after: Optional[str] = None) -> TransportError:
    """Map a non-2xx HTTP status onto the transport taxonomy."""
    if status_code == 429:
        delay = None
        if retry_after:
            try:
                delay = float(retry_after)
            except ValueError:
                delay = None
        return TransportRateLimitError(message or "Rate limited", status_code, retry_after=delay)
    if status_code in (401, 403):
        return TransportAuthError(message or "Authentication failed", status_code)
    if status_code == 408:
        return TransportTimeoutError(message or "Request timed out", status_code)
    if status_code >= 500:
        return TransportServerError(message or f"Server error {status_code}", status_code)
    return TransportUnknownError(message or f"HTTP {status_code}", status_code)


def to_transport_error(exc: BaseException) -> TransportError:
    """Wrap httpx/asyncio/OS exceptions in the matching TransportError."""
    if isinstance(exc, TransportError):
        return exc
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return TransportTimeoutError(str(exc) or "Request timed out")
    if isinstance(exc, httpx.HTTPStatusError):
        resp = exc.response
        return error_for_status(resp.status_code, str(exc), resp.headers.get("Retry-After"))
    if isinstance(exc, (httpx.NetworkError, httpx.RemoteProtocolError, ConnectionError)):
        return TransportNetworkError(str(exc) or "Network connection lost")
    return TransportUnknownError(str(exc) or type(exc).__name__)


def classify(exc: BaseException) -> FailureReason:
    return to_transport_error(exc).reason
