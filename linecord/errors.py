"""Bridge exception hierarchy and delivery error classification."""

import asyncio
from typing import Optional

import httpx


class BridgeError(Exception):
    """Base class for all linecord errors."""
    pass


class PersistenceError(BridgeError):
    """A JSON document could not be written or read back."""
    pass


class DeliveryError(BridgeError):
    """A platform rejected or never received a send.

    Args:
        message: Human-readable description
        status: HTTP status code, or None for network/timeout failures
        retry_after: Seconds the platform asked us to wait, if any
    """

    def __init__(self, message: str, status: Optional[int] = None, retry_after: Optional[float] = None):
        super().__init__(message)
        self.status = status
        self.retry_after = retry_after

    @property
    def transient(self) -> bool:
        if self.status is None:
            return True
        return 500 <= self.status < 600


class TransientDeliveryError(DeliveryError):
    """Network, timeout or 5xx failure, worth another attempt."""

    @property
    def transient(self) -> bool:
        return True


class PermanentDeliveryError(DeliveryError):
    """4xx (including 429), not retried."""

    @property
    def transient(self) -> bool:
        return False


def is_transient(e: BaseException) -> bool:
    """Return True if a failed send is worth retrying.

    5xx, network errors and timeouts are transient. 429 is treated as
    permanent: the platform quota would only be burned faster by retrying.
    """
    if isinstance(e, DeliveryError):
        return e.transient
    if isinstance(e, httpx.HTTPStatusError):
        return 500 <= e.response.status_code < 600
    if isinstance(e, (httpx.TimeoutException, httpx.TransportError, asyncio.TimeoutError)):
        return True
    if isinstance(e, (ConnectionError, OSError)):
        return True
    return False


def describe_error(e: BaseException) -> str:
    """Short label for log lines."""
    status = None
    if isinstance(e, DeliveryError):
        status = e.status
    elif isinstance(e, httpx.HTTPStatusError):
        status = e.response.status_code

    if status is not None:
        if status == 429:
            return "rate limited (429)"
        if status in (401, 403):
            return f"authentication error ({status})"
        if 500 <= status < 600:
            return f"server error ({status})"
        return f"HTTP {status}"
    if isinstance(e, (httpx.TimeoutException, asyncio.TimeoutError)):
        return "timeout"
    if isinstance(e, (httpx.TransportError, ConnectionError)):
        return "network error"
    if isinstance(e, DeliveryError):
        return "network error"
    return f"{type(e).__name__}: {e}"


def delivery_error_from_httpx(e: Exception) -> DeliveryError:
    """Convert an httpx exception into a DeliveryError."""
    if isinstance(e, httpx.HTTPStatusError):
        response = e.response
        retry_after = _parse_retry_after(response.headers.get("retry-after"))
        detail = response.text[:200] if response.content else ""
        cls = TransientDeliveryError if 500 <= response.status_code < 600 else PermanentDeliveryError
        return cls(
            f"HTTP {response.status_code}: {detail}".strip(),
            status=response.status_code,
            retry_after=retry_after,
        )
    if isinstance(e, httpx.TimeoutException):
        return TransientDeliveryError(f"timeout: {e}")
    return TransientDeliveryError(f"network error: {e}")


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None
