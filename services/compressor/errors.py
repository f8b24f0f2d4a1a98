from __future__ import annotations

from typing import Optional

import httpx


class CompressorError(Exception):
    """Base class for pipeline errors."""


class ConfigurationError(CompressorError):
    """Missing or invalid configuration. Fatal at startup."""


class CollaboratorError(CompressorError):
    def __init__(self, operation: str, message: str):
        super().__init__(f"{operation}: {message}")
        self.operation = operation


class TransientRemoteError(CollaboratorError):
    """Network failure or 5xx. Retried with backoff."""


class RateLimitedError(CollaboratorError):
    """4xx/429. Never retried; the caller waits out the window."""

    def __init__(self, operation: str, message: str, retry_after: Optional[float] = None):
        super().__init__(operation, message)
        self.retry_after = retry_after


class CircuitOpenError(CollaboratorError):
    """The breaker for this operation is open."""


def http_error(exc: Exception, operation: str) -> Exception:
    """
    Maps an httpx exception into the error taxonomy.
    Anything that is not an HTTP/transport error is returned unchanged.
    """
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status >= 500:
            return TransientRemoteError(operation, f"HTTP {status}")
        retry_after = exc.response.headers.get("retry-after")
        try:
            wait = float(retry_after) if retry_after else None
        except ValueError:
            wait = None
        return RateLimitedError(operation, f"HTTP {status}", retry_after=wait)
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return TransientRemoteError(operation, exc.__class__.__name__)
    return exc
