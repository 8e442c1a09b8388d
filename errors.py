"""Error taxonomy for the chat proxy.

Every ProxyError carries the HTTP status it maps to when it surfaces before a
stream has been committed. ClientCancelled is deliberately not a ProxyError:
a client that went away is a termination reason, not a failure.
"""

from __future__ import annotations

from typing import Dict, Optional


class ProxyError(Exception):
    """Base class for client-visible proxy failures."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def headers(self) -> Optional[Dict[str, str]]:
        return None


class ValidationError(ProxyError):
    """Bad or missing request fields. Never contacts upstream."""

    status_code = 400


class ConfigurationError(ProxyError):
    """Selected backend is unusable (e.g. missing credential)."""

    status_code = 502


class RateLimitExceeded(ProxyError):
    status_code = 429

    def __init__(self, retry_after_s: int) -> None:
        super().__init__("rate limit exceeded")
        self.retry_after_s = retry_after_s

    def headers(self) -> Optional[Dict[str, str]]:
        return {"Retry-After": str(self.retry_after_s)}


class UpstreamError(ProxyError):
    """Any failure talking to a backend."""

    status_code = 502


class UpstreamUnavailable(UpstreamError):
    """Network/transport failure."""


class UpstreamTimeout(UpstreamError):
    """The request deadline fired."""


class UpstreamProtocolError(UpstreamError):
    """Non-success status or unparseable body."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class ClientCancelled(Exception):
    """The client disconnected; handled silently where detected."""
