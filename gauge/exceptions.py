"""Custom exceptions for gauge.

All exceptions inherit from GaugeError, so callers that only want to know
"did gauge fail" can catch a single type:

    from gauge import GaugeError, LifecycleController

    try:
        LifecycleController().start()
    except GaugeError as e:
        print(f"gauge error: {e}")
"""

from __future__ import annotations

from typing import Any


class GaugeError(Exception):
    """Base exception for all gauge errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({detail_str})"
        return self.message


class ConfigurationError(GaugeError):
    """Raised when gauge is misconfigured.

    This includes:
    - A port that is not a number or lies outside 1-65535
    - Non-positive limits (connections, body size, backoff bounds)

    Example:
        ConfigurationError(
            "Invalid port",
            details={"value": "abc", "source": "GAUGE_PROXY_PORT"}
        )
    """

    pass


class PayloadTooLargeError(GaugeError):
    """Raised while streaming a request body once it crosses the size cap.

    The proxy converts this into a 413 response. It is raised from inside
    the upstream client's body iterator, which aborts the outbound request
    before the oversized body is forwarded.
    """

    def __init__(self, received: int, limit: int):
        super().__init__(
            "Request body exceeds size limit",
            details={"received": received, "limit": limit},
        )
        self.received = received
        self.limit = limit


class LifecycleError(GaugeError):
    """Raised when the supervisor cannot be spawned or signalled.

    Example:
        LifecycleError(
            "Failed to start supervisor",
            details={"error": "No such file or directory"}
        )
    """

    pass
