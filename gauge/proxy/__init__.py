"""Streaming proxy that relays Claude Code traffic and harvests rate-limit headers."""

from .headers import HOP_BY_HOP_HEADERS, filter_header_items, filter_headers
from .limiter import ConnectionLease, ConnectionLimiter
from .ratelimit import RateLimitCache, RateLimitSnapshot

__all__ = [
    "HOP_BY_HOP_HEADERS",
    "filter_headers",
    "filter_header_items",
    "ConnectionLimiter",
    "ConnectionLease",
    "RateLimitCache",
    "RateLimitSnapshot",
]
