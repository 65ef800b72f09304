"""Active-connection limiting for the proxy."""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)


class ConnectionLease:
    """One acquired connection slot.

    ``release()`` is idempotent so every exit path (success, client abort,
    upstream error, size-limit abort) can call it without double-counting.
    """

    __slots__ = ("_limiter", "_released")

    def __init__(self, limiter: ConnectionLimiter):
        self._limiter = limiter
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._limiter._release()


class ConnectionLimiter:
    """Counts in-flight client connections against a fixed maximum.

    The proxy runs on a single asyncio event loop, so acquire/release never
    interleave and the counter needs no lock.
    """

    def __init__(self, max_connections: int):
        self.max_connections = max_connections
        self._active = 0
        self.peak = 0

    @property
    def active(self) -> int:
        return self._active

    def acquire(self) -> ConnectionLease | None:
        """Take a slot, or return None when the limit is reached."""
        if self._active >= self.max_connections:
            return None
        self._active += 1
        self.peak = max(self.peak, self._active)
        return ConnectionLease(self)

    def _release(self) -> None:
        if self._active <= 0:
            logger.error("Connection counter underflow")
            return
        self._active -= 1

    def stats(self) -> dict:
        return {
            "active": self._active,
            "peak": self.peak,
            "max_connections": self.max_connections,
        }
