"""Rate-limit telemetry cache.

The proxy harvests the unified utilization headers from upstream responses
and keeps the most recent reading in a single JSON file:

    {"5h": 0.42, "7d": 0.13, "tokens_limit": null, "tokens_remaining": null,
     "status": "active", "ts": 1760000000000}

The file is replaced atomically so statusline readers in other processes
always see a complete document. Readers treat stale or malformed data as
absent.
"""

from __future__ import annotations

import json
import logging
import math
import os
import tempfile
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

HEADER_5H_UTILIZATION = "anthropic-ratelimit-unified-5h-utilization"
HEADER_7D_UTILIZATION = "anthropic-ratelimit-unified-7d-utilization"
HEADER_TOKENS_LIMIT = "anthropic-ratelimit-tokens-limit"
HEADER_TOKENS_REMAINING = "anthropic-ratelimit-tokens-remaining"

STATUS_ACTIVE = "active"


def _parse_float(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    return parsed if math.isfinite(parsed) else None


def _parse_int(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def _is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


@dataclass
class RateLimitSnapshot:
    """Latest rate-limit reading captured from an upstream response."""

    five_hour_utilization: float | None
    seven_day_utilization: float | None
    tokens_limit: int | None
    tokens_remaining: int | None
    captured_at: int  # epoch milliseconds
    status: str = STATUS_ACTIVE

    def to_dict(self) -> dict[str, Any]:
        return {
            "5h": self.five_hour_utilization,
            "7d": self.seven_day_utilization,
            "tokens_limit": self.tokens_limit,
            "tokens_remaining": self.tokens_remaining,
            "status": self.status,
            "ts": self.captured_at,
        }

    @classmethod
    def from_dict(cls, data: Any) -> RateLimitSnapshot | None:
        """Rebuild a snapshot from the cache document, or None if malformed."""
        if not isinstance(data, dict) or not _is_number(data.get("ts")):
            return None

        def number_or_none(key: str) -> float | None:
            value = data.get(key)
            return float(value) if _is_number(value) else None

        def int_or_none(key: str) -> int | None:
            value = data.get(key)
            return int(value) if _is_number(value) else None

        return cls(
            five_hour_utilization=number_or_none("5h"),
            seven_day_utilization=number_or_none("7d"),
            tokens_limit=int_or_none("tokens_limit"),
            tokens_remaining=int_or_none("tokens_remaining"),
            captured_at=int(data["ts"]),
            status=str(data.get("status", STATUS_ACTIVE)),
        )

    @classmethod
    def from_headers(cls, headers: Mapping[str, str], now_ms: int) -> RateLimitSnapshot | None:
        """Build a snapshot from response headers.

        Returns None when neither utilization header is present.
        """
        lowered = {name.lower(): value for name, value in headers.items()}
        raw_5h = lowered.get(HEADER_5H_UTILIZATION)
        raw_7d = lowered.get(HEADER_7D_UTILIZATION)
        if raw_5h is None and raw_7d is None:
            return None

        return cls(
            five_hour_utilization=_parse_float(raw_5h),
            seven_day_utilization=_parse_float(raw_7d),
            tokens_limit=_parse_int(lowered.get(HEADER_TOKENS_LIMIT)),
            tokens_remaining=_parse_int(lowered.get(HEADER_TOKENS_REMAINING)),
            captured_at=now_ms,
        )

    def age_seconds(self, now: float) -> float:
        return now - self.captured_at / 1000.0


class RateLimitCache:
    """Single-slot, atomically replaced cache of the latest snapshot.

    Args:
        path: Location of the JSON cache file.
        zero_suppression_window_seconds: How long a positive 5h reading
            shields the cache from a subsequent zero reading.
        clock: Wall-clock source in seconds (``time.time`` by default).
    """

    def __init__(
        self,
        path: Path | str,
        zero_suppression_window_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        self.path = Path(path)
        self.zero_suppression_window_seconds = zero_suppression_window_seconds
        self._clock = clock

    def load(self) -> RateLimitSnapshot | None:
        """Read the cached snapshot without any freshness check."""
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError):
            return None
        return RateLimitSnapshot.from_dict(data)

    def read(self, max_age_seconds: float | None = None) -> RateLimitSnapshot | None:
        """Read the snapshot the way statusline consumers should.

        Stale entries, unreadable files and snapshots whose 5h value is not
        a finite number are all treated as absent.
        """
        snapshot = self.load()
        if snapshot is None or snapshot.five_hour_utilization is None:
            return None
        if max_age_seconds is not None and snapshot.age_seconds(self._clock()) > max_age_seconds:
            return None
        return snapshot

    def record(self, headers: Mapping[str, str]) -> bool:
        """Persist the rate-limit headers of one upstream response.

        Returns True if the cache file was replaced.
        """
        now = self._clock()
        snapshot = RateLimitSnapshot.from_headers(headers, now_ms=int(now * 1000))
        if snapshot is None:
            return False

        # Utilization cannot drop to exactly 0 mid-session; a zero right after
        # a positive reading is a cold read on a fresh key context.
        if snapshot.five_hour_utilization == 0 and self._recent_positive(now):
            logger.debug("Ignoring zero 5h utilization reading")
            return False

        return self.write(snapshot)

    def _recent_positive(self, now: float) -> bool:
        previous = self.load()
        if previous is None or previous.five_hour_utilization is None:
            return False
        return (
            previous.five_hour_utilization > 0
            and previous.age_seconds(now) < self.zero_suppression_window_seconds
        )

    def write(self, snapshot: RateLimitSnapshot) -> bool:
        """Atomically replace the cache file. Failures are logged, never raised."""
        payload = json.dumps(snapshot.to_dict(), separators=(",", ":"))

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
            )
        except OSError as e:
            logger.warning(f"Failed to write rate-limit cache: {e}")
            return False

        try:
            with open(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            Path(tmp_path).replace(self.path)
        except OSError as e:
            logger.warning(f"Failed to write rate-limit cache: {e}")
            try:
                Path(tmp_path).unlink()
            except OSError:
                pass
            return False

        return True
