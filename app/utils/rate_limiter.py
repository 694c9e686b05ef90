from __future__ import annotations

import re
import threading

from cachetools import TTLCache

from app.utils.errors import ApiError


class InMemoryRateLimiter:
    """Fixed one-minute window per key; counters age out with the cache TTL."""

    def __init__(self, *, window_seconds: int = 60, max_keys: int = 50_000):
        self._lock = threading.Lock()
        self._counts: TTLCache = TTLCache(maxsize=max_keys, ttl=window_seconds)

    @staticmethod
    def _parse_limit_per_minute(limit: str) -> int:
        m = re.match(r"^\s*(\d+)\s+per\s+minute\s*$", str(limit or ""), re.IGNORECASE)
        if not m:
            return 300
        return max(1, int(m.group(1)))

    def check(self, key: str, limit: str) -> None:
        max_per_minute = self._parse_limit_per_minute(limit)

        with self._lock:
            # Re-assigning would refresh the TTL, so mutate the stored list in place.
            bucket = self._counts.get(key)
            if bucket is None:
                bucket = [0]
                self._counts[key] = bucket
            bucket[0] += 1
            count = bucket[0]

        if count > max_per_minute:
            raise ApiError("RATE_LIMITED", "Too many requests. Please wait a minute and try again.", status=429)

    def reset(self) -> None:
        with self._lock:
            self._counts.clear()
