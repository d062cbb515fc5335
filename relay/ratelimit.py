"""Per-key fixed-window rate limiter.

Keys are arbitrary strings, typically ``chat_id:user_id:category``.
State is in-memory and resets on restart.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class RateLimitDecision:
    allowed: bool
    retry_after_ms: int = 0


@dataclass
class RateLimitBucket:
    count: int
    reset_at: int  # epoch ms


def _now_ms() -> int:
    return int(time.time() * 1000)


class RateLimiter:
    """Counts hits per key inside a window that starts on the first hit."""

    def __init__(self) -> None:
        self._buckets: dict[str, RateLimitBucket] = {}

    def check(self, key: str, limit: int, window_ms: int) -> RateLimitDecision:
        now = _now_ms()
        bucket = self._buckets.get(key)

        if bucket is None or now >= bucket.reset_at:
            self._buckets[key] = RateLimitBucket(count=1, reset_at=now + window_ms)
            return RateLimitDecision(allowed=True)

        if bucket.count >= limit:
            return RateLimitDecision(allowed=False, retry_after_ms=max(0, bucket.reset_at - now))

        bucket.count += 1
        return RateLimitDecision(allowed=True)

    def sweep(self, max_age_ms: int = 5 * 60 * 1000) -> int:
        """Drop buckets whose window ended more than max_age_ms ago."""
        now = _now_ms()
        stale = [key for key, bucket in self._buckets.items() if now - bucket.reset_at > max_age_ms]
        for key in stale:
            del self._buckets[key]
        if stale:
            logger.debug("Swept %d rate limit buckets", len(stale))
        return len(stale)

    def __len__(self) -> int:
        return len(self._buckets)
