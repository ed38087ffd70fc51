"""
Fixed-window rate limiter for the webhook ingestion endpoint.

Single-process, in-memory admission control. Not a correctness mechanism:
any internal failure lets the request through.
"""
from __future__ import annotations

import math
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable

from app.core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class _Bucket:
    count: int
    reset_at: float


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: int = 0


class FixedWindowRateLimiter:
    """
    מונה חלון קבוע לפי מפתח (בדרך כלל ip:<address>).

    - בקשה ראשונה פותחת חלון באורך window_seconds.
    - חריגה מ-max_requests בתוך החלון נדחית עם Retry-After לפי הזמן שנותר.
    - חלונות שפגו נמחקים מדי prune_interval_seconds; אם עדיין יש יותר
      מ-max_buckets, נמחקים הדליים שנראו הכי מזמן (LRU).
    """

    def __init__(
        self,
        *,
        max_requests: int,
        window_seconds: float,
        max_buckets: int = 10_000,
        prune_interval_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.max_buckets = max_buckets
        self.prune_interval_seconds = prune_interval_seconds
        self._clock = clock
        # סדר ההכנסה = סדר "נראה לאחרונה" (move_to_end בכל בקשה)
        self._buckets: OrderedDict[str, _Bucket] = OrderedDict()
        self._lock = threading.Lock()
        self._last_prune = clock()

    def __len__(self) -> int:
        return len(self._buckets)

    def check(self, key: str) -> RateLimitDecision:
        try:
            with self._lock:
                return self._check_locked(key)
        except Exception as e:
            logger.error(
                "Rate limiter failure, allowing request",
                extra_data={"key": key, "error": str(e)},
                exc_info=True,
            )
            return RateLimitDecision(allowed=True)

    def _check_locked(self, key: str) -> RateLimitDecision:
        now = self._clock()
        self._maybe_prune(now)

        bucket = self._buckets.get(key)
        if bucket is None or bucket.reset_at <= now:
            self._buckets[key] = _Bucket(count=1, reset_at=now + self.window_seconds)
            self._buckets.move_to_end(key)
            self._evict_overflow()
            return RateLimitDecision(allowed=True)

        self._buckets.move_to_end(key)
        bucket.count += 1
        if bucket.count > self.max_requests:
            retry_after = max(1, math.ceil(bucket.reset_at - now))
            return RateLimitDecision(allowed=False, retry_after_seconds=retry_after)

        return RateLimitDecision(allowed=True)

    def _maybe_prune(self, now: float) -> None:
        if now - self._last_prune < self.prune_interval_seconds:
            return
        self._last_prune = now
        expired = [k for k, b in self._buckets.items() if b.reset_at <= now]
        for k in expired:
            del self._buckets[k]
        if expired:
            logger.debug(
                "Pruned expired rate limit buckets",
                extra_data={"pruned": len(expired), "remaining": len(self._buckets)},
            )
        self._evict_overflow()

    def _evict_overflow(self) -> None:
        overflow = len(self._buckets) - self.max_buckets
        for _ in range(max(0, overflow)):
            self._buckets.popitem(last=False)
