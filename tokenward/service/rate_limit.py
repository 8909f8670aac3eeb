from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict

from tokenward.logging import get_logger

logger = get_logger(__name__)


@dataclass
class _Bucket:
    tokens: float
    last_refill: float
    lock: threading.Lock = field(default_factory=threading.Lock)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after_seconds: int


class TokenBucketRateLimiter:
    """Per-key token buckets, refilled lazily on each check.

    Each bucket has its own lock, so checks against different keys never
    contend; the map lock is held only while creating a bucket. Buckets are
    kept for the life of the process. A capacity of 0 or less disables
    limiting entirely.
    """

    def __init__(
        self,
        capacity: int,
        refill_per_minute: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.capacity = int(capacity)
        if refill_per_minute < 0:
            logger.warning(
                "rate_limit_invalid_refill",
                refill_per_minute=refill_per_minute,
                message="Negative refill rate; buckets will not refill",
            )
            refill_per_minute = 0
        self.refill_per_second = float(refill_per_minute) / 60.0
        self._clock = clock
        self._buckets: Dict[str, _Bucket] = {}
        self._buckets_lock = threading.Lock()

    def _bucket(self, key: str) -> _Bucket:
        bucket = self._buckets.get(key)
        if bucket is not None:
            return bucket
        with self._buckets_lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = _Bucket(tokens=float(self.capacity), last_refill=self._clock())
                self._buckets[key] = bucket
            return bucket

    def check(self, key: str, cost: int = 1) -> RateLimitDecision:
        if self.capacity <= 0:
            return RateLimitDecision(True, self.capacity, 0, 0)
        bucket = self._bucket(key)
        with bucket.lock:
            now = self._clock()
            elapsed = max(0.0, now - bucket.last_refill)
            bucket.tokens = min(
                float(self.capacity), bucket.tokens + elapsed * self.refill_per_second
            )
            bucket.last_refill = max(bucket.last_refill, now)
            allowed = bucket.tokens >= cost
            if allowed:
                bucket.tokens -= cost
            remaining = int(bucket.tokens)
            if allowed or self.refill_per_second <= 0:
                retry_after = 0
            else:
                retry_after = math.ceil((cost - bucket.tokens) / self.refill_per_second)
        if not allowed:
            logger.info("rate_limited", key=key, retry_after_seconds=retry_after)
        return RateLimitDecision(allowed, self.capacity, remaining, retry_after)

    def allow(self, key: str) -> bool:
        return self.check(key).allowed

    def __len__(self) -> int:
        return len(self._buckets)
