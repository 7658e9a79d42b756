import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Optional


class DenialReason(str, Enum):
    rate_limit = "RATE_LIMIT"
    blocked = "BLOCKED"


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    reason: Optional[DenialReason] = None
    remaining: int = 0
    reset_in_seconds: float = 0.0

    def is_denied(self) -> bool:
        return not self.allowed

    def is_rate_limit(self) -> bool:
        return self.reason == DenialReason.rate_limit


@dataclass
class _Bucket:
    tokens: float
    updated_at: float


class RateLimiter:
    """Per-key token bucket with a static deny list.

    A bucket holds ``capacity`` tokens and refills completely over
    ``refill_secs``; each call spends ``requested`` tokens.
    """

    def __init__(
        self,
        capacity: int,
        refill_secs: float,
        blocked_keys: Iterable[str] = (),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity <= 0 or refill_secs <= 0:
            raise ValueError("Rate limit capacity and refill period must be positive")
        self.capacity = capacity
        self.refill_rate = capacity / refill_secs
        self.blocked_keys = frozenset(blocked_keys)
        self._clock = clock
        self._buckets: dict[str, _Bucket] = {}
        self._lock = threading.Lock()

    def protect(self, key: str, requested: int = 1) -> RateLimitDecision:
        if key in self.blocked_keys:
            return RateLimitDecision(allowed=False, reason=DenialReason.blocked)

        now = self._clock()
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = _Bucket(tokens=float(self.capacity), updated_at=now)
                self._buckets[key] = bucket
            elapsed = max(0.0, now - bucket.updated_at)
            bucket.tokens = min(
                float(self.capacity), bucket.tokens + elapsed * self.refill_rate
            )
            bucket.updated_at = now

            if bucket.tokens >= requested:
                bucket.tokens -= requested
                return RateLimitDecision(
                    allowed=True,
                    remaining=int(bucket.tokens),
                    reset_in_seconds=self._time_to_full(bucket),
                )
            missing = requested - bucket.tokens
            return RateLimitDecision(
                allowed=False,
                reason=DenialReason.rate_limit,
                remaining=int(bucket.tokens),
                reset_in_seconds=missing / self.refill_rate,
            )

    def _time_to_full(self, bucket: _Bucket) -> float:
        return (self.capacity - bucket.tokens) / self.refill_rate
