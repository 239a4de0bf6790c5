"""
Token bucket with a daily quota.

Burst capacity refills continuously at refill_rate_per_second. Independently,
every admitted token counts against a daily quota that resets at
reset_hour_utc. A request must clear both.
"""

from __future__ import annotations

import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from feedguard.config import BucketConfig
from feedguard.errors import RateLimitRejection, RejectReason, rejection_error

# Quota percentage above which a bucket reports itself throttled
THROTTLE_WARNING_PCT = 80.0


def next_reset_boundary_ms(now_ms: int, reset_hour_utc: int) -> int:
    """Epoch ms of the next reset_hour_utc:00 strictly after now_ms."""
    now = datetime.fromtimestamp(now_ms / 1000, tz=UTC)
    boundary = now.replace(hour=reset_hour_utc, minute=0, second=0, microsecond=0)
    if boundary <= now:
        boundary += timedelta(days=1)
    return int(boundary.timestamp() * 1000)


@dataclass(frozen=True)
class RequestResult:
    """Outcome of a consume attempt."""

    allowed: bool
    tokens_consumed: int = 0
    retry_after_ms: int | None = None
    reason: RejectReason | None = None

    def to_rejection(self, bucket: str) -> RateLimitRejection:
        """Typed error for a refused result."""
        if self.reason is None:
            raise ValueError(f"Request on bucket {bucket} was allowed")
        return rejection_error(self.reason, bucket, self.retry_after_ms)


@dataclass(frozen=True)
class BucketStatus:
    """Read-only snapshot of a bucket."""

    tokens_available: int
    capacity: int
    refill_rate_per_second: float
    daily_usage: int
    daily_quota: int
    quota_percentage: float
    next_refill_at: int
    next_reset_at: int
    is_throttled: bool

    def to_dict(self) -> dict[str, int | float | bool]:
        return {
            "tokens_available": self.tokens_available,
            "capacity": self.capacity,
            "refill_rate_per_second": self.refill_rate_per_second,
            "daily_usage": self.daily_usage,
            "daily_quota": self.daily_quota,
            "quota_percentage": self.quota_percentage,
            "next_refill_at": self.next_refill_at,
            "next_reset_at": self.next_reset_at,
            "is_throttled": self.is_throttled,
        }


@dataclass
class TokenBucket:
    """
    One named quota: burst tokens plus a daily allowance.

    Refill and consume run under a lock so the bucket stays consistent when
    shared across threads. Inside one event loop the methods never await, so
    each call is already atomic.
    """

    config: BucketConfig
    name: str = "default"

    _tokens: float = field(default=0.0)
    _last_refill_ms: int = field(default=0)
    _daily_usage: int = field(default=0)
    _next_reset_ms: int = field(default=0)

    # Optional time provider for testing (epoch ms)
    _time_fn: Callable[[], int] | None = field(default=None)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def __post_init__(self) -> None:
        now_ms = self._now_ms()
        self._tokens = float(self.config.capacity)
        self._last_refill_ms = now_ms
        self._next_reset_ms = next_reset_boundary_ms(now_ms, self.config.reset_hour_utc)

    def _now_ms(self) -> int:
        if self._time_fn is not None:
            return self._time_fn()
        return int(time.time() * 1000)

    @property
    def capacity(self) -> int:
        return self.config.capacity

    @property
    def refill_rate(self) -> float:
        return self.config.refill_rate_per_second

    def _refill(self, now_ms: int) -> None:
        elapsed_ms = now_ms - self._last_refill_ms
        if elapsed_ms <= 0:
            return
        added = (elapsed_ms / 1000.0) * self.refill_rate
        self._tokens = min(float(self.capacity), self._tokens + added)
        self._last_refill_ms = now_ms

    def _roll_daily_window(self, now_ms: int) -> None:
        if now_ms >= self._next_reset_ms:
            self._daily_usage = 0
            self._next_reset_ms = next_reset_boundary_ms(now_ms, self.config.reset_hour_utc)

    def _ms_until_tokens(self, count: int) -> int:
        missing = count - self._tokens
        if missing <= 0:
            return 0
        return math.ceil(missing / self.refill_rate * 1000)

    def try_consume(self, count: int = 1) -> RequestResult:
        """
        Take count tokens if both the burst bucket and daily quota allow it.

        Args:
            count: Tokens to consume (>= 1, <= capacity).

        Returns:
            RequestResult. Rejections carry the reason and how long to wait.

        Raises:
            ValueError: If count can never be satisfied by this bucket.
        """
        if count < 1:
            raise ValueError(f"count must be >= 1, got {count}")
        if count > self.capacity:
            raise ValueError(f"count {count} exceeds bucket capacity {self.capacity}")

        with self._lock:
            now_ms = self._now_ms()
            self._refill(now_ms)
            self._roll_daily_window(now_ms)

            if self._daily_usage + count > self.config.daily_quota:
                return RequestResult(
                    allowed=False,
                    retry_after_ms=max(0, self._next_reset_ms - now_ms),
                    reason=RejectReason.DAILY_QUOTA_EXCEEDED,
                )

            if self._tokens >= count:
                self._tokens -= count
                self._daily_usage += count
                return RequestResult(allowed=True, tokens_consumed=count)

            return RequestResult(
                allowed=False,
                retry_after_ms=self._ms_until_tokens(count),
                reason=RejectReason.INSUFFICIENT_TOKENS,
            )

    def can_consume(self, count: int = 1) -> bool:
        """Whether try_consume(count) would succeed now. Consumes nothing."""
        with self._lock:
            now_ms = self._now_ms()
            self._refill(now_ms)
            self._roll_daily_window(now_ms)
            return (
                self._daily_usage + count <= self.config.daily_quota
                and self._tokens >= count
            )

    def tokens(self) -> float:
        with self._lock:
            self._refill(self._now_ms())
            return self._tokens

    def time_until_token_ms(self, count: int = 1) -> int:
        """Milliseconds until count burst tokens are available (ignores quota)."""
        with self._lock:
            self._refill(self._now_ms())
            return self._ms_until_tokens(count)

    def get_status(self) -> BucketStatus:
        """Snapshot after applying refill and any due daily reset."""
        with self._lock:
            now_ms = self._now_ms()
            self._refill(now_ms)
            self._roll_daily_window(now_ms)

            quota_pct = self._daily_usage / self.config.daily_quota * 100
            full = self._tokens >= self.capacity
            next_refill = 0 if full else now_ms + math.ceil(1000 / self.refill_rate)
            return BucketStatus(
                tokens_available=math.floor(self._tokens),
                capacity=self.capacity,
                refill_rate_per_second=self.refill_rate,
                daily_usage=self._daily_usage,
                daily_quota=self.config.daily_quota,
                quota_percentage=round(quota_pct, 2),
                next_refill_at=next_refill,
                next_reset_at=self._next_reset_ms,
                is_throttled=quota_pct > THROTTLE_WARNING_PCT,
            )

    def reset(self) -> None:
        """Refill to capacity. Daily usage is untouched."""
        with self._lock:
            self._tokens = float(self.capacity)
            self._last_refill_ms = self._now_ms()

    def reset_daily_usage(self) -> None:
        """Zero daily usage and move the boundary forward. Burst tokens untouched."""
        with self._lock:
            now_ms = self._now_ms()
            self._daily_usage = 0
            self._next_reset_ms = next_reset_boundary_ms(now_ms, self.config.reset_hour_utc)
