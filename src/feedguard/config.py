"""
Gateway configuration.

Dataclasses validated in __post_init__. Every limit has a default matching the
providers' published quotas; from_env() constructors read overrides from the
environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Literal

# Never logged
REDACTED_ENV_VARS = frozenset({
    "NEWSDATA_API_KEY",
})

DataSource = Literal["news", "market"]


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    return int(raw) if raw not in (None, "") else default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    return float(raw) if raw not in (None, "") else default


@dataclass
class BucketConfig:
    """One token bucket: burst capacity, refill rate and daily quota."""

    capacity: int
    refill_rate_per_second: float
    daily_quota: int
    reset_hour_utc: int = 0
    # None derives max(1, capacity // concurrency_divisor)
    max_concurrent: int | None = None

    def __post_init__(self) -> None:
        if self.capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {self.capacity}")
        if self.refill_rate_per_second <= 0:
            raise ValueError(
                f"refill_rate_per_second must be > 0, got {self.refill_rate_per_second}"
            )
        if self.daily_quota < 1:
            raise ValueError(f"daily_quota must be >= 1, got {self.daily_quota}")
        if not 0 <= self.reset_hour_utc <= 23:
            raise ValueError(f"reset_hour_utc must be in [0, 23], got {self.reset_hour_utc}")
        if self.max_concurrent is not None and self.max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {self.max_concurrent}")


def default_buckets() -> dict[str, BucketConfig]:
    """NewsData.io plan limits per endpoint class."""
    return {
        "latest": BucketConfig(capacity=30, refill_rate_per_second=2, daily_quota=5000),
        "archive": BucketConfig(capacity=10, refill_rate_per_second=0.5, daily_quota=1000),
        "crypto": BucketConfig(capacity=20, refill_rate_per_second=1, daily_quota=3000),
        "market": BucketConfig(capacity=20, refill_rate_per_second=1, daily_quota=3000),
    }


@dataclass
class RetryConfig:
    """Exponential backoff settings."""

    default_retry_delay_ms: int = 1000
    max_retry_attempts: int = 3
    jitter_factor: float = 0.1

    def __post_init__(self) -> None:
        if self.default_retry_delay_ms < 0:
            raise ValueError(
                f"default_retry_delay_ms must be >= 0, got {self.default_retry_delay_ms}"
            )
        if self.max_retry_attempts < 0:
            raise ValueError(f"max_retry_attempts must be >= 0, got {self.max_retry_attempts}")
        if not 0.0 <= self.jitter_factor <= 1.0:
            raise ValueError(f"jitter_factor must be in [0, 1], got {self.jitter_factor}")


@dataclass
class CoordinationConfig:
    """Short-window cap on simultaneous requests per bucket."""

    enabled: bool = True
    window_ms: int = 5000
    concurrency_divisor: int = 10

    def __post_init__(self) -> None:
        if self.window_ms < 2:
            raise ValueError(f"window_ms must be >= 2, got {self.window_ms}")
        if self.concurrency_divisor < 1:
            raise ValueError(f"concurrency_divisor must be >= 1, got {self.concurrency_divisor}")


@dataclass
class RateLimiterConfig:
    """Registry-wide rate limiting configuration."""

    buckets: dict[str, BucketConfig] = field(default_factory=default_buckets)
    retry: RetryConfig = field(default_factory=RetryConfig)
    coordination: CoordinationConfig = field(default_factory=CoordinationConfig)
    # Longest single wait acquire_or_wait() will sit out before giving up
    max_wait_ms: int = 60000

    def __post_init__(self) -> None:
        if self.max_wait_ms < 0:
            raise ValueError(f"max_wait_ms must be >= 0, got {self.max_wait_ms}")

    @classmethod
    def from_env(cls) -> RateLimiterConfig:
        """Build from NEWSDATA_* environment variables, falling back to defaults."""
        reset_hour = _env_int("NEWSDATA_RATE_LIMIT_RESET_HOUR", 0)
        buckets: dict[str, BucketConfig] = {}
        for name, default in default_buckets().items():
            prefix = f"NEWSDATA_RATE_LIMIT_{name.upper()}"
            buckets[name] = BucketConfig(
                capacity=_env_int(f"{prefix}_CAPACITY", default.capacity),
                refill_rate_per_second=_env_float(f"{prefix}_REFILL", default.refill_rate_per_second),
                daily_quota=_env_int(f"{prefix}_QUOTA", default.daily_quota),
                reset_hour_utc=reset_hour,
            )

        return cls(
            buckets=buckets,
            retry=RetryConfig(
                default_retry_delay_ms=_env_int("NEWSDATA_RETRY_DELAY", 1000),
                max_retry_attempts=_env_int("NEWSDATA_MAX_RETRIES", 3),
                jitter_factor=_env_float("NEWSDATA_JITTER_FACTOR", 0.1),
            ),
            coordination=CoordinationConfig(
                enabled=os.environ.get("NEWSDATA_COORDINATION_ENABLED", "true").lower() != "false",
                window_ms=_env_int("NEWSDATA_COORDINATION_WINDOW", 5000),
            ),
        )


@dataclass
class CircuitBreakerConfig:
    """Circuit breaker thresholds."""

    failure_threshold: int = 5
    reset_timeout_ms: int = 60000
    half_open_max_calls: int = 3
    monitoring_period_ms: int = 60000
    success_threshold: int = 2
    volume_threshold: int = 5

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError(f"failure_threshold must be >= 1, got {self.failure_threshold}")
        if self.reset_timeout_ms < 0:
            raise ValueError(f"reset_timeout_ms must be >= 0, got {self.reset_timeout_ms}")
        if self.half_open_max_calls < 1:
            raise ValueError(f"half_open_max_calls must be >= 1, got {self.half_open_max_calls}")
        if self.monitoring_period_ms < 1:
            raise ValueError(
                f"monitoring_period_ms must be >= 1, got {self.monitoring_period_ms}"
            )
        if not 1 <= self.success_threshold <= self.half_open_max_calls:
            raise ValueError(
                "success_threshold must be in [1, half_open_max_calls], "
                f"got {self.success_threshold}"
            )
        if self.volume_threshold < 1:
            raise ValueError(f"volume_threshold must be >= 1, got {self.volume_threshold}")


@dataclass
class CacheConfig:
    """Fallback cache settings."""

    ttl_ms: int = 15 * 60 * 1000
    max_entries: int = 1000
    sweep_interval_ms: int = 60000

    def __post_init__(self) -> None:
        if self.ttl_ms < 0:
            raise ValueError(f"ttl_ms must be >= 0, got {self.ttl_ms}")
        if self.max_entries < 1:
            raise ValueError(f"max_entries must be >= 1, got {self.max_entries}")
        if self.sweep_interval_ms < 1:
            raise ValueError(f"sweep_interval_ms must be >= 1, got {self.sweep_interval_ms}")


@dataclass
class ResilientClientConfig:
    """Everything one ResilientClient composes."""

    name: str = "client"
    source: DataSource = "news"
    provider: str = "unknown"
    rate_limiter: RateLimiterConfig = field(default_factory=RateLimiterConfig)
    circuit: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    default_bucket: str = "latest"
    operation_buckets: dict[str, str] = field(default_factory=dict)
    # Hard cap on a single fn() call; transport carries its own timeout
    call_timeout_ms: int | None = None

    def __post_init__(self) -> None:
        if self.default_bucket not in self.rate_limiter.buckets:
            raise ValueError(f"default_bucket {self.default_bucket!r} is not a configured bucket")
        for operation, bucket in self.operation_buckets.items():
            if bucket not in self.rate_limiter.buckets:
                raise ValueError(f"operation {operation!r} maps to unknown bucket {bucket!r}")
        if self.call_timeout_ms is not None and self.call_timeout_ms <= 0:
            raise ValueError(f"call_timeout_ms must be > 0, got {self.call_timeout_ms}")


@dataclass
class NewsDataConfig:
    """NewsData.io provider settings."""

    api_key: str = ""
    base_url: str = "https://newsdata.io/api/1"
    request_timeout_ms: int = 15000

    def __post_init__(self) -> None:
        if not self.api_key:
            self.api_key = os.environ.get("NEWSDATA_API_KEY", "")
        if self.request_timeout_ms <= 0:
            raise ValueError(f"request_timeout_ms must be > 0, got {self.request_timeout_ms}")


@dataclass
class PolymarketConfig:
    """Polymarket Gamma events API settings."""

    gamma_api_url: str = ""
    events_api_rate_limit: int = 500
    event_cache_ttl_s: int = 300
    circuit_breaker_threshold: int = 5
    politics_tag_id: int = 2
    request_timeout_ms: int = 15000
    health_check_timeout_ms: int = 5000

    def __post_init__(self) -> None:
        if not self.gamma_api_url:
            self.gamma_api_url = os.environ.get(
                "POLYMARKET_GAMMA_API_URL", "https://gamma-api.polymarket.com"
            )
        if self.events_api_rate_limit < 10:
            raise ValueError(
                f"events_api_rate_limit must be >= 10, got {self.events_api_rate_limit}"
            )
        if self.event_cache_ttl_s < 0:
            raise ValueError(f"event_cache_ttl_s must be >= 0, got {self.event_cache_ttl_s}")
        if self.request_timeout_ms <= 0:
            raise ValueError(f"request_timeout_ms must be > 0, got {self.request_timeout_ms}")
