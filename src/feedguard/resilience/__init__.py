"""Resilience gateway: rate limiting, circuit breaking, backoff and fallback."""

from feedguard.resilience.backoff import calculate_backoff_delay, is_retryable_error, sleep_ms
from feedguard.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerStats,
    CircuitState,
)
from feedguard.resilience.client import ResilientClient
from feedguard.resilience.fallback_cache import CacheEntry, FallbackCache
from feedguard.resilience.rate_limiter import BucketName, RateLimiterRegistry
from feedguard.resilience.token_bucket import BucketStatus, RequestResult, TokenBucket

__all__ = [
    "BucketName",
    "BucketStatus",
    "CacheEntry",
    "CircuitBreaker",
    "CircuitBreakerStats",
    "CircuitState",
    "FallbackCache",
    "RateLimiterRegistry",
    "RequestResult",
    "ResilientClient",
    "TokenBucket",
    "calculate_backoff_delay",
    "is_retryable_error",
    "sleep_ms",
]
