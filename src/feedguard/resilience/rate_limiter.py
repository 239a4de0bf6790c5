"""
Multi-bucket rate limiter registry.

One TokenBucket per named resource class, plus a coordination window that
caps how many requests a bucket admits within a few seconds. The window stops
a burst of concurrent tasks from draining a bucket's whole capacity at once.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
import threading
import time
from collections import deque
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

from feedguard.config import BucketConfig, DataSource, RateLimiterConfig
from feedguard.contracts.events import RATE_LIMITED_PREFIX, DataFetchEvent
from feedguard.errors import (
    RejectReason,
    RetriesExhaustedError,
    UnknownBucketError,
)
from feedguard.resilience.backoff import calculate_backoff_delay, is_retryable_error, sleep_ms
from feedguard.resilience.token_bucket import BucketStatus, RequestResult, TokenBucket

if TYPE_CHECKING:
    from feedguard.contracts.events import DataFetchSink

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFn = Callable[[int, "asyncio.Event | None"], Awaitable[None]]
RetryCallback = Callable[[int, int, str], None]

# Random wait handed back by the coordination gate: [min, min + span)
COORDINATION_RETRY_MIN_MS = 500
COORDINATION_RETRY_SPAN_MS = 1000


class BucketName(str, Enum):
    """Built-in NewsData.io bucket names."""

    LATEST = "latest"
    ARCHIVE = "archive"
    CRYPTO = "crypto"
    MARKET = "market"


def _bucket_key(bucket: str | BucketName) -> str:
    return bucket.value if isinstance(bucket, BucketName) else bucket


class RateLimiterRegistry:
    """
    Named token buckets with coordinated admission.

    Usage:
        registry = RateLimiterRegistry(RateLimiterConfig.from_env())
        await registry.start()
        await registry.acquire_or_wait(BucketName.LATEST)
        ...
        await registry.stop()
    """

    def __init__(
        self,
        config: RateLimiterConfig | None = None,
        *,
        source: DataSource = "news",
        provider: str = "unknown",
        sink: DataFetchSink | None = None,
        time_fn: Callable[[], int] | None = None,
        sleep_fn: SleepFn | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """
        Args:
            config: Bucket, retry and coordination settings.
            source: Source label on emitted rejection events.
            provider: Provider label on emitted rejection events.
            sink: Optional receiver of rejection events.
            time_fn: Epoch-ms clock, injectable for tests.
            sleep_fn: Awaitable sleep(delay_ms, cancel_event), injectable for tests.
            rng: Random source for jitter and coordination retry delays.
        """
        self._config = config or RateLimiterConfig()
        self._source = source
        self._provider = provider
        self._sink = sink
        self._time_fn = time_fn
        self._sleep_fn: SleepFn = sleep_fn or sleep_ms
        self._rng = rng or random.Random()

        self._buckets: dict[str, TokenBucket] = {}
        self._windows: dict[str, deque[int]] = {}
        self._lock = threading.Lock()

        self._sweep_task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None

        for name, bucket_config in list(self._config.buckets.items()):
            self.register_bucket(name, bucket_config)

    @property
    def config(self) -> RateLimiterConfig:
        return self._config

    def set_sink(self, sink: DataFetchSink | None) -> None:
        self._sink = sink

    def _now_ms(self) -> int:
        if self._time_fn is not None:
            return self._time_fn()
        return int(time.time() * 1000)

    # ------------------------------------------------------------------
    # Registration and lookup
    # ------------------------------------------------------------------

    def register_bucket(self, name: str | BucketName, config: BucketConfig) -> TokenBucket:
        """Add or replace a bucket. Replacing discards its state."""
        key = _bucket_key(name)
        bucket = TokenBucket(config=config, name=key, _time_fn=self._time_fn)
        with self._lock:
            self._buckets[key] = bucket
            self._windows[key] = deque()
        self._config.buckets[key] = config
        logger.debug(
            "Registered bucket",
            extra={
                "bucket": key,
                "capacity": config.capacity,
                "refill_rate_per_second": config.refill_rate_per_second,
                "daily_quota": config.daily_quota,
            },
        )
        return bucket

    def bucket_names(self) -> list[str]:
        return list(self._buckets)

    def _get_bucket(self, bucket: str | BucketName) -> TokenBucket:
        key = _bucket_key(bucket)
        try:
            return self._buckets[key]
        except KeyError:
            raise UnknownBucketError(key) from None

    def max_concurrent(self, bucket: str | BucketName) -> int:
        """Admissions allowed per coordination window for this bucket."""
        config = self._get_bucket(bucket).config
        if config.max_concurrent is not None:
            return config.max_concurrent
        return max(1, config.capacity // self._config.coordination.concurrency_divisor)

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def _prune_window(self, window: deque[int], now_ms: int) -> None:
        cutoff = now_ms - self._config.coordination.window_ms
        while window and window[0] <= cutoff:
            window.popleft()

    def try_consume(self, bucket: str | BucketName, tokens: int = 1) -> RequestResult:
        """
        Coordination gate, then the bucket itself.

        Returns:
            RequestResult from the gate or the bucket.

        Raises:
            UnknownBucketError: If the bucket is not registered.
        """
        key = _bucket_key(bucket)
        token_bucket = self._get_bucket(key)

        if self._config.coordination.enabled:
            limit = self.max_concurrent(key)
            with self._lock:
                now_ms = self._now_ms()
                window = self._windows[key]
                self._prune_window(window, now_ms)
                if len(window) >= limit:
                    retry_after = COORDINATION_RETRY_MIN_MS + int(
                        self._rng.random() * COORDINATION_RETRY_SPAN_MS
                    )
                    result = RequestResult(
                        allowed=False,
                        retry_after_ms=retry_after,
                        reason=RejectReason.TOO_MANY_CONCURRENT,
                    )
                else:
                    window.append(now_ms)
                    result = None
            if result is not None:
                self._report_rejection(key, result)
                return result

        result = token_bucket.try_consume(tokens)
        if not result.allowed:
            self._report_rejection(key, result)
        return result

    def _report_rejection(self, bucket: str, result: RequestResult) -> None:
        reason = result.reason.value if result.reason is not None else "unknown"
        level = logging.WARNING if result.reason == RejectReason.DAILY_QUOTA_EXCEEDED else logging.INFO
        logger.log(
            level,
            "Rate limit rejection",
            extra={"bucket": bucket, "reason": reason, "retry_after_ms": result.retry_after_ms},
        )
        if self._sink is not None:
            self._sink.record_fetch(
                DataFetchEvent(
                    ts=self._now_ms(),
                    source=self._source,
                    provider=self._provider,
                    operation=bucket,
                    success=False,
                    error=f"{RATE_LIMITED_PREFIX}:{reason}",
                )
            )

    async def acquire_or_wait(
        self,
        bucket: str | BucketName,
        tokens: int = 1,
        *,
        max_wait_ms: int | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> RequestResult:
        """
        Block until the bucket admits the request.

        Args:
            bucket: Bucket name.
            tokens: Tokens to consume.
            max_wait_ms: Total wait budget (default config.max_wait_ms).
            cancel_event: Set to abandon the wait.

        Returns:
            The allowed RequestResult.

        Raises:
            RateLimitRejection: Typed subclass when the next required wait
                exceeds the remaining budget (e.g. daily quota exhausted).
            OperationCancelledError: If cancel_event is set while waiting.
        """
        key = _bucket_key(bucket)
        budget_ms = self._config.max_wait_ms if max_wait_ms is None else max_wait_ms
        waited_ms = 0

        while True:
            result = self.try_consume(key, tokens)
            if result.allowed:
                if waited_ms:
                    logger.debug("Acquired after wait", extra={"bucket": key, "waited_ms": waited_ms})
                return result

            rejection = result.to_rejection(key)
            delay_ms = max(1, result.retry_after_ms or 0)
            if waited_ms + delay_ms > budget_ms:
                raise rejection

            await self._sleep_fn(delay_ms, cancel_event)
            waited_ms += delay_ms

    async def execute_with_rate_limit(
        self,
        bucket: str | BucketName,
        fn: Callable[[], Awaitable[T]],
        *,
        tokens: int = 1,
        max_retries: int | None = None,
        on_retry: RetryCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> T:
        """
        Run fn under the bucket, retrying rejections and retryable errors.

        Makes up to max_retries + 1 attempts. Rejections wait their
        retry_after_ms; retryable fn() errors wait an exponential backoff.

        Raises:
            RetriesExhaustedError: When the final attempt is rejected or fails
                with a retryable error. The cause is chained.
            Exception: Non-retryable errors from fn() propagate unchanged.
        """
        key = _bucket_key(bucket)
        retry = self._config.retry
        retries = retry.max_retry_attempts if max_retries is None else max_retries
        total_attempts = retries + 1

        for attempt in range(1, total_attempts + 1):
            result = self.try_consume(key, tokens)

            if not result.allowed:
                rejection = result.to_rejection(key)
                if attempt == total_attempts:
                    raise RetriesExhaustedError(
                        f"Rate limit retries exhausted for bucket {key}",
                        attempts=attempt,
                        last_error=rejection,
                    ) from rejection
                delay_ms = result.retry_after_ms or calculate_backoff_delay(
                    attempt, retry.default_retry_delay_ms, retry.jitter_factor, rng=self._rng
                )
                self._notify_retry(on_retry, key, attempt, delay_ms, rejection.reason.value)
                await self._sleep_fn(delay_ms, cancel_event)
                continue

            try:
                return await fn()
            except Exception as exc:
                if not is_retryable_error(exc):
                    raise
                if attempt == total_attempts:
                    raise RetriesExhaustedError(
                        f"Retries exhausted for bucket {key}: {exc}",
                        attempts=attempt,
                        last_error=exc,
                    ) from exc
                delay_ms = calculate_backoff_delay(
                    attempt, retry.default_retry_delay_ms, retry.jitter_factor, rng=self._rng
                )
                self._notify_retry(on_retry, key, attempt, delay_ms, f"retryable_error: {exc}")
                await self._sleep_fn(delay_ms, cancel_event)

        # Loop always returns or raises
        raise AssertionError("unreachable")

    def _notify_retry(
        self,
        on_retry: RetryCallback | None,
        bucket: str,
        attempt: int,
        delay_ms: int,
        reason: str,
    ) -> None:
        logger.info(
            "Retrying rate-limited call",
            extra={"bucket": bucket, "attempt": attempt, "delay_ms": delay_ms, "reason": reason},
        )
        if on_retry is not None:
            on_retry(attempt, delay_ms, reason)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def can_make_request(self, bucket: str | BucketName, tokens: int = 1) -> bool:
        """Non-consuming check. Ignores the coordination window."""
        return self._get_bucket(bucket).can_consume(tokens)

    def get_tokens(self, bucket: str | BucketName) -> float:
        return self._get_bucket(bucket).tokens()

    def get_time_until_token(self, bucket: str | BucketName, tokens: int = 1) -> int:
        return self._get_bucket(bucket).time_until_token_ms(tokens)

    def get_bucket_status(self, bucket: str | BucketName) -> BucketStatus:
        return self._get_bucket(bucket).get_status()

    def get_all_bucket_status(self) -> dict[str, BucketStatus]:
        return {name: bucket.get_status() for name, bucket in self._buckets.items()}

    def coordination_depth(self, bucket: str | BucketName) -> int:
        """Admissions currently recorded in the bucket's coordination window."""
        key = _bucket_key(bucket)
        self._get_bucket(key)
        with self._lock:
            return len(self._windows[key])

    def get_status(self) -> dict[str, Any]:
        return {
            name: {**status.to_dict(), "coordination_depth": self.coordination_depth(name)}
            for name, status in self.get_all_bucket_status().items()
        }

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def _clear_window(self, key: str) -> None:
        with self._lock:
            self._windows[key].clear()

    def reset_bucket(self, bucket: str | BucketName) -> None:
        """Refill the bucket and clear its coordination window."""
        key = _bucket_key(bucket)
        self._get_bucket(key).reset()
        self._clear_window(key)
        logger.info("Bucket reset", extra={"bucket": key})

    def reset_daily_usage(self, bucket: str | BucketName) -> None:
        """Zero daily usage and clear the coordination window."""
        key = _bucket_key(bucket)
        self._get_bucket(key).reset_daily_usage()
        self._clear_window(key)
        logger.info("Daily usage reset", extra={"bucket": key})

    def reset_all_buckets(self) -> None:
        for name in self._buckets:
            self.reset_bucket(name)

    def reset_all_daily_usage(self) -> None:
        for name in self._buckets:
            self.reset_daily_usage(name)

    # ------------------------------------------------------------------
    # Coordination sweep
    # ------------------------------------------------------------------

    def sweep_coordination(self) -> int:
        """Drop timestamps older than the window. Returns how many were removed."""
        removed = 0
        with self._lock:
            now_ms = self._now_ms()
            for window in self._windows.values():
                before = len(window)
                self._prune_window(window, now_ms)
                removed += before - len(window)
        return removed

    async def _sweep_loop(self, stop_event: asyncio.Event) -> None:
        interval_s = self._config.coordination.window_ms / 2 / 1000
        while not stop_event.is_set():
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(stop_event.wait(), timeout=interval_s)
            if stop_event.is_set():
                break
            removed = self.sweep_coordination()
            if removed:
                logger.debug("Coordination sweep", extra={"removed": removed})

    @property
    def is_running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    async def start(self) -> None:
        """Start the background coordination sweep. No-op if running."""
        if self.is_running:
            return
        self._stop_event = asyncio.Event()
        self._sweep_task = asyncio.create_task(self._sweep_loop(self._stop_event))

    async def stop(self) -> None:
        """Signal the sweep to stop and wait for it."""
        if self._sweep_task is None or self._stop_event is None:
            return
        self._stop_event.set()
        await self._sweep_task
        self._sweep_task = None
        self._stop_event = None
