"""
ResilientClient: the gateway every outbound provider call passes through.

Order of checks for one execute():
1. circuit breaker (OPEN short-circuits to the fallback)
2. rate limiter (waits for a token, bounded by max_wait_ms)
3. the call itself, bounded by call_timeout_ms
Successful results are cached under the operation name so later outages can
be served from cache.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, TypeVar

from feedguard.config import ResilientClientConfig
from feedguard.contracts.events import RATE_LIMITED_PREFIX, DataFetchEvent
from feedguard.errors import (
    CircuitOpenError,
    FallbackUnavailableError,
    OperationCancelledError,
    RateLimitRejection,
)
from feedguard.resilience.backoff import is_retryable_error
from feedguard.resilience.circuit_breaker import CircuitBreaker, CircuitBreakerStats, CircuitState
from feedguard.resilience.fallback_cache import FallbackCache
from feedguard.resilience.rate_limiter import (
    BucketName,
    RateLimiterRegistry,
    RetryCallback,
    SleepFn,
)
from feedguard.resilience.token_bucket import BucketStatus, RequestResult

if TYPE_CHECKING:
    from types import TracebackType

    from feedguard.contracts.events import DataFetchSink

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Operation label used when the caller gives none; never cached
UNNAMED_OPERATION = "unnamed"

# Sentinel: a fallback may legitimately return None
_NO_FALLBACK: Any = object()


def _item_count(payload: Any) -> int:
    if payload is None:
        return 0
    if isinstance(payload, list | tuple):
        return len(payload)
    return 1


class ResilientClient:
    """
    Circuit breaker, rate limiter and fallback cache around provider calls.

    Usage:
        async with ResilientClient(config) as client:
            articles = await client.execute(
                lambda: transport.fetch_with_retry(url),
                operation_name="latest:q=bitcoin",
            )
    """

    def __init__(
        self,
        config: ResilientClientConfig | None = None,
        *,
        rate_limiter: RateLimiterRegistry | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        cache: FallbackCache | None = None,
        sink: DataFetchSink | None = None,
        time_fn: Callable[[], int] | None = None,
        sleep_fn: SleepFn | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """
        Args:
            config: Client configuration; components are built from it
                unless passed in explicitly.
            rate_limiter: Shared registry (default: built from config).
            circuit_breaker: Breaker (default: built from config).
            cache: Fallback cache (default: built from config).
            sink: Optional receiver of DataFetchEvents.
            time_fn: Epoch-ms clock, injectable for tests.
            sleep_fn: Awaitable sleep(delay_ms, cancel_event), injectable for tests.
            rng: Random source for jitter.
        """
        self._config = config or ResilientClientConfig()
        self._time_fn = time_fn
        self._sink = sink

        self.rate_limiter = rate_limiter or RateLimiterRegistry(
            self._config.rate_limiter,
            source=self._config.source,
            provider=self._config.provider,
            sink=sink,
            time_fn=time_fn,
            sleep_fn=sleep_fn,
            rng=rng,
        )
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            config=self._config.circuit,
            name=self._config.name,
            _time_fn=time_fn,
        )
        self.cache = cache or FallbackCache(self._config.cache, time_fn=time_fn)

    @property
    def config(self) -> ResilientClientConfig:
        return self._config

    @property
    def name(self) -> str:
        return self._config.name

    def _now_ms(self) -> int:
        if self._time_fn is not None:
            return self._time_fn()
        return int(time.time() * 1000)

    def set_sink(self, sink: DataFetchSink | None) -> None:
        """Attach (or detach) the receiver of DataFetchEvents."""
        self._sink = sink
        self.rate_limiter.set_sink(sink)

    def bucket_for(self, operation_name: str | None) -> str:
        """Bucket mapped to the operation, else the default bucket."""
        if operation_name is not None and operation_name in self._config.operation_buckets:
            return self._config.operation_buckets[operation_name]
        return self._config.default_bucket

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        fn: Callable[[], Awaitable[T]],
        fallback_fn: Callable[[], Awaitable[T]] | None = None,
        operation_name: str | None = None,
        *,
        bucket: str | BucketName | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> T:
        """
        Run fn through the breaker, limiter and fallback chain.

        Args:
            fn: The provider call.
            fallback_fn: Dedicated fallback. Without one, the cache entry for
                operation_name is used.
            operation_name: Cache key and log/metric label.
            bucket: Bucket override (default: bucket_for(operation_name)).
            cancel_event: Set to abandon any wait.

        Returns:
            Live result, or fallback data when the provider is unavailable.

        Raises:
            CircuitOpenError: Circuit is open and no fallback is available.
            RateLimitRejection: Limiter wait budget exceeded and no fallback.
            OperationCancelledError: cancel_event was set while waiting.
            Exception: The provider error when no fallback succeeded.
        """
        operation = operation_name or UNNAMED_OPERATION
        started_ms = self._now_ms()

        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelledError(f"Operation {operation} cancelled")

        # 1. Circuit breaker
        if not self.circuit_breaker.can_make_request():
            stats = self.circuit_breaker.get_stats()
            logger.warning(
                "Circuit open, using fallback",
                extra={"client": self.name, "operation": operation, "next_attempt_at": stats.next_attempt_at},
            )
            try:
                result = await self._resolve_fallback(fallback_fn, operation_name)
            except Exception as fallback_exc:
                if not isinstance(fallback_exc, FallbackUnavailableError):
                    logger.warning(
                        "Fallback failed",
                        extra={"client": self.name, "operation": operation, "error": str(fallback_exc)},
                    )
                self._emit(operation, started_ms, success=False, error="circuit_open")
                raise CircuitOpenError(
                    f"Circuit breaker OPEN for {self.name}, no fallback for {operation}",
                    state=stats.state.value,
                    next_attempt_at=stats.next_attempt_at,
                ) from fallback_exc
            self._emit(operation, started_ms, success=True, cached=True, payload=result)
            return result

        # A half-open slot goes back if the provider is never called
        holds_half_open_slot = self.circuit_breaker.state == CircuitState.HALF_OPEN

        # 2. Rate limiter
        target_bucket = bucket if bucket is not None else self.bucket_for(operation_name)
        try:
            await self.rate_limiter.acquire_or_wait(target_bucket, cancel_event=cancel_event)
        except (OperationCancelledError, asyncio.CancelledError):
            if holds_half_open_slot:
                self.circuit_breaker.release_half_open_slot()
            raise
        except RateLimitRejection as rejection:
            if holds_half_open_slot:
                self.circuit_breaker.release_half_open_slot()
            logger.warning(
                "Rate limit wait exceeded, trying fallback",
                extra={
                    "client": self.name,
                    "operation": operation,
                    "reason": rejection.reason.value,
                    "retry_after_ms": rejection.retry_after_ms,
                },
            )
            result = await self._try_fallback(fallback_fn, operation_name, operation)
            if result is _NO_FALLBACK:
                self._emit(
                    operation,
                    started_ms,
                    success=False,
                    error=f"{RATE_LIMITED_PREFIX}:{rejection.reason.value}",
                )
                raise
            self._emit(operation, started_ms, success=True, cached=True, payload=result)
            return result

        # 3. The call
        try:
            result = await self._call(fn)
        except Exception as exc:
            self.circuit_breaker.record_failure()
            retryable = is_retryable_error(exc)
            logger.warning(
                "Provider call failed",
                extra={
                    "client": self.name,
                    "operation": operation,
                    "error": str(exc),
                    "retryable": retryable,
                    "circuit_state": self.circuit_breaker.state.value,
                },
            )
            if retryable or self.circuit_breaker.state == CircuitState.OPEN:
                fallback = await self._try_fallback(fallback_fn, operation_name, operation)
                if fallback is not _NO_FALLBACK:
                    self._emit(operation, started_ms, success=True, cached=True, payload=fallback)
                    return fallback
            self._emit(operation, started_ms, success=False, error=str(exc))
            raise

        self.circuit_breaker.record_success()
        if operation_name is not None:
            self.cache.put(operation_name, result)
        self._emit(operation, started_ms, success=True, payload=result)
        return result

    async def _call(self, fn: Callable[[], Awaitable[T]]) -> T:
        if self._config.call_timeout_ms is None:
            return await fn()
        return await asyncio.wait_for(fn(), timeout=self._config.call_timeout_ms / 1000)

    async def _resolve_fallback(
        self,
        fallback_fn: Callable[[], Awaitable[T]] | None,
        operation_name: str | None,
    ) -> T:
        if fallback_fn is not None:
            return await fallback_fn()
        if operation_name is not None:
            entry = self.cache.lookup(operation_name)
            if entry is not None:
                logger.info(
                    "Serving cached data",
                    extra={
                        "client": self.name,
                        "operation": operation_name,
                        "age_ms": entry.age_ms(self._now_ms()),
                    },
                )
                return entry.payload
        raise FallbackUnavailableError(operation_name or UNNAMED_OPERATION)

    async def _try_fallback(
        self,
        fallback_fn: Callable[[], Awaitable[T]] | None,
        operation_name: str | None,
        operation: str,
    ) -> Any:
        """Fallback result, or _NO_FALLBACK. Fallback errors are logged only."""
        try:
            return await self._resolve_fallback(fallback_fn, operation_name)
        except FallbackUnavailableError:
            logger.info("No fallback available", extra={"client": self.name, "operation": operation})
        except Exception as exc:
            logger.warning(
                "Fallback failed",
                extra={"client": self.name, "operation": operation, "error": str(exc)},
            )
        return _NO_FALLBACK

    def _emit(
        self,
        operation: str,
        started_ms: int,
        *,
        success: bool,
        cached: bool = False,
        error: str | None = None,
        payload: Any = None,
    ) -> None:
        now_ms = self._now_ms()
        duration_ms = max(0, now_ms - started_ms)
        if success:
            logger.debug(
                "Fetch complete",
                extra={
                    "client": self.name,
                    "operation": operation,
                    "cached": cached,
                    "duration_ms": duration_ms,
                },
            )
        if self._sink is None:
            return
        self._sink.record_fetch(
            DataFetchEvent(
                ts=now_ms,
                source=self._config.source,
                provider=self._config.provider,
                operation=operation,
                success=success,
                cached=cached,
                stale=cached,
                item_count=_item_count(payload) if success else 0,
                error=error,
                duration_ms=duration_ms,
            )
        )

    # ------------------------------------------------------------------
    # Pass-throughs
    # ------------------------------------------------------------------

    def try_consume(self, bucket: str | BucketName, tokens: int = 1) -> RequestResult:
        return self.rate_limiter.try_consume(bucket, tokens)

    async def acquire_or_wait(
        self,
        bucket: str | BucketName,
        tokens: int = 1,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> RequestResult:
        return await self.rate_limiter.acquire_or_wait(bucket, tokens, cancel_event=cancel_event)

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
        return await self.rate_limiter.execute_with_rate_limit(
            bucket,
            fn,
            tokens=tokens,
            max_retries=max_retries,
            on_retry=on_retry,
            cancel_event=cancel_event,
        )

    # ------------------------------------------------------------------
    # Introspection and administration
    # ------------------------------------------------------------------

    def get_bucket_status(self, bucket: str | BucketName) -> BucketStatus:
        return self.rate_limiter.get_bucket_status(bucket)

    def get_all_bucket_status(self) -> dict[str, BucketStatus]:
        return self.rate_limiter.get_all_bucket_status()

    def get_circuit_breaker_stats(self) -> CircuitBreakerStats:
        return self.circuit_breaker.get_stats()

    def get_client_status(self) -> dict[str, Any]:
        """Everything an operator needs to judge this client's health."""
        stats = self.circuit_breaker.get_stats()
        return {
            "name": self.name,
            "source": self._config.source,
            "provider": self._config.provider,
            "is_healthy": stats.state == CircuitState.CLOSED,
            "circuit_breaker": stats.to_dict(),
            "rate_limiter": self.rate_limiter.get_status(),
            "cache": {**self.cache.get_status(), "keys": self.cache.keys()},
        }

    def reset_bucket(self, bucket: str | BucketName) -> None:
        self.rate_limiter.reset_bucket(bucket)

    def reset_daily_usage(self, bucket: str | BucketName) -> None:
        self.rate_limiter.reset_daily_usage(bucket)

    def reset_circuit_breaker(self) -> None:
        self.circuit_breaker.reset()

    def clear_cache(self) -> None:
        self.cache.clear()
        logger.info("Fallback cache cleared", extra={"client": self.name})

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the coordination and cache sweeps."""
        await self.rate_limiter.start()
        await self.cache.start()

    async def close(self) -> None:
        """Stop background sweeps and wait for them to exit."""
        await self.rate_limiter.stop()
        await self.cache.stop()

    async def __aenter__(self) -> ResilientClient:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

