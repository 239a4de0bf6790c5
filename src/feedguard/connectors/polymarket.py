"""
Polymarket Gamma events API client.

A single "events" bucket sized from events_api_rate_limit (per 10 s window)
guards every call. List operations degrade to cached data and finally to an
empty list; event details degrade to cached data only.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

from feedguard.config import (
    BucketConfig,
    CacheConfig,
    CircuitBreakerConfig,
    CoordinationConfig,
    PolymarketConfig,
    RateLimiterConfig,
    ResilientClientConfig,
)
from feedguard.connectors.transport import HttpTransport
from feedguard.errors import NonRetryableTransportError, TransportError
from feedguard.resilience.client import ResilientClient
from feedguard.resilience.rate_limiter import SleepFn

if TYPE_CHECKING:
    from types import TracebackType

    from feedguard.contracts.events import DataFetchSink

logger = logging.getLogger(__name__)

PROVIDER = "polymarket"
EVENTS_BUCKET = "events"

# Gamma publishes its limit per 10 s window
RATE_WINDOW_S = 10
SECONDS_PER_DAY = 86400
BATCH_SIZE = 10


@dataclass(frozen=True)
class ApiHealthStatus:
    """Result of a health probe."""

    healthy: bool
    response_time_ms: int
    timestamp: int
    status: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "response_time_ms": self.response_time_ms,
            "timestamp": self.timestamp,
            "status": self.status,
        }


def events_bucket(config: PolymarketConfig) -> BucketConfig:
    """Token bucket matching the Gamma events limit. No daily quota to speak of."""
    refill = config.events_api_rate_limit / RATE_WINDOW_S
    return BucketConfig(
        capacity=config.events_api_rate_limit,
        refill_rate_per_second=refill,
        daily_quota=int(refill * SECONDS_PER_DAY),
    )


def _bool_param(value: bool) -> str:
    return "true" if value else "false"


class PolymarketEventsClient:
    """
    Gamma /events endpoints behind the resilience gateway.

    Usage:
        async with PolymarketEventsClient() as events:
            political = await events.discover_political_events(limit=20)
    """

    def __init__(
        self,
        config: PolymarketConfig | None = None,
        *,
        coordination: CoordinationConfig | None = None,
        transport: HttpTransport | None = None,
        sink: DataFetchSink | None = None,
        time_fn: Callable[[], int] | None = None,
        sleep_fn: SleepFn | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._config = config or PolymarketConfig()
        self._time_fn = time_fn
        self._transport = transport or HttpTransport(
            timeout_ms=self._config.request_timeout_ms,
            sleep_fn=sleep_fn,
            rng=rng,
        )
        self.client = ResilientClient(
            ResilientClientConfig(
                name="polymarket-events",
                source="market",
                provider=PROVIDER,
                rate_limiter=RateLimiterConfig(
                    buckets={EVENTS_BUCKET: events_bucket(self._config)},
                    coordination=coordination or CoordinationConfig(),
                ),
                circuit=CircuitBreakerConfig(failure_threshold=self._config.circuit_breaker_threshold),
                cache=CacheConfig(ttl_ms=self._config.event_cache_ttl_s * 1000),
                default_bucket=EVENTS_BUCKET,
            ),
            sink=sink,
            time_fn=time_fn,
            sleep_fn=sleep_fn,
            rng=rng,
        )

    def _now_ms(self) -> int:
        if self._time_fn is not None:
            return self._time_fn()
        return int(time.time() * 1000)

    @property
    def events_url(self) -> str:
        return f"{self._config.gamma_api_url.rstrip('/')}/events"

    async def _acquire_retry_token(self) -> None:
        """Each retried request draws its own events token."""
        await self.client.acquire_or_wait(EVENTS_BUCKET)

    # ------------------------------------------------------------------
    # List operations
    # ------------------------------------------------------------------

    async def _fetch_event_list(self, operation: str, params: dict[str, str]) -> list[dict[str, Any]]:
        key = f"{operation}:{urlencode(sorted(params.items()))}"
        url = self.events_url

        async def call() -> list[dict[str, Any]]:
            data = await self._transport.fetch_with_retry(
                url, params=params, before_retry=self._acquire_retry_token
            )
            if not isinstance(data, list):
                raise NonRetryableTransportError("Expected a JSON list of events", status=200, url=url)
            return data

        async def fallback() -> list[dict[str, Any]]:
            entry = self.client.cache.lookup(key)
            if entry is not None:
                logger.info("Using cached events", extra={"operation": operation})
                return entry.payload
            logger.warning("No cached events, returning empty list", extra={"operation": operation})
            return []

        return await self.client.execute(call, fallback, key)

    async def discover_political_events(
        self,
        limit: int = 20,
        offset: int = 0,
        *,
        tag_id: int | None = None,
        related_tags: bool = True,
        active: bool = True,
        closed: bool = False,
        start_date_min: str | None = None,
        end_date_max: str | None = None,
        order: str | None = None,
        ascending: bool | None = None,
    ) -> list[dict[str, Any]]:
        """Events under the politics tag (or tag_id), newest Gamma ordering by default."""
        params = {
            "tag_id": str(tag_id if tag_id is not None else self._config.politics_tag_id),
            "related_tags": _bool_param(related_tags),
            "active": _bool_param(active),
            "closed": _bool_param(closed),
            "limit": str(limit),
            "offset": str(offset),
        }
        if start_date_min:
            params["start_date_min"] = start_date_min
        if end_date_max:
            params["end_date_max"] = end_date_max
        if order:
            params["order"] = order
            if ascending is not None:
                params["ascending"] = _bool_param(ascending)
        return await self._fetch_event_list("political", params)

    async def fetch_events_by_tag(
        self,
        tag_id: int,
        *,
        limit: int = 50,
        offset: int = 0,
        related_tags: bool = True,
        active: bool = True,
        closed: bool = False,
        exclude_tag_id: int | None = None,
    ) -> list[dict[str, Any]]:
        """Events carrying tag_id."""
        params = {
            "tag_id": str(tag_id),
            "related_tags": _bool_param(related_tags),
            "active": _bool_param(active),
            "closed": _bool_param(closed),
            "limit": str(limit),
            "offset": str(offset),
        }
        if exclude_tag_id is not None:
            params["exclude_tag_id"] = str(exclude_tag_id)
        return await self._fetch_event_list(f"tag_{tag_id}", params)

    # ------------------------------------------------------------------
    # Single event
    # ------------------------------------------------------------------

    async def fetch_event_details(self, event_id: str) -> dict[str, Any]:
        """
        One event with its nested markets.

        Raises:
            CircuitOpenError: Circuit open and the event is not cached (the
                cause is FallbackUnavailableError).
            TransportError: Provider failure and the event is not cached.
        """
        url = f"{self.events_url}/{event_id}"

        async def call() -> dict[str, Any]:
            data = await self._transport.fetch_with_retry(url, before_retry=self._acquire_retry_token)
            if not isinstance(data, dict):
                raise NonRetryableTransportError("Expected a JSON event object", status=200, url=url)
            return data

        # No fallback_fn: the gateway falls back to the cache entry for this key
        return await self.client.execute(call, operation_name=f"event_{event_id}")

    async def fetch_events_batch(self, event_ids: list[str]) -> list[dict[str, Any]]:
        """Fetch events BATCH_SIZE at a time; failures are logged and skipped."""
        events: list[dict[str, Any]] = []
        for start in range(0, len(event_ids), BATCH_SIZE):
            batch = event_ids[start : start + BATCH_SIZE]
            results = await asyncio.gather(
                *(self.fetch_event_details(event_id) for event_id in batch),
                return_exceptions=True,
            )
            for event_id, result in zip(batch, results, strict=True):
                if isinstance(result, Exception):
                    logger.warning(
                        "Failed to fetch event in batch",
                        extra={"event_id": event_id, "error": str(result)},
                    )
                    continue
                if isinstance(result, BaseException):
                    raise result
                events.append(result)
        return events

    # ------------------------------------------------------------------
    # Health and status
    # ------------------------------------------------------------------

    async def check_events_api_health(self) -> ApiHealthStatus:
        """Single GET /events?limit=1 outside the gateway. Never raises."""
        started_ms = self._now_ms()
        try:
            await self._transport.get_json(
                self.events_url,
                {"limit": "1"},
                timeout_ms=self._config.health_check_timeout_ms,
            )
        except TransportError as exc:
            elapsed = self._now_ms() - started_ms
            logger.warning(
                "Events API health check failed",
                extra={"status": exc.status, "error": str(exc), "response_time_ms": elapsed},
            )
            return ApiHealthStatus(
                healthy=False, response_time_ms=elapsed, timestamp=self._now_ms(), status=exc.status
            )

        elapsed = self._now_ms() - started_ms
        logger.debug("Events API health check passed", extra={"response_time_ms": elapsed})
        return ApiHealthStatus(healthy=True, response_time_ms=elapsed, timestamp=self._now_ms(), status=200)

    def get_status(self) -> dict[str, Any]:
        return self.client.get_client_status()

    async def start(self) -> None:
        await self.client.start()

    async def close(self) -> None:
        """Stop background tasks and close the HTTP session."""
        await self.client.close()
        await self._transport.close()

    async def __aenter__(self) -> PolymarketEventsClient:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()
