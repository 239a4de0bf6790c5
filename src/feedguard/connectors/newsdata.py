"""
NewsData.io client.

Each endpoint class (latest, archive, crypto, market) draws from its own
token bucket. Results are cached per endpoint and query so an outage can be
served from the last good response.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

from feedguard.config import (
    CacheConfig,
    CircuitBreakerConfig,
    NewsDataConfig,
    RateLimiterConfig,
    ResilientClientConfig,
)
from feedguard.connectors.transport import HttpTransport
from feedguard.errors import NonRetryableTransportError
from feedguard.resilience.client import ResilientClient
from feedguard.resilience.rate_limiter import BucketName, SleepFn

if TYPE_CHECKING:
    from types import TracebackType

    from feedguard.contracts.events import DataFetchSink

logger = logging.getLogger(__name__)

PROVIDER = "newsdata.io"

# Endpoint path -> bucket
ENDPOINT_BUCKETS: dict[str, BucketName] = {
    "latest": BucketName.LATEST,
    "archive": BucketName.ARCHIVE,
    "crypto": BucketName.CRYPTO,
    "market": BucketName.MARKET,
}


def _query_value(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, list | tuple | set):
        return ",".join(str(v) for v in sorted(value))
    return str(value)


def normalize_query(query: dict[str, Any]) -> dict[str, str]:
    """Drop None values and flatten lists into NewsData's comma syntax."""
    return {key: _query_value(value) for key, value in sorted(query.items()) if value is not None}


def cache_key(endpoint: str, query: dict[str, str]) -> str:
    """Stable cache key: endpoint plus the sorted query string."""
    return f"{endpoint}:{urlencode(sorted(query.items()))}"


class NewsDataClient:
    """
    NewsData.io endpoints behind the resilience gateway.

    Usage:
        async with NewsDataClient(NewsDataConfig()) as news:
            articles = await news.fetch_crypto_news(coin=["btc", "eth"], language="en")
    """

    def __init__(
        self,
        config: NewsDataConfig | None = None,
        *,
        rate_limiter: RateLimiterConfig | None = None,
        circuit: CircuitBreakerConfig | None = None,
        cache: CacheConfig | None = None,
        transport: HttpTransport | None = None,
        sink: DataFetchSink | None = None,
        time_fn: Callable[[], int] | None = None,
        sleep_fn: SleepFn | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """
        Args:
            config: Provider settings; api_key defaults to NEWSDATA_API_KEY.
            rate_limiter: Bucket settings (default: RateLimiterConfig.from_env()).
            circuit: Breaker thresholds.
            cache: Fallback cache settings.
            transport: HTTP transport (default: built with the provider timeout).
            sink: Optional receiver of DataFetchEvents.
            time_fn: Epoch-ms clock, injectable for tests.
            sleep_fn: Awaitable sleep(delay_ms, cancel_event), injectable for tests.
            rng: Random source for jitter.

        Raises:
            ValueError: If no API key is configured.
        """
        self._config = config or NewsDataConfig()
        if not self._config.api_key:
            raise ValueError("NewsData API key missing (set NEWSDATA_API_KEY)")

        limiter_config = rate_limiter or RateLimiterConfig.from_env()
        self._transport = transport or HttpTransport(
            timeout_ms=self._config.request_timeout_ms,
            retry=limiter_config.retry,
            sleep_fn=sleep_fn,
            rng=rng,
        )
        self.client = ResilientClient(
            ResilientClientConfig(
                name="newsdata",
                source="news",
                provider=PROVIDER,
                rate_limiter=limiter_config,
                circuit=circuit or CircuitBreakerConfig(),
                cache=cache or CacheConfig(),
                default_bucket=BucketName.LATEST.value,
            ),
            sink=sink,
            time_fn=time_fn,
            sleep_fn=sleep_fn,
            rng=rng,
        )

    async def _fetch(self, endpoint: str, query: dict[str, Any]) -> list[dict[str, Any]]:
        params = normalize_query(query)
        key = cache_key(endpoint, params)
        url = f"{self._config.base_url.rstrip('/')}/{endpoint}"
        bucket = ENDPOINT_BUCKETS[endpoint]

        async def call() -> list[dict[str, Any]]:
            # execute() pays for the first attempt, each retry takes its own token
            data = await self._transport.fetch_with_retry(
                url,
                params={**params, "apikey": self._config.api_key},
                before_retry=lambda: self.client.acquire_or_wait(bucket),
            )
            return self._extract_results(data, url)

        return await self.client.execute(
            call,
            operation_name=key,
            bucket=bucket,
        )

    @staticmethod
    def _extract_results(data: Any, url: str) -> list[dict[str, Any]]:
        if not isinstance(data, dict):
            raise NonRetryableTransportError("Expected a JSON object", status=200, url=url)
        if data.get("status") == "error":
            detail = data.get("results")
            message = detail.get("message") if isinstance(detail, dict) else detail
            raise NonRetryableTransportError(f"NewsData error: {message}", status=200, url=url)
        results = data.get("results") or []
        if not isinstance(results, list):
            raise NonRetryableTransportError("Expected results to be a list", status=200, url=url)
        logger.debug(
            "NewsData results",
            extra={"url": url, "count": len(results), "total_results": data.get("totalResults")},
        )
        return results

    async def fetch_latest_news(self, **query: Any) -> list[dict[str, Any]]:
        """Latest articles (past 48h). Query keys follow the NewsData API (q, country, language, ...)."""
        return await self._fetch("latest", query)

    async def fetch_archive_news(self, **query: Any) -> list[dict[str, Any]]:
        """Historical articles; expects from_date / to_date."""
        return await self._fetch("archive", query)

    async def fetch_crypto_news(self, **query: Any) -> list[dict[str, Any]]:
        """Crypto news; supports coin=[...]."""
        return await self._fetch("crypto", query)

    async def fetch_market_news(self, **query: Any) -> list[dict[str, Any]]:
        """Financial market news; supports symbol=[...]."""
        return await self._fetch("market", query)

    def get_status(self) -> dict[str, Any]:
        return self.client.get_client_status()

    async def start(self) -> None:
        await self.client.start()

    async def close(self) -> None:
        """Stop background tasks and close the HTTP session."""
        await self.client.close()
        await self._transport.close()

    async def __aenter__(self) -> NewsDataClient:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()
