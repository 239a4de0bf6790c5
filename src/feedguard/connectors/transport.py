"""
HTTP transport for provider APIs.

Thin aiohttp GET wrapper: every request carries a hard timeout, responses are
classified into retryable and non-retryable failures, and fetch_with_retry()
backs off between retryable attempts.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from collections.abc import Awaitable, Callable
from typing import Any

import aiohttp

from feedguard.config import RetryConfig
from feedguard.errors import (
    NonRetryableTransportError,
    RateLimitRejection,
    RetryableTransportError,
    TransportError,
)
from feedguard.resilience.backoff import calculate_backoff_delay, sleep_ms
from feedguard.resilience.rate_limiter import SleepFn

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 15000

# Called before every retry; raises RateLimitRejection to stop retrying
BeforeRetryFn = Callable[[], Awaitable[Any]]


def parse_retry_after_ms(value: str | None) -> int | None:
    """Retry-After header (delta seconds) in milliseconds, if parseable."""
    if value is None:
        return None
    with contextlib.suppress(ValueError):
        return max(0, int(float(value) * 1000))
    return None


class HttpTransport:
    """
    aiohttp GET with timeout and error classification.

    4xx other than 429 raise NonRetryableTransportError. 429, 5xx, network
    errors and timeouts raise RetryableTransportError.
    """

    def __init__(
        self,
        *,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        retry: RetryConfig | None = None,
        headers: dict[str, str] | None = None,
        sleep_fn: SleepFn | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """
        Args:
            timeout_ms: Hard per-request timeout.
            retry: Backoff settings for fetch_with_retry().
            headers: Default request headers.
            sleep_fn: Awaitable sleep(delay_ms, cancel_event), injectable for tests.
            rng: Random source for jitter.
        """
        self._timeout_ms = timeout_ms
        self._retry = retry or RetryConfig()
        self._headers = headers or {}
        self._sleep_fn: SleepFn = sleep_fn or sleep_ms
        self._rng = rng
        self._session: aiohttp.ClientSession | None = None

    @property
    def timeout_ms(self) -> int:
        return self._timeout_ms

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._timeout_ms / 1000)
            self._session = aiohttp.ClientSession(timeout=timeout, headers=self._headers)
        return self._session

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def get_json(
        self,
        url: str,
        params: dict[str, Any] | None = None,
        *,
        timeout_ms: int | None = None,
    ) -> Any:
        """
        One GET, decoded as JSON.

        Args:
            url: Absolute URL.
            params: Query parameters.
            timeout_ms: Override of the transport timeout for this call.

        Returns:
            Decoded JSON object or list.

        Raises:
            RetryableTransportError: 429, 5xx, network error or timeout.
            NonRetryableTransportError: Other 4xx, or a body that is not a
                JSON object or list.
        """
        session = await self._get_session()
        request_kwargs: dict[str, Any] = {"params": params}
        if timeout_ms is not None:
            request_kwargs["timeout"] = aiohttp.ClientTimeout(total=timeout_ms / 1000)

        try:
            async with session.request("GET", url, **request_kwargs) as response:
                if response.status >= 400:
                    await self._raise_for_status(response, url)
                try:
                    data = await response.json(content_type=None)
                except ValueError as exc:
                    raise NonRetryableTransportError(
                        f"Invalid JSON from provider: {exc}", status=response.status, url=url
                    ) from exc
        except TransportError:
            raise
        except asyncio.TimeoutError as exc:
            raise RetryableTransportError(
                f"Request timeout after {timeout_ms or self._timeout_ms}ms", url=url
            ) from exc
        except aiohttp.ClientError as exc:
            raise RetryableTransportError(f"Network error: {exc}", url=url) from exc

        if not isinstance(data, dict | list):
            raise NonRetryableTransportError(
                f"Unexpected payload type {type(data).__name__}", status=200, url=url
            )
        return data

    async def _raise_for_status(self, response: aiohttp.ClientResponse, url: str) -> None:
        status = response.status
        text = ""
        with contextlib.suppress(aiohttp.ClientError, UnicodeDecodeError):
            text = await response.text()

        if status == 429 or status >= 500:
            retry_after_ms = parse_retry_after_ms(response.headers.get("Retry-After"))
            logger.warning(
                "Provider HTTP error (retryable)",
                extra={"status": status, "url": url, "retry_after_ms": retry_after_ms},
            )
            raise RetryableTransportError(
                f"HTTP {status}: {text[:200]}",
                status=status,
                url=url,
                retry_after_ms=retry_after_ms,
            )

        logger.error("Provider HTTP error", extra={"status": status, "url": url, "body": text})
        raise NonRetryableTransportError(f"HTTP {status}: {text[:200]}", status=status, url=url)

    async def fetch_with_retry(
        self,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        max_retries: int | None = None,
        before_retry: BeforeRetryFn | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> Any:
        """
        GET with exponential backoff on retryable failures.

        Retry-After on 429/503 responses is honoured as a minimum delay.
        before_retry runs after each backoff, before the request is resent;
        pass the rate limiter's acquire so every attempt pays for a token.

        Raises:
            NonRetryableTransportError: Immediately, without retrying.
            RetryableTransportError: The last failure once retries run out,
                or once before_retry refuses another attempt.
            OperationCancelledError: If cancel_event is set during a backoff.
        """
        retries = self._retry.max_retry_attempts if max_retries is None else max_retries

        attempt = 0
        while True:
            attempt += 1
            try:
                return await self.get_json(url, params)
            except RetryableTransportError as exc:
                if attempt > retries:
                    logger.warning(
                        "Retries exhausted",
                        extra={"url": url, "attempts": attempt, "error": str(exc)},
                    )
                    raise
                delay_ms = calculate_backoff_delay(
                    attempt,
                    self._retry.default_retry_delay_ms,
                    self._retry.jitter_factor,
                    retry_after_ms=exc.retry_after_ms,
                    rng=self._rng,
                )
                logger.info(
                    "Retrying request",
                    extra={"url": url, "attempt": attempt, "delay_ms": delay_ms, "status": exc.status},
                )
                await self._sleep_fn(delay_ms, cancel_event)
                if before_retry is not None:
                    try:
                        await before_retry()
                    except RateLimitRejection as rejection:
                        logger.warning(
                            "Retry refused by rate limiter",
                            extra={
                                "url": url,
                                "attempt": attempt,
                                "bucket": rejection.bucket,
                                "reason": rejection.reason.value,
                            },
                        )
                        raise exc from rejection
