"""Tests for backoff delay, retryable classification and cancellable sleep."""

from __future__ import annotations

import asyncio
import random
from unittest.mock import MagicMock

import aiohttp
import pytest

from feedguard.errors import (
    CircuitOpenError,
    DailyQuotaExceededError,
    NonRetryableTransportError,
    OperationCancelledError,
    RetryableTransportError,
)
from feedguard.resilience.backoff import calculate_backoff_delay, is_retryable_error, sleep_ms


def response_error(status: int) -> aiohttp.ClientResponseError:
    return aiohttp.ClientResponseError(request_info=MagicMock(), history=(), status=status)


class TestCalculateBackoffDelay:
    """Exponential delay with jitter."""

    def test_no_jitter_doubles(self) -> None:
        delays = [calculate_backoff_delay(a, 1000, 0.0) for a in range(1, 5)]
        assert delays == [1000, 2000, 4000, 8000]

    def test_jitter_bounds(self) -> None:
        rng = random.Random(7)
        for attempt in range(1, 6):
            base = 1000 * 2 ** (attempt - 1)
            for _ in range(50):
                delay = calculate_backoff_delay(attempt, 1000, 0.1, rng=rng)
                assert base <= delay <= base * 1.1

    def test_seeded_rng_is_deterministic(self) -> None:
        first = [calculate_backoff_delay(a, 500, 0.5, rng=random.Random(42)) for a in range(1, 4)]
        second = [calculate_backoff_delay(a, 500, 0.5, rng=random.Random(42)) for a in range(1, 4)]
        assert first == second

    def test_delay_is_integer(self) -> None:
        delay = calculate_backoff_delay(1, 333, 0.3, rng=random.Random(1))
        assert isinstance(delay, int)

    def test_retry_after_is_a_floor(self) -> None:
        assert calculate_backoff_delay(1, 1000, 0.0, retry_after_ms=5000) == 5000
        assert calculate_backoff_delay(3, 1000, 0.0, retry_after_ms=500) == 4000

    def test_attempt_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            calculate_backoff_delay(0, 1000, 0.1)


class TestIsRetryableError:
    """Error classification."""

    @pytest.mark.parametrize(
        "exc",
        [
            RetryableTransportError("HTTP 503", status=503),
            aiohttp.ClientConnectionError("reset by peer"),
            asyncio.TimeoutError(),
            TimeoutError(),
            ConnectionError("Network unreachable"),
            RuntimeError("request timeout after 15s"),
            RuntimeError("ECONNRESET"),
            RuntimeError("upstream returned 502"),
        ],
    )
    def test_retryable(self, exc: BaseException) -> None:
        assert is_retryable_error(exc)

    @pytest.mark.parametrize(
        "exc",
        [
            NonRetryableTransportError("HTTP 404", status=404),
            ValueError("bad payload"),
            RuntimeError("HTTP 401 unauthorized"),
            CircuitOpenError("network down"),
            DailyQuotaExceededError("quota", bucket="latest", retry_after_ms=1000),
            OperationCancelledError("timeout while cancelled"),
        ],
    )
    def test_not_retryable(self, exc: BaseException) -> None:
        assert not is_retryable_error(exc)

    @pytest.mark.parametrize(
        ("status", "expected"),
        [(429, True), (500, True), (503, True), (400, False), (404, False)],
    )
    def test_client_response_error_status(self, status: int, expected: bool) -> None:
        assert is_retryable_error(response_error(status)) is expected


class TestSleepMs:
    """Cancellable sleep."""

    @pytest.mark.asyncio
    async def test_sleeps_without_event(self) -> None:
        await sleep_ms(1)

    @pytest.mark.asyncio
    async def test_completes_when_not_cancelled(self) -> None:
        await sleep_ms(5, asyncio.Event())

    @pytest.mark.asyncio
    async def test_cancelled_before(self) -> None:
        event = asyncio.Event()
        event.set()
        with pytest.raises(OperationCancelledError):
            await sleep_ms(10_000, event)

    @pytest.mark.asyncio
    async def test_cancelled_during(self) -> None:
        event = asyncio.Event()
        loop = asyncio.get_running_loop()
        loop.call_later(0.01, event.set)

        with pytest.raises(OperationCancelledError):
            await sleep_ms(10_000, event)

    @pytest.mark.asyncio
    async def test_task_cancellation_propagates(self) -> None:
        task = asyncio.create_task(sleep_ms(10_000, asyncio.Event()))
        await asyncio.sleep(0)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
