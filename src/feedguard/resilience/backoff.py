"""
Exponential backoff with jitter, retryable-error classification and a
cancellable sleep.
"""

from __future__ import annotations

import asyncio
import math
import random
import re

import aiohttp

from feedguard.errors import (
    FeedGuardError,
    NonRetryableTransportError,
    OperationCancelledError,
    RetryableTransportError,
)

# Fallback classification for errors raised by arbitrary callables
_RETRYABLE_MESSAGE = re.compile(
    r"network|timeout|ECONNRESET|ENOTFOUND|ETIMEDOUT|\b(?:429|500|502|503|504)\b",
    re.IGNORECASE,
)


def calculate_backoff_delay(
    attempt: int,
    base_ms: int,
    jitter_factor: float,
    *,
    retry_after_ms: int | None = None,
    rng: random.Random | None = None,
) -> int:
    """
    Delay before retry number ``attempt``.

    delay = base_ms * 2^(attempt-1), plus up to jitter_factor of itself in
    random jitter, floored to whole milliseconds. A server-provided
    Retry-After acts as a floor.

    Args:
        attempt: 1-based attempt number.
        base_ms: Delay for the first retry.
        jitter_factor: Upper bound of jitter as a fraction of the delay.
        retry_after_ms: Server-provided minimum delay.
        rng: Optional seeded Random for deterministic tests.

    Returns:
        Delay in milliseconds.
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")

    delay = base_ms * (2 ** (attempt - 1))
    roll = rng.random() if rng is not None else random.random()
    result = math.floor(delay + delay * jitter_factor * roll)

    if retry_after_ms is not None and retry_after_ms > result:
        return retry_after_ms
    return result


def is_retryable_error(exc: BaseException) -> bool:
    """True for network errors, timeouts, HTTP 429 and 5xx."""
    if isinstance(exc, RetryableTransportError):
        return True
    if isinstance(exc, NonRetryableTransportError):
        return False
    if isinstance(exc, aiohttp.ClientResponseError):
        return exc.status == 429 or exc.status >= 500
    if isinstance(exc, aiohttp.ClientConnectionError | asyncio.TimeoutError):
        return True
    # Limiter rejections, open circuits and cancellations are not transient faults
    if isinstance(exc, FeedGuardError):
        return False
    return bool(_RETRYABLE_MESSAGE.search(str(exc)))


async def sleep_ms(delay_ms: int, cancel_event: asyncio.Event | None = None) -> None:
    """
    Sleep for delay_ms.

    Raises:
        OperationCancelledError: If cancel_event is set before or during the wait.
        asyncio.CancelledError: If the surrounding task is cancelled.
    """
    if cancel_event is None:
        await asyncio.sleep(max(0, delay_ms) / 1000)
        return

    if cancel_event.is_set():
        raise OperationCancelledError("Cancelled before sleep")
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=max(0, delay_ms) / 1000)
    except TimeoutError:
        return
    raise OperationCancelledError(f"Cancelled during {delay_ms}ms sleep")
