"""
Error taxonomy for the resilience gateway.

Rate-limit rejections are recovered locally by waiting or retrying and only
reach callers once the wait budget or retries run out. Transport failures and
an OPEN circuit try a fallback before surfacing. None of these are fatal to
the process.
"""

from __future__ import annotations

from enum import Enum


class RejectReason(str, Enum):
    """Why the rate limiter refused a request."""

    DAILY_QUOTA_EXCEEDED = "daily_quota_exceeded"
    INSUFFICIENT_TOKENS = "insufficient_tokens"
    TOO_MANY_CONCURRENT = "too_many_concurrent"


class FeedGuardError(Exception):
    """Base class for all gateway errors."""


class UnknownBucketError(FeedGuardError, KeyError):
    """Raised when a bucket name is not registered."""

    def __init__(self, bucket: str) -> None:
        super().__init__(f"Unknown bucket: {bucket}")
        self.bucket = bucket

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message
        return str(self.args[0])


class RateLimitRejection(FeedGuardError):
    """A request was refused by the local rate limiter."""

    reason: RejectReason = RejectReason.INSUFFICIENT_TOKENS

    def __init__(self, message: str, bucket: str, retry_after_ms: int | None = None) -> None:
        super().__init__(message)
        self.bucket = bucket
        self.retry_after_ms = retry_after_ms


class DailyQuotaExceededError(RateLimitRejection):
    """Daily quota used up; retry_after_ms is the time to the next reset."""

    reason = RejectReason.DAILY_QUOTA_EXCEEDED


class RateLimitedError(RateLimitRejection):
    """Not enough burst tokens; retry_after_ms follows from the refill rate."""

    reason = RejectReason.INSUFFICIENT_TOKENS


class ConcurrencyThrottledError(RateLimitRejection):
    """Too many requests admitted inside the coordination window."""

    reason = RejectReason.TOO_MANY_CONCURRENT


_REJECTION_TYPES: dict[RejectReason, type[RateLimitRejection]] = {
    RejectReason.DAILY_QUOTA_EXCEEDED: DailyQuotaExceededError,
    RejectReason.INSUFFICIENT_TOKENS: RateLimitedError,
    RejectReason.TOO_MANY_CONCURRENT: ConcurrencyThrottledError,
}


def rejection_error(
    reason: RejectReason,
    bucket: str,
    retry_after_ms: int | None = None,
) -> RateLimitRejection:
    """Build the typed rejection error for a limiter reason."""
    error_cls = _REJECTION_TYPES[reason]
    return error_cls(
        f"Rate limited on bucket {bucket}: {reason.value}",
        bucket=bucket,
        retry_after_ms=retry_after_ms,
    )


class CircuitOpenError(FeedGuardError):
    """The circuit breaker is blocking calls to the provider."""

    def __init__(
        self,
        message: str,
        state: str = "OPEN",
        next_attempt_at: int | None = None,
    ) -> None:
        super().__init__(message)
        self.state = state
        self.next_attempt_at = next_attempt_at


class TransportError(FeedGuardError):
    """HTTP call to a provider failed."""

    def __init__(self, message: str, status: int | None = None, url: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.url = url


class RetryableTransportError(TransportError):
    """Network error, timeout, 5xx or 429. Eligible for backoff retry."""

    def __init__(
        self,
        message: str,
        status: int | None = None,
        url: str = "",
        retry_after_ms: int | None = None,
    ) -> None:
        super().__init__(message, status=status, url=url)
        self.retry_after_ms = retry_after_ms


class NonRetryableTransportError(TransportError):
    """4xx other than 429. Surfaced immediately."""


class RetriesExhaustedError(FeedGuardError):
    """All retry attempts failed; last_error holds the final cause."""

    def __init__(self, message: str, attempts: int, last_error: BaseException | None = None) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class FallbackUnavailableError(FeedGuardError):
    """No cached or alternate data exists for an operation."""

    def __init__(self, operation: str) -> None:
        super().__init__(f"No fallback data available for {operation}")
        self.operation = operation


class OperationCancelledError(FeedGuardError):
    """The caller cancelled while the operation was waiting."""
