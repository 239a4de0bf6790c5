"""Tests for TokenBucket: burst refill, daily quota and status snapshots."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest
from conftest import NEXT_MIDNIGHT_MS, START_MS, FakeClock

from feedguard.config import BucketConfig
from feedguard.errors import DailyQuotaExceededError, RateLimitedError, RejectReason
from feedguard.resilience.token_bucket import TokenBucket, next_reset_boundary_ms


def make_bucket(
    clock: FakeClock,
    capacity: int = 30,
    refill: float = 2,
    quota: int = 5000,
    reset_hour: int = 0,
) -> TokenBucket:
    config = BucketConfig(
        capacity=capacity,
        refill_rate_per_second=refill,
        daily_quota=quota,
        reset_hour_utc=reset_hour,
    )
    return TokenBucket(config=config, name="test", _time_fn=clock)


class TestBurstCapacity:
    """Burst tokens and continuous refill."""

    def test_starts_full(self, clock: FakeClock) -> None:
        bucket = make_bucket(clock)
        assert bucket.tokens() == 30.0

    def test_capacity_then_reject_with_refill_delay(self, clock: FakeClock) -> None:
        """30 immediate consumes succeed; the 31st waits 1 token / 2 per s."""
        bucket = make_bucket(clock)

        results = [bucket.try_consume() for _ in range(31)]

        assert sum(r.allowed for r in results) == 30
        rejected = results[-1]
        assert not rejected.allowed
        assert rejected.reason == RejectReason.INSUFFICIENT_TOKENS
        assert rejected.retry_after_ms == 500
        assert rejected.tokens_consumed == 0

    def test_refill_restores_tokens(self, clock: FakeClock) -> None:
        bucket = make_bucket(clock)
        for _ in range(30):
            bucket.try_consume()

        clock.advance(500)

        assert bucket.try_consume().allowed
        assert not bucket.try_consume().allowed

    def test_refill_capped_at_capacity(self, clock: FakeClock) -> None:
        bucket = make_bucket(clock)
        bucket.try_consume(10)

        clock.advance(3_600_000)

        assert bucket.tokens() == 30.0

    def test_tokens_stay_in_bounds(self, clock: FakeClock) -> None:
        bucket = make_bucket(clock, capacity=5, refill=1)
        for step in range(50):
            bucket.try_consume(1 + step % 3)
            assert 0.0 <= bucket.tokens() <= 5.0
            clock.advance(300)

    def test_multi_token_retry_after(self, clock: FakeClock) -> None:
        bucket = make_bucket(clock, capacity=10, refill=0.5)
        bucket.try_consume(10)

        result = bucket.try_consume(3)

        assert not result.allowed
        assert result.retry_after_ms == 6000

    def test_invalid_counts(self, clock: FakeClock) -> None:
        bucket = make_bucket(clock, capacity=5)
        with pytest.raises(ValueError):
            bucket.try_consume(0)
        with pytest.raises(ValueError):
            bucket.try_consume(6)

    def test_can_consume_does_not_consume(self, clock: FakeClock) -> None:
        bucket = make_bucket(clock, capacity=2)
        assert bucket.can_consume(2)
        assert bucket.can_consume(2)
        assert bucket.tokens() == 2.0

    def test_time_until_token(self, clock: FakeClock) -> None:
        bucket = make_bucket(clock, capacity=4, refill=4)
        assert bucket.time_until_token_ms() == 0
        bucket.try_consume(4)
        assert bucket.time_until_token_ms() == 250
        assert bucket.time_until_token_ms(2) == 500


class TestDailyQuota:
    """Daily quota and its UTC reset boundary."""

    def test_quota_rejects_even_with_tokens(self, clock: FakeClock) -> None:
        bucket = make_bucket(clock, capacity=10, refill=10, quota=5)
        for _ in range(5):
            assert bucket.try_consume().allowed

        result = bucket.try_consume()

        assert not result.allowed
        assert result.reason == RejectReason.DAILY_QUOTA_EXCEEDED
        assert result.retry_after_ms == NEXT_MIDNIGHT_MS - START_MS
        assert bucket.tokens() == 5.0

    def test_quota_resets_exactly_at_boundary(self, clock: FakeClock) -> None:
        bucket = make_bucket(clock, capacity=10, refill=10, quota=5)
        for _ in range(5):
            bucket.try_consume()

        clock.now_ms = NEXT_MIDNIGHT_MS - 1
        before = bucket.try_consume()
        assert not before.allowed
        assert before.retry_after_ms == 1

        clock.now_ms = NEXT_MIDNIGHT_MS
        assert bucket.try_consume().allowed
        assert bucket.get_status().daily_usage == 1

    def test_multi_token_request_checks_remaining_quota(self, clock: FakeClock) -> None:
        bucket = make_bucket(clock, capacity=10, refill=10, quota=5)
        bucket.try_consume(4)

        result = bucket.try_consume(2)

        assert result.reason == RejectReason.DAILY_QUOTA_EXCEEDED
        assert bucket.try_consume(1).allowed

    def test_reset_hour_boundary(self, clock: FakeClock) -> None:
        bucket = make_bucket(clock, reset_hour=6)
        # 10:00 today -> 06:00 tomorrow
        assert bucket.get_status().next_reset_at == START_MS + 20 * 3_600_000

    def test_next_reset_boundary_is_strictly_after_now(self) -> None:
        midnight = NEXT_MIDNIGHT_MS
        assert next_reset_boundary_ms(midnight, 0) == midnight + 86_400_000
        assert next_reset_boundary_ms(midnight - 1, 0) == midnight


class TestStatus:
    """get_status() snapshots."""

    def test_status_after_consumes(self, clock: FakeClock) -> None:
        bucket = make_bucket(clock)
        bucket.try_consume(3)

        status = bucket.get_status()

        assert status.tokens_available == 27
        assert status.capacity == 30
        assert status.refill_rate_per_second == 2
        assert status.daily_usage == 3
        assert status.daily_quota == 5000
        assert status.quota_percentage == 0.06
        assert status.next_refill_at == START_MS + 500
        assert status.next_reset_at == NEXT_MIDNIGHT_MS
        assert status.is_throttled is False

    def test_full_bucket_has_no_refill_time(self, clock: FakeClock) -> None:
        assert make_bucket(clock).get_status().next_refill_at == 0

    def test_tokens_available_is_floored(self, clock: FakeClock) -> None:
        bucket = make_bucket(clock, capacity=10, refill=1)
        bucket.try_consume(10)
        clock.advance(2500)
        assert bucket.get_status().tokens_available == 2

    def test_throttled_above_eighty_percent(self, clock: FakeClock) -> None:
        bucket = make_bucket(clock, capacity=10, refill=1, quota=10)
        bucket.try_consume(8)
        assert bucket.get_status().is_throttled is False

        bucket.try_consume(1)
        assert bucket.get_status().is_throttled is True

    def test_status_does_not_consume(self, clock: FakeClock) -> None:
        bucket = make_bucket(clock)
        for _ in range(5):
            bucket.get_status()
        assert bucket.get_status().daily_usage == 0


class TestAdministration:
    """reset() and reset_daily_usage()."""

    def test_reset_refills_but_keeps_usage(self, clock: FakeClock) -> None:
        bucket = make_bucket(clock, capacity=10, refill=1)
        bucket.try_consume(10)

        bucket.reset()

        status = bucket.get_status()
        assert status.tokens_available == 10
        assert status.daily_usage == 10

    def test_reset_daily_usage_keeps_tokens(self, clock: FakeClock) -> None:
        bucket = make_bucket(clock, capacity=10, refill=1, quota=4)
        bucket.try_consume(4)
        assert not bucket.try_consume().allowed

        bucket.reset_daily_usage()

        status = bucket.get_status()
        assert status.daily_usage == 0
        assert status.tokens_available == 6
        assert bucket.try_consume().allowed


class TestThreadSafety:
    """Concurrent consumers never over-admit."""

    def test_parallel_consumers_respect_capacity(self, clock: FakeClock) -> None:
        bucket = make_bucket(clock, capacity=100, refill=1, quota=10_000)

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: bucket.try_consume(), range(400)))

        assert sum(r.allowed for r in results) == 100
        assert bucket.get_status().daily_usage == 100


class TestRejectionErrors:
    """RequestResult.to_rejection()."""

    def test_insufficient_tokens(self, clock: FakeClock) -> None:
        bucket = make_bucket(clock, capacity=1)
        bucket.try_consume()

        error = bucket.try_consume().to_rejection("latest")

        assert isinstance(error, RateLimitedError)
        assert error.bucket == "latest"
        assert error.retry_after_ms == 500

    def test_daily_quota(self, clock: FakeClock) -> None:
        bucket = make_bucket(clock, quota=1)
        bucket.try_consume()

        error = bucket.try_consume().to_rejection("latest")

        assert isinstance(error, DailyQuotaExceededError)
        assert error.retry_after_ms == NEXT_MIDNIGHT_MS - START_MS

    def test_allowed_result_has_no_error(self, clock: FakeClock) -> None:
        result = make_bucket(clock).try_consume()
        with pytest.raises(ValueError):
            result.to_rejection("latest")
