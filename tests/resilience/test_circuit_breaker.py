"""Tests for the three-state CircuitBreaker."""

from __future__ import annotations

import pytest
from conftest import START_MS, FakeClock

from feedguard.config import CircuitBreakerConfig
from feedguard.resilience.circuit_breaker import CircuitBreaker, CircuitState


def make_breaker(clock: FakeClock, **overrides: int) -> CircuitBreaker:
    return CircuitBreaker(config=CircuitBreakerConfig(**overrides), name="test", _time_fn=clock)


def open_breaker(breaker: CircuitBreaker) -> None:
    for _ in range(breaker.config.failure_threshold):
        breaker.record_failure()
    assert breaker.state == CircuitState.OPEN


class TestCircuitBreakerConfig:
    """Configuration validation."""

    def test_defaults(self) -> None:
        config = CircuitBreakerConfig()
        assert config.failure_threshold == 5
        assert config.reset_timeout_ms == 60000
        assert config.half_open_max_calls == 3
        assert config.monitoring_period_ms == 60000
        assert config.success_threshold == 2
        assert config.volume_threshold == 5

    @pytest.mark.parametrize(
        "overrides",
        [
            {"failure_threshold": 0},
            {"half_open_max_calls": 0},
            {"success_threshold": 0},
            {"success_threshold": 4, "half_open_max_calls": 3},
            {"volume_threshold": 0},
            {"reset_timeout_ms": -1},
        ],
    )
    def test_invalid_values(self, overrides: dict[str, int]) -> None:
        with pytest.raises(ValueError):
            CircuitBreakerConfig(**overrides)


class TestOpening:
    """CLOSED to OPEN transitions."""

    def test_starts_closed(self, clock: FakeClock) -> None:
        breaker = make_breaker(clock)
        assert breaker.state == CircuitState.CLOSED
        assert breaker.is_closed
        assert breaker.can_make_request()

    def test_opens_at_failure_threshold(self, clock: FakeClock) -> None:
        breaker = make_breaker(clock)
        for _ in range(4):
            breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED

        breaker.record_failure()

        assert breaker.state == CircuitState.OPEN
        assert not breaker.can_make_request()
        assert breaker.transitions_to_open == 1

    def test_opens_on_failure_rate(self, clock: FakeClock) -> None:
        """Three failures in five calls is above the 50% rate."""
        breaker = make_breaker(clock)
        breaker.record_success()
        breaker.record_success()
        breaker.record_failure()
        breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED

        breaker.record_failure()

        assert breaker.state == CircuitState.OPEN

    def test_half_failure_rate_stays_closed(self, clock: FakeClock) -> None:
        breaker = make_breaker(clock, volume_threshold=4)
        breaker.record_success()
        breaker.record_success()
        breaker.record_failure()
        breaker.record_failure()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.get_stats().failure_rate == 0.5

    def test_old_failures_leave_window(self, clock: FakeClock) -> None:
        breaker = make_breaker(clock, volume_threshold=3, failure_threshold=3)
        breaker.record_failure()
        breaker.record_failure()
        clock.advance(60000)

        breaker.record_success()
        breaker.record_success()
        breaker.record_failure()

        # 1 failure in a 3-call window, under both limits
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 3

    def test_success_does_not_reset_failure_count(self, clock: FakeClock) -> None:
        breaker = make_breaker(clock, volume_threshold=100)
        for _ in range(3):
            breaker.record_failure()
        breaker.record_success()

        assert breaker.failure_count == 3
        assert breaker.success_count == 1
        assert breaker.total_calls == 4


class TestRecovery:
    """OPEN, HALF_OPEN and back to CLOSED."""

    def test_blocks_until_reset_timeout(self, clock: FakeClock) -> None:
        breaker = make_breaker(clock)
        open_breaker(breaker)

        clock.advance(59_999)
        assert not breaker.can_make_request()
        assert breaker.state == CircuitState.OPEN

        clock.advance(1)
        assert breaker.can_make_request()
        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.half_open_calls == 1

    def test_probe_failure_reopens(self, clock: FakeClock) -> None:
        breaker = make_breaker(clock)
        open_breaker(breaker)
        clock.advance(60000)
        breaker.can_make_request()

        breaker.record_failure()

        assert breaker.state == CircuitState.OPEN
        assert breaker.transitions_to_open == 1
        assert breaker.get_stats().next_attempt_at == clock.now_ms + 60000

    def test_success_threshold_closes(self, clock: FakeClock) -> None:
        breaker = make_breaker(clock)
        open_breaker(breaker)
        clock.advance(60000)
        assert breaker.can_make_request()
        assert breaker.can_make_request()

        breaker.record_success()
        assert breaker.state == CircuitState.HALF_OPEN

        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0
        assert breaker.last_open_duration_ms == 60000

    def test_probe_budget(self, clock: FakeClock) -> None:
        breaker = make_breaker(clock)
        open_breaker(breaker)
        clock.advance(60000)

        admitted = [breaker.can_make_request() for _ in range(4)]

        assert admitted == [True, True, True, False]
        assert breaker.half_open_calls == 3

    def test_probe_window_restarts_after_timeout(self, clock: FakeClock) -> None:
        breaker = make_breaker(clock)
        open_breaker(breaker)
        clock.advance(60000)
        for _ in range(3):
            breaker.can_make_request()

        clock.advance(59_999)
        assert not breaker.can_make_request()

        clock.advance(1)
        assert breaker.can_make_request()
        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.half_open_calls == 1

    def test_second_outage_counts_again(self, clock: FakeClock) -> None:
        breaker = make_breaker(clock, success_threshold=1)
        open_breaker(breaker)
        clock.advance(60000)
        breaker.can_make_request()
        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED

        open_breaker(breaker)

        assert breaker.transitions_to_open == 2


class TestManualControl:
    """force_open() and reset()."""

    def test_force_open_holds_for_duration(self, clock: FakeClock) -> None:
        breaker = make_breaker(clock)

        breaker.force_open(120_000, reason="provider ban")

        assert breaker.state == CircuitState.OPEN
        assert breaker.get_stats().next_attempt_at == START_MS + 120_000
        clock.advance(60000)
        assert not breaker.can_make_request()
        clock.advance(60000)
        assert breaker.can_make_request()

    def test_force_open_extends_open_circuit(self, clock: FakeClock) -> None:
        breaker = make_breaker(clock)
        open_breaker(breaker)

        breaker.force_open(300_000)

        assert breaker.transitions_to_open == 1
        assert breaker.get_stats().next_attempt_at == START_MS + 300_000

    def test_release_half_open_slot_frees_slot(self, clock: FakeClock) -> None:
        breaker = make_breaker(clock, half_open_max_calls=1, success_threshold=1)
        open_breaker(breaker)
        clock.advance(60000)
        assert breaker.can_make_request()
        assert not breaker.can_make_request()

        breaker.release_half_open_slot()

        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.half_open_calls == 0
        assert breaker.can_make_request()

    def test_release_half_open_slot_outside_half_open(self, clock: FakeClock) -> None:
        breaker = make_breaker(clock)

        breaker.release_half_open_slot()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.half_open_calls == 0

    def test_reset_clears_everything(self, clock: FakeClock) -> None:
        breaker = make_breaker(clock)
        open_breaker(breaker)

        breaker.reset()

        stats = breaker.get_stats()
        assert stats.state == CircuitState.CLOSED
        assert stats.failure_count == 0
        assert stats.total_calls == 0
        assert stats.failure_rate == 0.0
        assert stats.last_failure_at is None
        assert breaker.can_make_request()


class TestStats:
    """get_stats() snapshots."""

    def test_stats_never_transition(self, clock: FakeClock) -> None:
        breaker = make_breaker(clock)
        open_breaker(breaker)
        clock.advance(120_000)

        stats = breaker.get_stats()

        assert stats.state == CircuitState.OPEN
        assert stats.next_attempt_at == START_MS + 60000
        assert stats.time_since_state_change_ms == 120_000

    def test_failure_rate_uses_window(self, clock: FakeClock) -> None:
        breaker = make_breaker(clock)
        breaker.record_failure()
        assert breaker.get_stats().failure_rate == 1.0

        clock.advance(60000)

        stats = breaker.get_stats()
        assert stats.failure_rate == 0.0
        assert stats.failure_count == 1
        assert stats.last_failure_at == START_MS

    def test_closed_has_no_next_attempt(self, clock: FakeClock) -> None:
        assert make_breaker(clock).get_stats().next_attempt_at is None

    def test_to_dict(self, clock: FakeClock) -> None:
        breaker = make_breaker(clock)
        open_breaker(breaker)

        data = breaker.get_stats().to_dict()

        assert data["state"] == "OPEN"
        assert data["failure_count"] == 5
        assert data["transitions_to_open"] == 1
