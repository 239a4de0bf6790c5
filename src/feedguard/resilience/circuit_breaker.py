"""
Three-state circuit breaker with sliding-window failure rate.

States:
- CLOSED: calls pass; failures are evaluated against the window
- OPEN: calls blocked until reset_timeout_ms has elapsed
- HALF_OPEN: a bounded number of probe calls decide whether to close again
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from feedguard.config import CircuitBreakerConfig

logger = logging.getLogger(__name__)

# Windowed failure rate above which the circuit opens
FAILURE_RATE_THRESHOLD = 0.5


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass(frozen=True)
class CircuitBreakerStats:
    """Read-only breaker snapshot."""

    state: CircuitState
    failure_count: int
    success_count: int
    total_calls: int
    failure_rate: float
    last_failure_at: int | None
    next_attempt_at: int | None
    half_open_calls: int
    half_open_successes: int
    state_changed_at: int
    time_since_state_change_ms: int
    transitions_to_open: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "total_calls": self.total_calls,
            "failure_rate": self.failure_rate,
            "last_failure_at": self.last_failure_at,
            "next_attempt_at": self.next_attempt_at,
            "half_open_calls": self.half_open_calls,
            "half_open_successes": self.half_open_successes,
            "state_changed_at": self.state_changed_at,
            "time_since_state_change_ms": self.time_since_state_change_ms,
            "transitions_to_open": self.transitions_to_open,
        }


@dataclass
class CircuitBreaker:
    """
    Failure/success state machine guarding one provider.

    In CLOSED, a failure opens the circuit when the monitoring window holds
    at least volume_threshold calls and either failure_threshold of them
    failed or more than half failed. Below that volume the cumulative
    failure_count is compared with failure_threshold instead.

    Probes in HALF_OPEN are counted when admitted, so no more than
    half_open_max_calls are ever in flight. Any probe failure reopens the
    circuit; success_threshold probe successes close it.

    All methods are synchronous and serialized by a lock.
    """

    config: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    name: str = "default"

    state: CircuitState = field(default=CircuitState.CLOSED)
    failure_count: int = field(default=0)
    success_count: int = field(default=0)
    total_calls: int = field(default=0)
    half_open_calls: int = field(default=0)
    half_open_successes: int = field(default=0)
    last_failure_at: int | None = field(default=None)
    state_changed_at: int = field(default=0)

    # Exporter counters
    transitions_to_open: int = field(default=0)
    last_open_duration_ms: int = field(default=0)

    _history: deque[tuple[int, bool]] = field(default_factory=deque, repr=False)
    _probe_window_started_at: int = field(default=0)
    _open_until_ms: int = field(default=0)

    # Optional time provider for testing (epoch ms)
    _time_fn: Callable[[], int] | None = field(default=None)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def __post_init__(self) -> None:
        self.state_changed_at = self._now_ms()

    def _now_ms(self) -> int:
        if self._time_fn is not None:
            return self._time_fn()
        return int(time.time() * 1000)

    # ------------------------------------------------------------------
    # Transitions (lock held)
    # ------------------------------------------------------------------

    def _transition(self, new_state: CircuitState, now_ms: int) -> None:
        previous = self.state
        if previous == CircuitState.OPEN:
            self.last_open_duration_ms = now_ms - self.state_changed_at
        # A failed probe reopening the circuit is the same outage
        if new_state == CircuitState.OPEN and previous == CircuitState.CLOSED:
            self.transitions_to_open += 1

        self.state = new_state
        self.state_changed_at = now_ms
        self.half_open_calls = 0
        self.half_open_successes = 0
        if new_state == CircuitState.CLOSED:
            self.failure_count = 0
            self._open_until_ms = 0
        elif new_state == CircuitState.HALF_OPEN:
            self._probe_window_started_at = now_ms
            self._open_until_ms = 0

        level = logging.WARNING if new_state == CircuitState.OPEN else logging.INFO
        logger.log(
            level,
            "Circuit breaker state transition",
            extra={"breaker": self.name, "from_state": previous.value, "to_state": new_state.value},
        )

    def _prune_history(self, now_ms: int) -> None:
        cutoff = now_ms - self.config.monitoring_period_ms
        while self._history and self._history[0][0] <= cutoff:
            self._history.popleft()

    def _record(self, now_ms: int, success: bool) -> None:
        self._history.append((now_ms, success))
        self._prune_history(now_ms)
        self.total_calls += 1
        if success:
            self.success_count += 1
        else:
            self.failure_count += 1
            self.last_failure_at = now_ms

    def _should_open(self) -> bool:
        calls = len(self._history)
        if calls < self.config.volume_threshold:
            return self.failure_count >= self.config.failure_threshold
        failures = sum(1 for _, ok in self._history if not ok)
        return (
            failures >= self.config.failure_threshold
            or failures / calls > FAILURE_RATE_THRESHOLD
        )

    def _next_attempt_at(self) -> int:
        if self._open_until_ms > 0:
            return self._open_until_ms
        return self.state_changed_at + self.config.reset_timeout_ms

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def can_make_request(self) -> bool:
        """
        Whether a call may proceed now.

        In OPEN this performs the timed transition to HALF_OPEN and admits
        the caller as the first probe. In HALF_OPEN it consumes a probe slot.
        """
        with self._lock:
            now_ms = self._now_ms()

            if self.state == CircuitState.CLOSED:
                return True

            if self.state == CircuitState.OPEN:
                if now_ms < self._next_attempt_at():
                    return False
                self._transition(CircuitState.HALF_OPEN, now_ms)
                self.half_open_calls = 1
                return True

            # HALF_OPEN
            if self.half_open_calls < self.config.half_open_max_calls:
                self.half_open_calls += 1
                return True
            if now_ms - self._probe_window_started_at >= self.config.reset_timeout_ms:
                # Probes never reported back; start a fresh window
                self._probe_window_started_at = now_ms
                self.half_open_calls = 1
                self.half_open_successes = 0
                return True
            return False

    def record_success(self) -> None:
        """Record a successful call."""
        with self._lock:
            now_ms = self._now_ms()
            self._record(now_ms, success=True)

            if self.state == CircuitState.HALF_OPEN:
                self.half_open_successes += 1
                if self.half_open_successes >= self.config.success_threshold:
                    self._transition(CircuitState.CLOSED, now_ms)

    def record_failure(self) -> None:
        """Record a failed call."""
        with self._lock:
            now_ms = self._now_ms()
            self._record(now_ms, success=False)

            if self.state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN, now_ms)
            elif self.state == CircuitState.CLOSED and self._should_open():
                self._transition(CircuitState.OPEN, now_ms)

    def release_half_open_slot(self) -> None:
        """
        Return a half-open slot whose call never reached the provider.

        No-op outside HALF_OPEN. No verdict is recorded.
        """
        with self._lock:
            if self.state == CircuitState.HALF_OPEN and self.half_open_calls > 0:
                self.half_open_calls -= 1

    def force_open(self, duration_ms: int, reason: str = "") -> None:
        """
        Hold the circuit OPEN for duration_ms regardless of reset_timeout_ms.

        Args:
            duration_ms: How long to block calls.
            reason: Free-text reason, logged.
        """
        with self._lock:
            now_ms = self._now_ms()
            if self.state != CircuitState.OPEN:
                self._transition(CircuitState.OPEN, now_ms)
            self._open_until_ms = now_ms + duration_ms
        logger.warning(
            "Circuit breaker forced open",
            extra={"breaker": self.name, "duration_ms": duration_ms, "reason": reason},
        )

    def reset(self) -> None:
        """Back to CLOSED with all counters and history cleared."""
        with self._lock:
            now_ms = self._now_ms()
            self.state = CircuitState.CLOSED
            self.failure_count = 0
            self.success_count = 0
            self.total_calls = 0
            self.half_open_calls = 0
            self.half_open_successes = 0
            self.last_failure_at = None
            self.state_changed_at = now_ms
            self._history.clear()
            self._open_until_ms = 0
        logger.info("Circuit breaker reset", extra={"breaker": self.name})

    @property
    def is_closed(self) -> bool:
        return self.state == CircuitState.CLOSED

    def get_stats(self) -> CircuitBreakerStats:
        """Snapshot. Prunes the window but never changes state."""
        with self._lock:
            now_ms = self._now_ms()
            self._prune_history(now_ms)
            calls = len(self._history)
            failures = sum(1 for _, ok in self._history if not ok)
            return CircuitBreakerStats(
                state=self.state,
                failure_count=self.failure_count,
                success_count=self.success_count,
                total_calls=self.total_calls,
                failure_rate=failures / calls if calls else 0.0,
                last_failure_at=self.last_failure_at,
                next_attempt_at=self._next_attempt_at() if self.state == CircuitState.OPEN else None,
                half_open_calls=self.half_open_calls,
                half_open_successes=self.half_open_successes,
                state_changed_at=self.state_changed_at,
                time_since_state_change_ms=now_ms - self.state_changed_at,
                transitions_to_open=self.transitions_to_open,
            )
