"""
Prometheus metrics exporter for the resilience gateway.

Only low-cardinality labels: client name, bucket name (a small closed set),
source and outcome. Operation names, cache keys and URLs never become labels.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from prometheus_client import Counter, Gauge
from prometheus_client.registry import CollectorRegistry

from feedguard.resilience.circuit_breaker import CircuitState

if TYPE_CHECKING:
    from feedguard.contracts.events import DataFetchEvent
    from feedguard.resilience.client import ResilientClient

# Labels that would explode series cardinality
FORBIDDEN_LABELS = frozenset(
    {
        "operation",
        "key",
        "url",
        "endpoint",
        "path",
        "query",
        "event_id",
        "request_id",
        "apikey",
    }
)

CIRCUIT_STATE_VALUES: dict[CircuitState, int] = {
    CircuitState.CLOSED: 0,
    CircuitState.HALF_OPEN: 1,
    CircuitState.OPEN: 2,
}


class MetricsExporter:
    """
    Gateway metrics.

    Gauges are synced from client state by update(); data-fetch outcomes
    arrive as events through record_fetch(), so the exporter can be passed
    anywhere a DataFetchSink is accepted.

    Usage:
        registry = CollectorRegistry()
        exporter = MetricsExporter(registry=registry)
        client = ResilientClient(config, sink=exporter)
        exporter.update(client)  # on each scrape or on a timer
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self._registry = registry or CollectorRegistry()

        # === Rate limiter (feedguard_bucket_*) ===
        self._bucket_tokens = Gauge(
            "feedguard_bucket_tokens_available",
            "Burst tokens currently available",
            ["client", "bucket"],
            registry=self._registry,
        )
        self._bucket_quota_pct = Gauge(
            "feedguard_bucket_quota_percentage",
            "Share of the daily quota used (0-100)",
            ["client", "bucket"],
            registry=self._registry,
        )
        self._bucket_daily_usage = Gauge(
            "feedguard_bucket_daily_usage",
            "Tokens consumed since the last daily reset",
            ["client", "bucket"],
            registry=self._registry,
        )

        # === Circuit breaker (feedguard_cb_*) ===
        self._cb_state = Gauge(
            "feedguard_cb_state",
            "Circuit state (0=CLOSED, 1=HALF_OPEN, 2=OPEN)",
            ["client"],
            registry=self._registry,
        )
        self._cb_transitions_closed_to_open = Counter(
            "feedguard_cb_transitions_closed_to_open",
            "Number of times the circuit went from CLOSED to OPEN",
            ["client"],
            registry=self._registry,
        )
        self._cb_last_open_duration_ms = Gauge(
            "feedguard_cb_last_open_duration_ms",
            "Duration of the most recent OPEN period in milliseconds",
            ["client"],
            registry=self._registry,
        )

        # === Fallback cache (feedguard_cache_*) ===
        self._cache_entries = Gauge(
            "feedguard_cache_entries",
            "Entries held by the fallback cache",
            ["client"],
            registry=self._registry,
        )

        # === Data fetches (feedguard_fetch_*) ===
        self._fetch_outcomes = Counter(
            "feedguard_fetch_outcomes",
            "Gateway call outcomes",
            ["source", "outcome"],
            registry=self._registry,
        )

        # Last seen breaker counters per client; Prometheus counters only increase
        self._last_transitions: dict[str, int] = {}

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def record_fetch(self, event: DataFetchEvent) -> None:
        """DataFetchSink hook: count one gateway outcome."""
        self._fetch_outcomes.labels(source=event.source, outcome=event.outcome.value).inc()

    def update(self, client: ResilientClient) -> None:
        """Sync gauges and delta counters from one client."""
        name = client.name

        for bucket, status in client.get_all_bucket_status().items():
            self._bucket_tokens.labels(client=name, bucket=bucket).set(status.tokens_available)
            self._bucket_quota_pct.labels(client=name, bucket=bucket).set(status.quota_percentage)
            self._bucket_daily_usage.labels(client=name, bucket=bucket).set(status.daily_usage)

        breaker = client.circuit_breaker
        self._cb_state.labels(client=name).set(CIRCUIT_STATE_VALUES[breaker.state])
        self._cb_last_open_duration_ms.labels(client=name).set(breaker.last_open_duration_ms)

        current = breaker.transitions_to_open
        transitions = self._cb_transitions_closed_to_open.labels(client=name)
        delta = current - self._last_transitions.get(name, 0)
        if delta > 0:
            transitions.inc(delta)
        self._last_transitions[name] = current

        self._cache_entries.labels(client=name).set(len(client.cache))

    def reset_counter_tracking(self) -> None:
        """
        Forget last-seen breaker counters.

        Use after resetting components. Does NOT reset the Prometheus counters.
        """
        self._last_transitions.clear()


# Counters are exported with the _total suffix by prometheus_client
REQUIRED_METRIC_NAMES: frozenset[str] = frozenset(
    {
        "feedguard_bucket_tokens_available",
        "feedguard_bucket_quota_percentage",
        "feedguard_bucket_daily_usage",
        "feedguard_cb_state",
        "feedguard_cb_transitions_closed_to_open_total",
        "feedguard_cb_last_open_duration_ms",
        "feedguard_cache_entries",
        "feedguard_fetch_outcomes_total",
    }
)
