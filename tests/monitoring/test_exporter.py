"""
Tests for the Prometheus metrics exporter.

Validates:
- Gauges mirror bucket, breaker and cache state
- Counters advance by deltas only
- No high-cardinality labels
"""

from __future__ import annotations

import re

import pytest
from conftest import FakeClock
from prometheus_client import generate_latest
from prometheus_client.registry import CollectorRegistry

from feedguard.config import CoordinationConfig, RateLimiterConfig, ResilientClientConfig
from feedguard.contracts.events import DataFetchEvent
from feedguard.errors import RetryableTransportError
from feedguard.monitoring.exporter import (
    FORBIDDEN_LABELS,
    REQUIRED_METRIC_NAMES,
    MetricsExporter,
)
from feedguard.resilience.client import ResilientClient

CLIENT = "news-test"


def make_client(clock: FakeClock, exporter: MetricsExporter | None = None) -> ResilientClient:
    config = ResilientClientConfig(
        name=CLIENT,
        source="news",
        provider="test",
        rate_limiter=RateLimiterConfig(coordination=CoordinationConfig(enabled=False)),
    )
    return ResilientClient(config, sink=exporter, time_fn=clock, sleep_fn=clock.sleep)


@pytest.fixture
def registry() -> CollectorRegistry:
    return CollectorRegistry()


@pytest.fixture
def exporter(registry: CollectorRegistry) -> MetricsExporter:
    return MetricsExporter(registry=registry)


class TestGauges:
    """update() mirrors client state."""

    def test_bucket_gauges(
        self, clock: FakeClock, registry: CollectorRegistry, exporter: MetricsExporter
    ) -> None:
        client = make_client(clock)
        client.try_consume("latest", 6)

        exporter.update(client)

        labels = {"client": CLIENT, "bucket": "latest"}
        assert registry.get_sample_value("feedguard_bucket_tokens_available", labels) == 24
        assert registry.get_sample_value("feedguard_bucket_daily_usage", labels) == 6
        assert registry.get_sample_value("feedguard_bucket_quota_percentage", labels) == 0.12
        archive = {"client": CLIENT, "bucket": "archive"}
        assert registry.get_sample_value("feedguard_bucket_tokens_available", archive) == 10

    def test_circuit_gauges(
        self, clock: FakeClock, registry: CollectorRegistry, exporter: MetricsExporter
    ) -> None:
        client = make_client(clock)
        exporter.update(client)
        assert registry.get_sample_value("feedguard_cb_state", {"client": CLIENT}) == 0

        client.circuit_breaker.force_open(1000)
        exporter.update(client)

        assert registry.get_sample_value("feedguard_cb_state", {"client": CLIENT}) == 2

    @pytest.mark.asyncio
    async def test_cache_entries(
        self, clock: FakeClock, registry: CollectorRegistry, exporter: MetricsExporter
    ) -> None:
        client = make_client(clock)

        async def fetch() -> list[int]:
            return [1]

        await client.execute(fetch, operation_name="a")
        await client.execute(fetch, operation_name="b")
        exporter.update(client)

        assert registry.get_sample_value("feedguard_cache_entries", {"client": CLIENT}) == 2


class TestCounters:
    """Delta tracking for breaker counters."""

    def test_transitions_counted_once(
        self, clock: FakeClock, registry: CollectorRegistry, exporter: MetricsExporter
    ) -> None:
        client = make_client(clock)
        client.circuit_breaker.force_open(1000)

        exporter.update(client)
        exporter.update(client)

        name = "feedguard_cb_transitions_closed_to_open_total"
        assert registry.get_sample_value(name, {"client": CLIENT}) == 1

    def test_last_open_duration(
        self, clock: FakeClock, registry: CollectorRegistry, exporter: MetricsExporter
    ) -> None:
        client = make_client(clock)
        client.circuit_breaker.force_open(1000)
        clock.advance(1500)
        assert client.circuit_breaker.can_make_request()

        exporter.update(client)

        value = registry.get_sample_value("feedguard_cb_last_open_duration_ms", {"client": CLIENT})
        assert value == 1500

    def test_reset_counter_tracking(
        self, clock: FakeClock, registry: CollectorRegistry, exporter: MetricsExporter
    ) -> None:
        client = make_client(clock)
        client.circuit_breaker.force_open(1000)
        exporter.update(client)

        exporter.reset_counter_tracking()
        exporter.update(client)

        # Tracking restarted from zero, so the same transition is seen again
        name = "feedguard_cb_transitions_closed_to_open_total"
        assert registry.get_sample_value(name, {"client": CLIENT}) == 2


class TestFetchOutcomes:
    """record_fetch() as a DataFetchSink."""

    def test_record_fetch(self, registry: CollectorRegistry, exporter: MetricsExporter) -> None:
        exporter.record_fetch(
            DataFetchEvent(ts=1, source="market", provider="polymarket", operation="x", success=True)
        )
        exporter.record_fetch(
            DataFetchEvent(
                ts=2,
                source="market",
                provider="polymarket",
                operation="x",
                success=False,
                error="rate_limited:insufficient_tokens",
            )
        )

        sample = registry.get_sample_value
        name = "feedguard_fetch_outcomes_total"
        assert sample(name, {"source": "market", "outcome": "success"}) == 1
        assert sample(name, {"source": "market", "outcome": "rate_limited"}) == 1

    @pytest.mark.asyncio
    async def test_client_emits_to_exporter(
        self, clock: FakeClock, registry: CollectorRegistry, exporter: MetricsExporter
    ) -> None:
        client = make_client(clock, exporter)

        async def fetch() -> list[int]:
            return [1]

        async def down() -> list[int]:
            raise RetryableTransportError("HTTP 503", status=503)

        await client.execute(fetch, operation_name="op")
        await client.execute(down, operation_name="op")

        name = "feedguard_fetch_outcomes_total"
        assert registry.get_sample_value(name, {"source": "news", "outcome": "success"}) == 1
        assert registry.get_sample_value(name, {"source": "news", "outcome": "fallback"}) == 1


class TestMetricNames:
    """Exposition output."""

    def test_required_names_present(
        self, clock: FakeClock, registry: CollectorRegistry, exporter: MetricsExporter
    ) -> None:
        client = make_client(clock)
        exporter.update(client)
        exporter.record_fetch(
            DataFetchEvent(ts=1, source="news", provider="test", operation="x", success=True)
        )

        output = generate_latest(registry).decode("utf-8")

        sample_names = {
            line.split("{")[0].split(" ")[0]
            for line in output.splitlines()
            if line and not line.startswith("#")
        }
        assert REQUIRED_METRIC_NAMES <= sample_names

    def test_no_forbidden_labels(
        self, clock: FakeClock, registry: CollectorRegistry, exporter: MetricsExporter
    ) -> None:
        exporter.update(make_client(clock))
        exporter.record_fetch(
            DataFetchEvent(ts=1, source="news", provider="test", operation="x", success=True)
        )

        output = generate_latest(registry).decode("utf-8")

        found: set[str] = set()
        for match in re.finditer(r"\{([^}]+)\}", output):
            for pair in match.group(1).split(","):
                found.add(pair.split("=")[0])
        assert found == {"client", "bucket", "source", "outcome"}
        assert not found & FORBIDDEN_LABELS
