"""Prometheus metrics and health endpoints."""

from feedguard.monitoring.exporter import MetricsExporter
from feedguard.monitoring.metrics_server import (
    clients_health_fn,
    create_metrics_app,
    exporter_scrape_fn,
    start_metrics_server,
    stop_metrics_server,
)

__all__ = [
    "MetricsExporter",
    "clients_health_fn",
    "create_metrics_app",
    "exporter_scrape_fn",
    "start_metrics_server",
    "stop_metrics_server",
]
