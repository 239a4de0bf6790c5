"""
HTTP server for Prometheus /metrics and gateway /healthz.

/metrics serves generate_latest(registry), refreshing gauges first when a
scrape hook is given. /healthz serves the client status JSON; it answers 503
while any client's circuit is not CLOSED.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import TYPE_CHECKING, Any

from aiohttp import web
from prometheus_client import generate_latest

if TYPE_CHECKING:
    from prometheus_client.registry import CollectorRegistry

    from feedguard.monitoring.exporter import MetricsExporter
    from feedguard.resilience.client import ResilientClient

logger = logging.getLogger(__name__)

_Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

HealthFn = Callable[[], dict[str, Any]]
ScrapeFn = Callable[[], None]


def clients_health_fn(clients: Sequence[ResilientClient]) -> HealthFn:
    """Health callback reporting every client's status."""

    def health() -> dict[str, Any]:
        statuses = {client.name: client.get_client_status() for client in clients}
        healthy = all(status["is_healthy"] for status in statuses.values())
        return {"status": "ok" if healthy else "degraded", "clients": statuses}

    return health


def exporter_scrape_fn(exporter: MetricsExporter, clients: Sequence[ResilientClient]) -> ScrapeFn:
    """Scrape hook syncing the exporter from every client."""

    def scrape() -> None:
        for client in clients:
            exporter.update(client)

    return scrape


def _make_metrics_handler(registry: CollectorRegistry, on_scrape: ScrapeFn | None) -> _Handler:
    async def handler(request: web.Request) -> web.Response:
        if on_scrape is not None:
            on_scrape()
        return web.Response(
            body=generate_latest(registry),
            content_type="text/plain; version=0.0.4",
            charset="utf-8",
        )

    return handler


def _make_healthz_handler(health_fn: HealthFn | None) -> _Handler:
    async def handler(request: web.Request) -> web.Response:
        info = health_fn() if health_fn is not None else {"status": "ok"}
        status = 200 if info.get("status", "ok") == "ok" else 503
        return web.Response(
            body=json.dumps(info, default=str),
            status=status,
            content_type="application/json",
        )

    return handler


def create_metrics_app(
    registry: CollectorRegistry,
    *,
    health_fn: HealthFn | None = None,
    on_scrape: ScrapeFn | None = None,
) -> web.Application:
    """
    aiohttp Application with /metrics and /healthz routes.

    Args:
        registry: Prometheus CollectorRegistry to serve.
        health_fn: Callback for /healthz (default: static {"status": "ok"}).
        on_scrape: Called before each /metrics render.
    """
    app = web.Application()
    app.router.add_get("/metrics", _make_metrics_handler(registry, on_scrape))
    app.router.add_get("/healthz", _make_healthz_handler(health_fn))
    return app


async def start_metrics_server(
    registry: CollectorRegistry,
    host: str = "0.0.0.0",
    port: int = 9090,
    *,
    health_fn: HealthFn | None = None,
    on_scrape: ScrapeFn | None = None,
) -> web.AppRunner:
    """
    Start serving; returns the AppRunner (pass to stop_metrics_server()).
    """
    app = create_metrics_app(registry, health_fn=health_fn, on_scrape=on_scrape)
    runner = web.AppRunner(app, access_log=None)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info("Metrics server started on http://%s:%d/metrics", host, port)
    return runner


async def stop_metrics_server(runner: web.AppRunner) -> None:
    await runner.cleanup()
    logger.info("Metrics server stopped")
