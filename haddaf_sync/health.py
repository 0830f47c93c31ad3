"""
Health and metrics HTTP server.

Exposes:
- GET /health: JSON status with the session, live subscriptions, store
  reachability and absorbed failures per area
- GET /metrics: Prometheus-compatible metrics
"""

from __future__ import annotations

from typing import Any

from aiohttp import web

from .metrics import MetricsCollector


class HealthServer:
    """Lightweight HTTP server for health checks and metrics."""

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 9090,
        metrics: MetricsCollector | None = None,
    ):
        self._host = host
        self._port = port
        self._metrics = metrics or MetricsCollector()
        self._status: dict[str, Any] = {}
        self._store_reachable = False
        self._runner: web.AppRunner | None = None

    def update_status(self, status: dict[str, Any], store_reachable: bool) -> None:
        self._status = status
        self._store_reachable = store_reachable

    def status_body(self) -> dict[str, Any]:
        return {
            "status": "healthy" if self._store_reachable else "degraded",
            "store_reachable": self._store_reachable,
            "uptime_seconds": round(self._metrics.uptime_seconds, 1),
            "absorbed_errors": self._metrics.absorbed_errors(),
            **self._status,
        }

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self._health_handler)
        app.router.add_get("/metrics", self._metrics_handler)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    async def _health_handler(self, request: web.Request) -> web.Response:
        return web.json_response(self.status_body())

    async def _metrics_handler(self, request: web.Request) -> web.Response:
        return web.Response(
            text=self._metrics.to_prometheus(),
            content_type="text/plain",
        )
