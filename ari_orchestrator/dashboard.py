"""
Dashboard HTTP API.

Serves the call log, a manual dial endpoint, recorded audio under
/recordings/, plus /health and Prometheus /metrics.
"""

import os
import sqlite3
from typing import Callable, Optional

from aiohttp import web
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from .config import DashboardConfig
from .core.call_log import CallLogStore
from .logging_config import get_logger

logger = get_logger(__name__)


class DashboardServer:
    def __init__(
        self,
        config: DashboardConfig,
        ari_client,
        call_log: Optional[CallLogStore],
        sounds_dir: str,
        *,
        app_name: str,
        active_sessions: Optional[Callable[[], int]] = None,
    ):
        self.config = config
        self.ari_client = ari_client
        self.call_log = call_log
        self.sounds_dir = sounds_dir
        self.app_name = app_name
        self._active_sessions = active_sessions or (lambda: 0)
        self._runner: Optional[web.AppRunner] = None

    def create_app(self) -> web.Application:
        app = web.Application(middlewares=[self._cors_middleware])
        app.router.add_get('/health', self._health_handler)
        app.router.add_get('/metrics', self._metrics_handler)
        app.router.add_get('/api/calls', self._calls_handler)
        app.router.add_post('/api/dial', self._dial_handler)
        if os.path.isdir(self.sounds_dir):
            app.router.add_static('/recordings/', self.sounds_dir, show_index=False)
        else:
            logger.warning("Sounds directory missing, /recordings disabled", sounds_dir=self.sounds_dir)
        return app

    async def start(self) -> None:
        runner = web.AppRunner(self.create_app())
        await runner.setup()
        site = web.TCPSite(runner, self.config.host, self.config.port)
        await site.start()
        self._runner = runner
        logger.info("Dashboard API started", host=self.config.host, port=self.config.port)

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    @web.middleware
    async def _cors_middleware(self, request, handler):
        if request.method == "OPTIONS":
            response = web.Response(status=204)
        else:
            response = await handler(request)
        if self.config.cors_origin:
            response.headers["Access-Control-Allow-Origin"] = self.config.cors_origin
            response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
            response.headers["Access-Control-Allow-Headers"] = "Content-Type"
        return response

    async def _health_handler(self, request):
        ari_connected = bool(getattr(self.ari_client, "running", False))
        return web.json_response({
            "status": "healthy" if ari_connected else "degraded",
            "ari_connected": ari_connected,
            "active_calls": self._active_sessions(),
            "call_log_enabled": self.call_log is not None,
        })

    async def _metrics_handler(self, request):
        """Expose Prometheus metrics."""
        data = generate_latest()
        # aiohttp forbids 'charset=' inside content_type arg; pass full header via headers.
        return web.Response(body=data, headers={"Content-Type": CONTENT_TYPE_LATEST})

    async def _calls_handler(self, request):
        if self.call_log is None:
            return web.json_response([])
        try:
            limit = int(request.query.get("limit", "100"))
            offset = int(request.query.get("offset", "0"))
        except ValueError:
            return web.json_response({"error": "limit and offset must be integers"}, status=400)
        try:
            records = await self.call_log.list(limit=limit, offset=offset)
        except (sqlite3.Error, OSError) as e:
            logger.error("Failed to fetch calls", error=str(e))
            return web.json_response({"error": "Failed to fetch calls"}, status=500)
        return web.json_response([record.to_dict() for record in records])

    async def _dial_handler(self, request):
        try:
            body = await request.json()
        except ValueError:
            body = {}
        to = body.get("to") if isinstance(body, dict) else None
        to = str(to).strip() if to is not None else ""
        if not to:
            return web.json_response({"error": "Missing 'to' number"}, status=400)

        channel_id = await self.ari_client.originate(
            f"{self.config.dial_tech}/{to}",
            app=self.app_name,
            app_args=to,
            caller_id=self.config.dial_caller_id,
        )
        if not channel_id:
            logger.error("Dashboard dial failed", to=to)
            return web.json_response({"error": "Failed to make call"}, status=500)
        logger.info("Dashboard dial placed", to=to, channel_id=channel_id)
        return web.json_response({"success": True, "message": f"Calling {to}"})
