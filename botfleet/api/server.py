"""API Server — aiohttp app with auth middleware, REST routes, and metrics."""

from __future__ import annotations

import hmac
from datetime import datetime, timezone
from typing import Callable

import structlog
from aiohttp import web

from botfleet.api import api_key_key, ctx_key
from botfleet.api.metrics import metrics_handler
from botfleet.api.routes import API_VERSION, setup_routes
from botfleet.shell.activity import ActivityLogger
from botfleet.shell.config import Config
from botfleet.shell.storage import Storage

log = structlog.get_logger()

# Paths served without a bearer token
PUBLIC_PATHS = ("/metrics", "/v1/health")


@web.middleware
async def auth_middleware(request: web.Request, handler):
    """Bearer token authentication."""
    if request.path in PUBLIC_PATHS:
        return await handler(request)

    api_key = request.app.get(api_key_key, "")
    if not api_key:
        # No API key configured, reject all requests
        return web.json_response(
            {"error": {"code": "unauthorized", "message": "API key not configured"}},
            status=401,
        )
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer ") or not hmac.compare_digest(auth[7:], api_key):
        return web.json_response(
            {"error": {"code": "unauthorized", "message": "Invalid or missing API key"}},
            status=401,
        )
    return await handler(request)


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Catch unhandled exceptions and return generic error (no tracebacks to clients)."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise  # Let aiohttp handle HTTP errors (401, 404, etc.)
    except Exception as e:
        log.error("api.unhandled_error", path=request.path, error=str(e),
                  error_type=type(e).__name__)
        return web.json_response(
            {
                "error": {"code": "internal_error", "message": "An unexpected error occurred"},
                "meta": {
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                    "version": API_VERSION,
                },
            },
            status=500,
        )


def create_app(
    config: Config,
    storage: Storage,
    activity: ActivityLogger,
    status_fn: Callable[[], dict] | None = None,
) -> web.Application:
    """Create and configure the aiohttp application."""
    app = web.Application(middlewares=[error_middleware, auth_middleware])

    app[api_key_key] = config.api.api_key

    # Shared context for route handlers
    app[ctx_key] = {
        "config": config,
        "storage": storage,
        "activity": activity,
        "status_fn": status_fn or (lambda: {}),
        "started_at": datetime.now(timezone.utc),
    }

    setup_routes(app)

    # Prometheus metrics (no auth, internal network only)
    app.router.add_get("/metrics", metrics_handler)

    return app


class ApiServer:
    """Runs the app on its own TCP site inside the engine's event loop."""

    def __init__(self, app: web.Application, host: str, port: int) -> None:
        self._app = app
        self._host = host
        self._port = port
        self._runner: web.AppRunner | None = None

    async def start(self) -> None:
        self._runner = web.AppRunner(self._app, access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()
        log.info("api.started", host=self._host, port=self._port)

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            log.info("api.stopped")
