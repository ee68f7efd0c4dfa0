"""Small aiohttp endpoint exposing the daemon's live state."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional

from aiohttp import web
from aiohttp.web import AppKey

StatusProvider = Callable[[], Dict[str, Any]]

STATUS_PROVIDER_KEY: AppKey[StatusProvider] = web.AppKey("status_provider", object)
STARTED_AT_KEY: AppKey[float] = web.AppKey("started_at", float)


def _pipeline_alive(payload: Dict[str, Any]) -> bool:
    pipeline = payload.get("pipeline")
    return isinstance(pipeline, dict) and bool(pipeline.get("alive"))


async def status(request: web.Request) -> web.Response:
    payload = dict(request.app[STATUS_PROVIDER_KEY]())
    payload["uptime_sec"] = round(time.monotonic() - request.app[STARTED_AT_KEY], 3)
    return web.json_response(payload)


async def healthz(request: web.Request) -> web.Response:
    payload = request.app[STATUS_PROVIDER_KEY]()
    if _pipeline_alive(payload):
        return web.Response(text="ok")
    return web.Response(status=503, text="pipeline down")


def build_app(provider: StatusProvider) -> web.Application:
    app = web.Application()
    app[STATUS_PROVIDER_KEY] = provider
    app[STARTED_AT_KEY] = time.monotonic()
    app.router.add_get("/status", status)
    app.router.add_get("/healthz", healthz)
    return app


class StatusServer:
    def __init__(self, provider: StatusProvider, *, host: str, port: int):
        self.host = host
        self.port = int(port)
        self._app = build_app(provider)
        self._runner: Optional[web.AppRunner] = None
        self._log = logging.getLogger("camduck.status_server")

    async def start(self) -> None:
        if self._runner is not None:
            return
        runner = web.AppRunner(self._app, access_log=None)
        await runner.setup()
        site = web.TCPSite(runner, self.host, self.port)
        try:
            await site.start()
        except OSError:
            await runner.cleanup()
            raise
        self._runner = runner
        self._log.info("status server listening on http://%s:%s/status", self.host, self.port)

    async def stop(self) -> None:
        runner = self._runner
        self._runner = None
        if runner is not None:
            await runner.cleanup()
