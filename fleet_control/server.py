# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the SAGE project

"""Read-only HTTP status surface for operators.

Routes:
    GET /status  - ControlPlane.get_status()
    GET /events  - recent pool lifecycle events
    GET /config  - effective configuration
    GET /healthz - liveness of the control plane process itself
"""

from __future__ import annotations

import logging

from aiohttp import web

from .manager import ControlPlane

logger = logging.getLogger(__name__)

CONTROL_PLANE_KEY = web.AppKey("control_plane", ControlPlane)


async def handle_status(request: web.Request) -> web.Response:
    control_plane = request.app[CONTROL_PLANE_KEY]
    return web.json_response(control_plane.get_status())


async def handle_events(request: web.Request) -> web.Response:
    control_plane = request.app[CONTROL_PLANE_KEY]
    try:
        limit = int(request.query.get("limit", "50"))
    except ValueError:
        raise web.HTTPBadRequest(text="limit must be an integer") from None
    events = control_plane.pool.events(limit=max(limit, 1))
    return web.json_response([event.to_dict() for event in events])


async def handle_config(request: web.Request) -> web.Response:
    control_plane = request.app[CONTROL_PLANE_KEY]
    return web.json_response(control_plane.config.to_dict())


async def handle_healthz(request: web.Request) -> web.Response:
    control_plane = request.app[CONTROL_PLANE_KEY]
    if not control_plane.running:
        return web.json_response({"status": "stopped"}, status=503)
    return web.json_response({"status": "ok"})


def create_status_app(control_plane: ControlPlane) -> web.Application:
    app = web.Application()
    app[CONTROL_PLANE_KEY] = control_plane
    app.router.add_get("/status", handle_status)
    app.router.add_get("/events", handle_events)
    app.router.add_get("/config", handle_config)
    app.router.add_get("/healthz", handle_healthz)
    return app


class StatusServer:
    """Runs the status app on ``host:port`` alongside the control plane."""

    def __init__(self, control_plane: ControlPlane, host: str = "127.0.0.1", port: int = 8089):
        self.control_plane = control_plane
        self.host = host
        self.port = port
        self._runner: web.AppRunner | None = None

    async def start(self) -> None:
        self._runner = web.AppRunner(create_status_app(self.control_plane))
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info("Status server listening on http://%s:%d", self.host, self.port)

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            logger.info("Status server stopped")
