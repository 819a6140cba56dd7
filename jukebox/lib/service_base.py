# Jukebox
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
ServiceBase — shared plumbing for jukebox background services.

Subclass contract:

    class MyService(ServiceBase):
        id   = "spotify"     # service ID used in broadcasts
        name = "Spotify"     # display name
        port = 8773          # HTTP port

Optional overrides:
    on_start()              — called after HTTP server is up
    on_stop()               — called during shutdown
    handle_status()         — return dict for GET /status
    add_routes(app)         — add extra aiohttp routes
"""

import asyncio
import logging
import signal

from aiohttp import web, ClientSession

from .config import cfg

log = logging.getLogger(__name__)

INPUT_WEBHOOK_URL = "http://localhost:8767/webhook"


class ServiceBase:
    # ── Subclass must set these ──
    id: str = ""
    name: str = ""
    port: int = 0

    def __init__(self):
        self._http_session: ClientSession | None = None
        self._runner: web.AppRunner | None = None
        self.webhook_url = cfg("input", "webhook_url", default=INPUT_WEBHOOK_URL)

    # ── UI broadcasting via the input service ──

    async def broadcast(self, event_type, data):
        """Broadcast an event to UI clients via the input service webhook API."""
        if self._http_session is None:
            log.debug("No HTTP session yet — dropping %s broadcast", event_type)
            return
        try:
            async with self._http_session.post(
                self.webhook_url,
                json={"command": "broadcast", "params": {"type": event_type, "data": data}},
                timeout=5,
            ) as resp:
                log.info("→ input: broadcast %s (HTTP %d)", event_type, resp.status)
        except Exception as e:
            log.error("Failed to broadcast %s: %s", event_type, e)

    # ── HTTP server ──

    def build_app(self) -> web.Application:
        """Create the aiohttp app with the common routes plus subclass routes."""
        app = web.Application()
        app.router.add_get("/status", self._handle_status_route)
        app.router.add_route("OPTIONS", "/{tail:.*}", self._handle_cors)

        # Let subclass add extra routes
        self.add_routes(app)
        return app

    async def start(self):
        """Create the aiohttp app, register routes, start listening."""
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, "0.0.0.0", self.port)
        await site.start()
        log.info("HTTP API on port %d", self.port)

        self._http_session = ClientSession()

        await self.on_start()

    async def stop(self):
        """Shutdown hook — override on_stop() for cleanup."""
        await self.on_stop()
        if self._http_session:
            await self._http_session.close()
            self._http_session = None
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    async def run(self):
        """Convenience entry-point: start + wait for signal + stop."""
        await self.start()
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, stop_event.set)
        try:
            await stop_event.wait()
        finally:
            await self.stop()

    # ── CORS ──

    def _cors_headers(self):
        return {
            "Access-Control-Allow-Origin": "*",
            "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
            "Access-Control-Allow-Headers": "Content-Type",
        }

    async def _handle_cors(self, request):
        return web.Response(headers=self._cors_headers())

    def json_response(self, data, status=200):
        return web.json_response(data, status=status, headers=self._cors_headers())

    # ── Route handlers (delegate to subclass) ──

    async def _handle_status_route(self, request):
        result = await self.handle_status()
        return self.json_response(result)

    # ── Subclass hooks (override as needed) ──

    async def on_start(self):
        """Called after HTTP server is up."""

    async def on_stop(self):
        """Called during shutdown."""

    async def handle_status(self) -> dict:
        """Return status dict for GET /status."""
        return {"service": self.id, "name": self.name}

    def add_routes(self, app: web.Application):
        """Add extra aiohttp routes to the app."""
