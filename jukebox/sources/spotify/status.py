"""
Status publisher — the once-a-minute heartbeat of the Spotify integration.

Every tick, in order:
  1. recompute the UI-facing connection status and publish it
  2. give SpotifyAuth a chance to refresh a token that is about to expire
"""

import inspect
import logging

from jukebox.lib.periodic import PeriodicTask

from .credential import EXPIRY_BUFFER_MS
from .device import ConnectionStatus

log = logging.getLogger('jukebox-spotify.status')

STATUS_INTERVAL = 60  # seconds


def format_remaining(remaining_ms) -> str:
    """Token countdown text: 'Token: 1h 5min', 'Token: 12min', 'Token: 40s'."""
    remaining = max(0, remaining_ms)
    minutes = remaining // 60000
    hours = minutes // 60
    if hours > 0:
        return f"Token: {hours}h {minutes % 60}min"
    if minutes > 0:
        return f"Token: {minutes}min"
    if remaining > 0:
        return f"Token: {remaining // 1000}s"
    return "Token expired"


def status_view(status: ConnectionStatus, remaining_ms=None, device_id=None) -> dict:
    if status is ConnectionStatus.READY:
        text = format_remaining(remaining_ms) if remaining_ms is not None else "Connected"
        icon = "connected"
    elif status in (ConnectionStatus.TOKEN_PENDING, ConnectionStatus.DEVICE_CONNECTING):
        if remaining_ms is not None and remaining_ms < EXPIRY_BUFFER_MS:
            text = "Token expiring, Device pending"
        else:
            text = "Token OK, Device pending"
        icon = "disconnected"
    elif remaining_ms is not None and remaining_ms <= 0:
        text = "Token expired"
        icon = "disconnected"
    else:
        text = "Disconnected"
        icon = "disconnected"
    return {
        "status": status.value,
        "text": text,
        "icon": icon,
        "device_id": device_id,
        "remaining_ms": remaining_ms,
    }


class StatusPublisher:
    """Single periodic task publishing status and driving token refresh."""

    def __init__(self, auth, device, publish=None, interval=STATUS_INTERVAL):
        self.auth = auth
        self.device = device
        self._publish = publish
        self.last_view: dict | None = None
        self._task = PeriodicTask("spotify status", self.tick, interval)

    @property
    def running(self) -> bool:
        return self._task.running

    def start(self):
        """Start publishing.  Replaces any loop already running."""
        self._task.start()

    def stop(self):
        self._task.stop()

    async def publish_status(self) -> dict:
        remaining = self.auth.remaining_ms()
        expired = remaining is not None and remaining <= 0
        status = self.device.refresh_status(self.auth.has_token, expired)
        view = status_view(status, remaining, self.device.device_id)
        changed = view["status"] != (self.last_view or {}).get("status")
        self.last_view = view
        if changed:
            log.info("Spotify status: %s", view["text"])
        if self._publish is not None:
            result = self._publish(view)
            if inspect.isawaitable(result):
                await result
        return view

    async def tick(self):
        await self.publish_status()
        await self.auth.maybe_refresh()
