#!/usr/bin/env python3
"""
Jukebox Spotify credential service (jukebox-spotify)

Keeps the jukebox page's Spotify Web Playback session alive: loads the
stored token on startup, refreshes it before it expires, tracks the SDK
device handshake, and publishes the connection status to the UI.

Port: 8773
"""

import asyncio
import logging
import os

from aiohttp import web

from jukebox.lib.config import cfg
from jukebox.lib.periodic import PeriodicTask
from jukebox.lib.service_base import ServiceBase

from .auth import DEFAULT_LIFETIME, RefreshState, SpotifyAuth
from .device import DeviceSession, EventType, PLAYER_NAME
from .oauth import SpotifyOAuthClient
from .sdk import BridgeSDK
from .settings import ChainedSettings, ConfigSettings, HttpSettings
from .status import STATUS_INTERVAL, StatusPublisher
from .storage import DurableTier, FileLocalStorage, LocalTier, TokenTiers
from .tokens import DEFAULT_DATA_SERVER_URL, STORE_PATHS, FileTokenStore, HttpTokenStore

log = logging.getLogger('jukebox-spotify')

PROGRESS_INTERVAL = 1  # seconds between progress broadcasts while ready
LOCAL_STORAGE_FILE = os.path.join(
    os.getenv('JUKEBOX_STATE_DIR', '/var/lib/jukebox'), 'spotify_local.json')


def build_auth() -> SpotifyAuth:
    """Assemble SpotifyAuth from config: durable store, local fallback, settings."""
    data_server = cfg("data_server", "url", default=DEFAULT_DATA_SERVER_URL)
    if cfg("spotify", "token_store", default="http") == "file":
        token_file = cfg("spotify", "token_file")
        durable = FileTokenStore([token_file] if token_file else STORE_PATHS)
        settings = ConfigSettings()
    else:
        durable = HttpTokenStore(data_server)
        settings = ChainedSettings(HttpSettings(data_server), ConfigSettings())

    local = FileLocalStorage(cfg("spotify", "local_storage_file", default=LOCAL_STORAGE_FILE))
    tiers = TokenTiers([DurableTier(durable), LocalTier(local)])
    return SpotifyAuth(
        tiers, SpotifyOAuthClient(), settings,
        default_lifetime=cfg("spotify", "default_lifetime", default=DEFAULT_LIFETIME),
    )


class SpotifyService(ServiceBase):
    """Spotify credential + device session service."""

    id = "spotify"
    name = "Spotify"
    port = 8773

    def __init__(self, auth: SpotifyAuth | None = None, sdk=None):
        super().__init__()
        self.port = cfg("spotify", "port", default=self.port)
        self.auth = auth or build_auth()
        self.sdk = sdk if sdk is not None else BridgeSDK(self._send_player_command)
        self.device = DeviceSession(
            self.auth.is_valid, self.auth.get_access_token, self.sdk,
            name=cfg("spotify", "player_name", default=PLAYER_NAME))
        self.publisher = StatusPublisher(
            self.auth, self.device, self._broadcast_status,
            interval=cfg("spotify", "status_interval", default=STATUS_INTERVAL))
        self._progress = PeriodicTask("spotify progress", self._broadcast_progress, PROGRESS_INTERVAL)

        self.auth.on_credential_changed(self._on_credential_changed)
        self.device.on_ready(self._on_device_ready)

    async def on_start(self):
        connected = await self.auto_connect()
        log.info("Spotify service ready (%s)", "token loaded" if connected else "awaiting login")

    async def on_stop(self):
        self.publisher.stop()
        self._progress.stop()
        await self.device.teardown()

    # -- Lifecycle --

    async def auto_connect(self) -> bool:
        """Restore the saved token and bring the device session up."""
        credential = await self.auth.acquire_from_storage()
        if credential is None:
            await self.publisher.publish_status()
            return False

        if self.auth.is_valid():
            connected = await self.auth.check_remote_connectivity()
            if connected is False:
                log.info("Saved Spotify connection invalid")
                return False
            if connected is None:
                log.warning("Could not verify saved token — keeping it")
        elif not await self._refresh_saved_token():
            return False

        self.publisher.start()
        await self.publisher.publish_status()
        return True

    async def _refresh_saved_token(self) -> bool:
        """Refresh a saved token that is inside the expiry buffer or already expired.

        A token with time left is kept when the refresh fails, and the status
        tick retries while it lasts.  An expired token that cannot be
        refreshed is cleared.
        """
        remaining = self.auth.remaining_ms()
        log.info("Saved token %s — refreshing now",
                 "is inside the expiry buffer" if remaining > 0 else "already expired")
        outcome = await self.auth.refresh()
        if outcome is RefreshState.SUCCEEDED:
            return True
        if not self.auth.has_token:
            return False
        if self.auth.remaining_ms() > 0:
            return True
        await self.auth.clear("saved token expired")
        return False

    async def _on_credential_changed(self, credential):
        if credential is None:
            self.publisher.stop()
            self._progress.stop()
            await self.device.teardown()
            await self.publisher.publish_status()
            await self.broadcast("spotify_credential", {"has_token": False})
            return

        await self.broadcast("spotify_credential", {
            "has_token": True,
            "expires_at": credential.expires_at,
        })
        if self.auth.is_valid():
            await self.device.ensure_player()
        if not self.publisher.running:
            self.publisher.start()

    async def _on_device_ready(self, device_id):
        # Restart so the countdown lines up with the fresh session
        self.publisher.start()
        self._progress.start()
        await self.publisher.publish_status()
        await self.broadcast("spotify_device_ready", {"device_id": device_id})

    # -- UI broadcasts --

    async def _broadcast_status(self, view):
        await self.broadcast("spotify_status", view)

    async def _broadcast_progress(self):
        progress = await self.device.current_progress()
        if progress:
            position, duration = progress
            await self.broadcast("spotify_progress", {"position": position, "duration": duration})

    async def _send_player_command(self, command, data):
        await self.broadcast("spotify_player_command", {"command": command, **data})

    # -- HTTP --

    async def handle_status(self) -> dict:
        view = self.publisher.last_view or await self.publisher.publish_status()
        credential = self.auth.credential
        return {
            **view,
            'has_token': credential is not None,
            'valid': self.auth.is_valid(),
            'expires_at': credential.expires_at if credential else None,
            'refresh_state': self.auth.refresh_state.value,
            'last_refresh_error': self.auth.last_refresh_error,
            'last_refreshed_at': self.auth.last_refreshed_at,
            'playing': self.device.playing,
        }

    def add_routes(self, app):
        app.router.add_post('/token', self._handle_token)
        app.router.add_get('/sdk/token', self._handle_sdk_token)
        app.router.add_post('/sdk/event', self._handle_sdk_event)
        app.router.add_post('/check', self._handle_check)
        app.router.add_post('/refresh', self._handle_refresh)
        app.router.add_post('/volume', self._handle_volume)
        app.router.add_post('/logout', self._handle_logout)

    async def _read_json(self, request) -> dict:
        try:
            data = await request.json()
        except ValueError:
            raise web.HTTPBadRequest(
                text='{"status": "error", "message": "Invalid JSON"}',
                content_type='application/json', headers=self._cors_headers())
        return data if isinstance(data, dict) else {}

    def _error(self, message, status=400):
        return self.json_response({'status': 'error', 'message': message}, status=status)

    async def _handle_token(self, request):
        """The page posts its address when it carries #token=... from the login flow."""
        data = await self._read_json(request)
        location = await self.auth.acquire_from_fragment(data.get('url', ''))
        if location is None:
            return self._error('No token in URL')
        return self.json_response({'status': 'ok', 'location': location})

    async def _handle_sdk_token(self, request):
        """Token getter for the page's SDK player."""
        player = self.device.player
        token = player.get_oauth_token() if player is not None else None
        if not token:
            return self._error('No access token', status=404)
        return self.json_response({'access_token': token})

    async def _handle_sdk_event(self, request):
        data = await self._read_json(request)
        event_type = data.get('type', '')
        try:
            EventType(event_type)
        except ValueError:
            return self._error(f'Unknown event: {event_type}')
        player = self.device.player
        if player is None:
            return self._error('No active player', status=409)
        await player.emit(event_type, data.get('state') if event_type == 'player_state_changed' else data)
        return self.json_response({'status': 'ok', 'connection': self.device.status.value})

    async def _handle_check(self, request):
        connected = await self.auth.check_remote_connectivity()
        view = await self.publisher.publish_status()
        return self.json_response({'status': 'ok', 'connected': connected, **view})

    async def _handle_refresh(self, request):
        if not self.auth.has_token:
            return self._error('Not connected', status=409)
        outcome = await self.auth.refresh()
        return self.json_response({'status': 'ok', 'refresh_state': outcome.value})

    async def _handle_volume(self, request):
        data = await self._read_json(request)
        try:
            volume = float(data.get('volume'))
        except (TypeError, ValueError):
            return self._error('volume must be a number between 0 and 1')
        applied = await self.device.set_volume(volume)
        return self.json_response({'status': 'ok', 'applied': applied})

    async def _handle_logout(self, request):
        await self.auth.logout()
        return self.json_response({'status': 'ok', 'message': 'Logged out'})


def main():
    logging.basicConfig(level=logging.INFO, format='[%(levelname)s] %(message)s')
    service = SpotifyService()
    asyncio.run(service.run())


if __name__ == '__main__':
    main()
