"""
Bridge to the Spotify Web Playback SDK.

The SDK itself only runs inside the jukebox page.  BridgeSDK stands in for
it on the service side: create_player() returns a BridgePlayer that

  - forwards commands (connect, disconnect, volume) to the page through a
    command sink (the service broadcasts them to UI clients),
  - receives the SDK's events from the page (POST /sdk/event) and hands
    them to the registered listeners,
  - serves the token getter (GET /sdk/token), which reads the current
    in-memory token on every call.
"""

import inspect
import logging

log = logging.getLogger('jukebox-spotify.sdk')


class BridgePlayer:
    """Service-side proxy for one SDK Player instance."""

    def __init__(self, name, get_oauth_token, volume, command_sink=None):
        self.name = name
        self.volume = volume
        self.get_oauth_token = get_oauth_token
        self.connected = False
        self.last_state: dict | None = None
        self._command_sink = command_sink
        self._listeners: dict[str, list] = {}

    def add_listener(self, event, callback):
        self._listeners.setdefault(event, []).append(callback)

    async def emit(self, event, payload=None):
        """Deliver an SDK event (as posted by the page) to the listeners."""
        if event == "player_state_changed" and isinstance(payload, dict):
            self.last_state = payload
        for callback in list(self._listeners.get(event, [])):
            result = callback(payload)
            if inspect.isawaitable(result):
                await result

    async def _send(self, command, data=None) -> bool:
        if self._command_sink is None:
            return True
        result = self._command_sink(command, data or {})
        if inspect.isawaitable(result):
            result = await result
        return result is not False

    async def connect(self) -> bool:
        self.connected = await self._send("connect", {"name": self.name, "volume": self.volume})
        return self.connected

    async def disconnect(self):
        self.connected = False
        await self._send("disconnect")

    async def set_volume(self, volume):
        self.volume = volume
        await self._send("volume", {"volume": volume})

    async def get_current_state(self):
        return self.last_state


class BridgeSDK:
    """Factory with the SDK's Player constructor shape."""

    def __init__(self, command_sink=None):
        self.command_sink = command_sink
        self.players: list[BridgePlayer] = []

    def create_player(self, name, get_oauth_token, volume=0.7) -> BridgePlayer:
        player = BridgePlayer(name, get_oauth_token, volume, self.command_sink)
        self.players.append(player)
        log.info("Player '%s' created (instance %d)", name, len(self.players))
        return player
