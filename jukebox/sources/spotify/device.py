"""
Device session — the handshake with the Spotify playback SDK.

The session creates one SDK player once a valid token exists, turns the
SDK's callbacks into SDKEvent values and runs them through dispatch(), and
tears everything down when the credential goes away.

It never touches the credential: it only sees has_valid_token() and a
token getter that always returns the current in-memory token.
"""

import enum
import inspect
import logging
from dataclasses import dataclass

log = logging.getLogger('jukebox-spotify.device')

PLAYER_NAME = "Jukebox Browser Player"
DEFAULT_VOLUME = 0.7


class ConnectionStatus(enum.Enum):
    DISCONNECTED = "disconnected"
    TOKEN_PENDING = "token_pending"
    DEVICE_CONNECTING = "device_connecting"
    READY = "ready"


class EventType(enum.Enum):
    READY = "ready"
    NOT_READY = "not_ready"
    INITIALIZATION_ERROR = "initialization_error"
    AUTHENTICATION_ERROR = "authentication_error"
    ACCOUNT_ERROR = "account_error"
    PLAYER_STATE_CHANGED = "player_state_changed"


ERROR_EVENTS = {
    EventType.INITIALIZATION_ERROR,
    EventType.AUTHENTICATION_ERROR,
    EventType.ACCOUNT_ERROR,
}


@dataclass(frozen=True)
class SDKEvent:
    type: EventType
    device_id: str | None = None
    message: str | None = None
    state: dict | None = None

    @classmethod
    def from_payload(cls, event_type, payload=None):
        """Build an event from the SDK's (event name, payload) pair.

        Raises ValueError for an unknown event name.
        """
        kind = EventType(event_type)
        payload = payload if isinstance(payload, dict) else {}
        if kind is EventType.PLAYER_STATE_CHANGED:
            return cls(kind, state=payload or None)
        return cls(kind, device_id=payload.get("device_id"), message=payload.get("message"))


def derive_status(has_token, device_id, connecting, expired=False) -> ConnectionStatus:
    if not has_token or expired:
        return ConnectionStatus.DISCONNECTED
    if device_id:
        return ConnectionStatus.READY
    if connecting:
        return ConnectionStatus.DEVICE_CONNECTING
    return ConnectionStatus.TOKEN_PENDING


class DeviceSession:
    """One SDK player bound to the current credential."""

    def __init__(self, has_valid_token, get_token, sdk=None, *,
                 name=PLAYER_NAME, volume=DEFAULT_VOLUME):
        self.sdk = sdk
        self.name = name
        self.volume = volume
        self._has_valid_token = has_valid_token
        self._get_token = get_token
        self._ready_listeners = []
        self.player = None
        self.device_id: str | None = None
        self.playing: bool | None = None  # best-effort mirror of the SDK's paused flag
        self.status = ConnectionStatus.DISCONNECTED

    def on_ready(self, callback):
        """Register callback(device_id).  May be a coroutine function."""
        self._ready_listeners.append(callback)

    def refresh_status(self, has_token, expired=False) -> ConnectionStatus:
        """Recompute the status.  An expired token counts as no token."""
        self.status = derive_status(has_token, self.device_id, self.player is not None, expired)
        return self.status

    async def ensure_player(self) -> bool:
        """Create and connect the SDK player if possible.

        Safe to call repeatedly: returns True without doing anything while a
        player exists, False when creation has to wait (no SDK, no valid token).
        """
        if self.player is not None:
            log.debug("Spotify player already initialized")
            return True
        if self.sdk is None:
            log.info("Spotify SDK not loaded — player will be created later")
            return False
        if not self._has_valid_token():
            log.info("No valid access token — player will be created once a token is loaded")
            return False

        log.info("Creating Spotify player '%s'", self.name)
        player = self.sdk.create_player(
            name=self.name, get_oauth_token=self._get_token, volume=self.volume)
        self.player = player
        for kind in EventType:
            player.add_listener(kind.value, self._listener(player, kind))
        self.status = ConnectionStatus.DEVICE_CONNECTING

        if await player.connect():
            log.info("Successfully connected to Spotify")
        else:
            log.warning("Failed to connect to Spotify")
        return True

    def _listener(self, player, kind):
        async def handle(payload=None):
            if player is not self.player:
                log.debug("Ignoring %s from a discarded player", kind.value)
                return
            await self.dispatch(SDKEvent.from_payload(kind.value, payload))
        return handle

    async def dispatch(self, event: SDKEvent):
        """Apply one SDK event to the session state."""
        if event.type is EventType.READY:
            self.device_id = event.device_id
            self.status = ConnectionStatus.READY
            log.info("Device ready: %s", event.device_id)
            for callback in list(self._ready_listeners):
                result = callback(event.device_id)
                if inspect.isawaitable(result):
                    await result
        elif event.type is EventType.NOT_READY:
            # The device may come back on its own; keep the session
            log.warning("Device NOT ready: %s", event.device_id)
        elif event.type is EventType.PLAYER_STATE_CHANGED:
            if event.state:
                self.playing = not event.state.get("paused", True)
                log.debug("Player state changed — playing: %s", self.playing)
        elif event.type in ERROR_EVENTS:
            log.error("Spotify %s: %s", event.type.value, event.message)

    async def teardown(self):
        """Disconnect the player and forget the device."""
        player, self.player = self.player, None
        self.device_id = None
        self.playing = None
        self.status = ConnectionStatus.DISCONNECTED
        if player is None:
            return
        try:
            await player.disconnect()
        except Exception as e:
            log.warning("Player disconnect failed: %s", e)
        log.info("Spotify device session closed")

    # -- Playback helpers --

    async def set_volume(self, volume) -> bool:
        """Set player volume from a 0..1 float (rounded to whole percent)."""
        if self.player is None or not self.device_id:
            return False
        percent = max(0, min(100, round(volume * 100)))
        await self.player.set_volume(percent / 100)
        log.info("Volume set to: %d%%", percent)
        return True

    async def current_progress(self):
        """(position, duration) in seconds of the playing track, or None."""
        if self.player is None or not self.device_id:
            return None
        state = await self.player.get_current_state()
        if not state or state.get("paused", True) or not state.get("duration"):
            return None
        return state.get("position", 0) / 1000, state["duration"] / 1000
