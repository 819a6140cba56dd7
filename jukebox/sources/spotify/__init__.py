"""Spotify Web Playback: credential lifecycle, device session, status."""

from .auth import RefreshState, SpotifyAuth
from .credential import Credential, EXPIRY_BUFFER_MS
from .device import ConnectionStatus, DeviceSession, EventType, SDKEvent

__all__ = [
    "ConnectionStatus",
    "Credential",
    "DeviceSession",
    "EXPIRY_BUFFER_MS",
    "EventType",
    "RefreshState",
    "SDKEvent",
    "SpotifyAuth",
]
