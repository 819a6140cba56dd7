"""
Spotify credential lifecycle — the ONE place that changes the credential.

SpotifyAuth acquires the access token (URL fragment from the login page, or
the token stores on startup), persists it through the storage tiers, decides
whether it is still usable, and refreshes it shortly before it expires.

Everything else gets a read-only view: is_valid(), credential,
get_access_token(), plus on_credential_changed() callbacks.
"""

import enum
import inspect
import logging
import re
from urllib.parse import unquote

from .credential import Credential, CredentialState, now_ms
from .oauth import TokenRefreshError

log = logging.getLogger('jukebox-spotify.auth')

DEFAULT_LIFETIME = 3600  # seconds, Spotify's access token lifetime

# The login page hands the token over as #token=... (older pages: #spotify_token=...)
FRAGMENT_PREFIXES = ("token=", "spotify_token=")

# A "%" not followed by two hex digits
_BAD_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")


class RefreshState(enum.Enum):
    IDLE = "idle"
    IN_FLIGHT = "refresh_in_flight"
    SUCCEEDED = "refresh_succeeded"
    FAILED_TRANSIENT = "refresh_failed_transient"
    FAILED_FATAL = "refresh_failed_fatal"


def decode_fragment_token(raw):
    """Percent-decode a token, falling back to the raw string if it won't decode."""
    if _BAD_ESCAPE.search(raw):
        log.warning("Malformed escape in token %s — using raw value", _mask(raw))
        return raw
    try:
        return unquote(raw, errors="strict")
    except UnicodeDecodeError as e:
        log.warning("URI decode error for token: %s — using raw value", e)
        return raw


def _mask(token):
    return f"{token[:8]}..." if token else "none"


class SpotifyAuth:
    """Owns the Spotify credential and its refresh cycle."""

    def __init__(self, tiers, oauth_client, settings, *,
                 clock=now_ms, default_lifetime=DEFAULT_LIFETIME, fallback_client_id=None):
        self.tiers = tiers
        self.oauth = oauth_client
        self.settings = settings
        self.default_lifetime = default_lifetime
        self.fallback_client_id = fallback_client_id
        self._clock = clock
        self._state = CredentialState()
        self._listeners = []
        self.refresh_state = RefreshState.IDLE
        self.last_refresh_error: str | None = None
        self.last_refreshed_at: int | None = None  # epoch ms

    # -- Read-only view --

    @property
    def credential(self) -> Credential | None:
        return self._state.current

    @property
    def has_token(self) -> bool:
        return self._state.current is not None

    def get_access_token(self) -> str | None:
        """Current in-memory access token.  Handed to the SDK as its token getter."""
        return self._state.access_token

    def remaining_ms(self) -> int | None:
        credential = self._state.current
        return credential.remaining_ms(self._clock()) if credential else None

    def is_valid(self) -> bool:
        """True if a token exists and is outside the 5-minute expiry buffer."""
        credential = self._state.current
        return credential is not None and credential.is_valid(self._clock())

    def on_credential_changed(self, callback):
        """Register callback(credential_or_None).  May be a coroutine function."""
        self._listeners.append(callback)

    # -- Acquisition --

    async def acquire_from_fragment(self, url) -> str | None:
        """Accept a token delivered as #token=<percent-encoded> on *url*.

        Returns the address with the fragment removed (for the page's
        history.replaceState), or None when the address carries no token.
        """
        address, _, fragment = url.partition("#")
        raw = None
        for prefix in FRAGMENT_PREFIXES:
            if fragment.startswith(prefix):
                raw = fragment[len(prefix):]
                break
        if not raw:
            return None

        token = decode_fragment_token(raw)
        await self.persist(token, self.default_lifetime)
        log.info("Token from URL fragment accepted (%s)", _mask(token))
        return address

    async def acquire_from_storage(self) -> Credential | None:
        """Load the stored credential: durable store first, local fallback second."""
        credential = await self.tiers.load()
        if credential is None:
            log.info("No saved Spotify data found")
            return None
        self._publish(credential)
        log.info("Token loaded (%s, expires in %ds)",
                 _mask(credential.access_token),
                 credential.remaining_ms(self._clock()) // 1000)
        await self._notify(credential)
        return credential

    # -- Persistence --

    async def persist(self, access_token, lifetime_seconds=None, refresh_token=None) -> Credential:
        """Write a new credential to every tier, then make it current."""
        credential = await self._store(access_token, lifetime_seconds, refresh_token)
        self._publish(credential)
        await self._notify(credential)
        return credential

    async def _store(self, access_token, lifetime_seconds, refresh_token) -> Credential:
        if lifetime_seconds is None:
            lifetime_seconds = self.default_lifetime
        credential = Credential(
            access_token=access_token,
            expires_at=self._clock() + int(lifetime_seconds * 1000),
            refresh_token=refresh_token,
        )
        written = await self.tiers.save(credential)
        if not written:
            log.warning("Token could not be saved to any store — keeping it in memory only")
        else:
            log.info("Spotify token saved to %s, expires in %ds",
                     "+".join(written), lifetime_seconds)
        return credential

    def _publish(self, credential):
        self._state.replace(credential)

    async def clear(self, reason="logout"):
        """Drop the credential from memory and from every tier."""
        log.info("Clearing Spotify tokens (%s)", reason)
        self._state.clear()
        await self.tiers.clear()
        await self._notify(None)

    async def logout(self):
        await self.clear("logout")
        # An in-flight refresh finishes on its own and discards its result
        if self.refresh_state is not RefreshState.IN_FLIGHT:
            self.refresh_state = RefreshState.IDLE
        self.last_refresh_error = None

    async def _notify(self, credential):
        for callback in list(self._listeners):
            result = callback(credential)
            if inspect.isawaitable(result):
                await result

    # -- Validity --

    async def check_remote_connectivity(self) -> bool | None:
        """Probe the Web API with the current token.

        True: token works.  False: no usable token, or the API rejected it
        (401/403 — the credential is cleared).  None: unknown (network
        trouble or a server error); the credential is left alone.
        """
        if not self.is_valid():
            log.info("Spotify token expired or invalid — skipping connection test")
            return False

        generation = self._state.generation
        status = await self.oauth.probe(self._state.access_token)
        if status == 200:
            log.debug("Spotify connection valid")
            return True
        if status in (401, 403):
            log.warning("Spotify token rejected (HTTP %d)", status)
            if self._state.generation == generation:
                await self.clear(f"token rejected with HTTP {status}")
            return False
        log.warning("Spotify connection state unknown (%s)",
                    f"HTTP {status}" if status is not None else "unreachable")
        return None

    # -- Refresh --

    async def maybe_refresh(self) -> RefreshState | None:
        """Refresh if the token is inside the expiry buffer.  None if not due."""
        credential = self._state.current
        if credential is None or not credential.needs_refresh(self._clock()):
            return None
        log.info("Token expires soon, attempting automatic refresh")
        return await self.refresh()

    async def refresh(self) -> RefreshState:
        """Run one refresh.  A call while another is in flight is a no-op."""
        if self.refresh_state is RefreshState.IN_FLIGHT:
            log.debug("Refresh already in flight")
            return self.refresh_state
        self.refresh_state = RefreshState.IN_FLIGHT

        outcome = RefreshState.FAILED_TRANSIENT
        try:
            outcome = await self._run_refresh(self._state.generation)
        finally:
            self.refresh_state = outcome
        return outcome

    async def _run_refresh(self, generation) -> RefreshState:
        refresh_token = await self.tiers.load_refresh_token()
        if not refresh_token and self._state.current:
            refresh_token = self._state.current.refresh_token
        if not refresh_token:
            log.warning("No refresh token available — cannot auto-refresh")
            self.last_refresh_error = "missing_refresh_token"
            return RefreshState.FAILED_FATAL

        client_id = await self._load_client_id()
        if not client_id:
            log.warning("No Client ID configured — cannot refresh token")
            self.last_refresh_error = "missing_client_id"
            return RefreshState.FAILED_FATAL

        try:
            data = await self.oauth.refresh_access_token(client_id, refresh_token)
        except TokenRefreshError as e:
            self.last_refresh_error = e.error
            if e.revoked:
                log.error("Spotify refresh token revoked — re-authentication required")
                if self._state.generation == generation:
                    await self.clear("refresh token revoked")
                return RefreshState.FAILED_FATAL
            log.warning("Token refresh failed: %s", e)
            return RefreshState.FAILED_TRANSIENT

        if self._state.generation != generation:
            log.info("Credential changed during refresh — discarding result")
            return RefreshState.IDLE

        new_refresh = data.get("refresh_token") or refresh_token
        if new_refresh != refresh_token:
            log.info("Refresh token rotated")
        credential = await self._store(
            data["access_token"], data.get("expires_in") or self.default_lifetime, new_refresh)

        if self._state.generation != generation:
            # Lost a race with logout / a new login while writing: undo our writes
            log.info("Credential changed while saving refreshed token — discarding it")
            if self._state.current is None:
                await self.tiers.clear()
            else:
                await self.tiers.save(self._state.current)
            return RefreshState.IDLE

        self._publish(credential)
        self.last_refresh_error = None
        self.last_refreshed_at = self._clock()
        log.info("Access token refreshed (expires in %ds)", data.get("expires_in") or self.default_lifetime)
        await self._notify(credential)
        return RefreshState.SUCCEEDED

    async def _load_client_id(self):
        client_id = await self.settings.get_setting("spotify", "clientId", None)
        return client_id or self.fallback_client_id
