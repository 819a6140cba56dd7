"""
Spotify Accounts / Web API calls used by the credential lifecycle.

Two requests only:
  refresh_access_token(client_id, refresh_token) — token exchange, PKCE style
      (client_id in the form body, no client secret)
  probe(access_token) — GET /v1/me as a liveness check

Usage:
    client = SpotifyOAuthClient()
    tokens = await client.refresh_access_token(client_id, refresh_token)
    status = await client.probe(tokens['access_token'])
"""

import asyncio
import logging

import aiohttp

log = logging.getLogger('jukebox-spotify.oauth')

TOKEN_URL = "https://accounts.spotify.com/api/token"
PROFILE_URL = "https://api.spotify.com/v1/me"

REQUEST_TIMEOUT = 10  # seconds


class TokenRefreshError(Exception):
    """Token exchange failed.

    ``error`` is the provider's error code when it sent one (``invalid_grant``,
    ``invalid_client``, ...), otherwise ``network_error`` or
    ``invalid_response``.
    """

    def __init__(self, error, description=None, status=None):
        self.error = error
        self.description = description
        self.status = status
        super().__init__(f"{error}: {description}" if description else error)

    @property
    def revoked(self) -> bool:
        """True when the refresh token itself is dead and cannot be retried."""
        return self.error == "invalid_grant"


class SpotifyOAuthClient:
    """Async client for the token endpoint and the profile probe."""

    def __init__(self, token_url=TOKEN_URL, profile_url=PROFILE_URL,
                 session: aiohttp.ClientSession | None = None):
        self.token_url = token_url
        self.profile_url = profile_url
        self._session = session
        self._timeout = aiohttp.ClientTimeout(total=REQUEST_TIMEOUT)

    async def refresh_access_token(self, client_id, refresh_token) -> dict:
        """Exchange a refresh token for a new access token.

        Returns the response dict with 'access_token', 'expires_in' and
        optionally a rotated 'refresh_token'.  Raises TokenRefreshError.
        """
        body = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": client_id,
        }
        try:
            status, data = await self._call(self._post_form, body)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TokenRefreshError("network_error", str(e)) from e
        except ValueError as e:
            raise TokenRefreshError("invalid_response", "response is not JSON") from e

        if not isinstance(data, dict):
            raise TokenRefreshError("invalid_response", "response is not an object", status)
        if data.get("error"):
            raise TokenRefreshError(data["error"], data.get("error_description"), status)
        if status != 200 or not data.get("access_token"):
            raise TokenRefreshError("invalid_response", f"HTTP {status} without access_token", status)
        return data

    async def probe(self, access_token) -> int | None:
        """GET /v1/me with the token.  Returns the HTTP status, or None if unreachable."""
        try:
            status, _ = await self._call(self._get_profile, access_token)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            log.warning("Spotify connection test failed: %s", e)
            return None
        return status

    async def _call(self, fn, arg):
        if self._session is not None:
            return await fn(self._session, arg)
        async with aiohttp.ClientSession() as session:
            return await fn(session, arg)

    async def _post_form(self, session, body):
        async with session.post(
            self.token_url,
            data=body,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout=self._timeout,
        ) as resp:
            return resp.status, await resp.json(content_type=None)

    async def _get_profile(self, session, access_token):
        async with session.get(
            self.profile_url,
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=self._timeout,
        ) as resp:
            return resp.status, None
