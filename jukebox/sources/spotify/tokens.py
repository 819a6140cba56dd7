"""
Durable token stores for Spotify credentials.

Two interchangeable clients with the same async contract:

  get(provider)                                  -> StoredTokens | None
  save(access_token, refresh_token, expires_at_ms, provider="spotify")
  clear(provider)

  HttpTokenStore — the data server's session API (default on the jukebox)
  FileTokenStore — a JSON file, written atomically (temp file + rename)

Both raise TokenStoreError when the store cannot be reached or read; callers
treat that as "no data" and fall through to the local fallback store.
Note the units: save() takes the absolute expiry in milliseconds, get()
reports it in seconds, matching the data server's schema.
"""

import asyncio
import json
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone

import aiohttp

log = logging.getLogger('jukebox-spotify.tokens')

PROVIDER = "spotify"
DEFAULT_DATA_SERVER_URL = "http://127.0.0.1:3001"

SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))

STORE_PATHS = [
    "/etc/jukebox/spotify_tokens.json",
    os.path.join(SCRIPT_DIR, "spotify_tokens.json"),
]


class TokenStoreError(Exception):
    """The durable store could not be read or written."""


@dataclass(frozen=True)
class StoredTokens:
    access_token: str
    refresh_token: str | None
    expires_at: int | None  # epoch seconds


def _parse_record(record) -> StoredTokens | None:
    if not isinstance(record, dict) or not record.get("access_token"):
        return None
    expires_at = record.get("expires_at")
    try:
        expires_at = int(expires_at) if expires_at is not None else None
    except (TypeError, ValueError):
        expires_at = None
    return StoredTokens(
        access_token=record["access_token"],
        refresh_token=record.get("refresh_token") or None,
        expires_at=expires_at,
    )


class FileTokenStore:
    """Token store backed by a JSON file keyed by provider.

    File I/O is blocking, so every operation runs in the default executor.
    """

    def __init__(self, paths=None):
        self.paths = list(paths) if paths else list(STORE_PATHS)

    def _find_store_path(self):
        """Find the best token store path (first existing, or first writable)."""
        for path in self.paths:
            if os.path.exists(path):
                return path
        for path in self.paths:
            d = os.path.dirname(path)
            if os.path.isdir(d) and os.access(d, os.W_OK):
                return path
        return self.paths[-1]

    def _read_all(self) -> dict:
        path = self._find_store_path()
        try:
            with open(path) as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as e:
            raise TokenStoreError(f"Cannot read {path}: {e}") from e
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: dict):
        path = self._find_store_path()
        d = os.path.dirname(path)
        try:
            os.makedirs(d, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=d, suffix=".tmp")
        except OSError as e:
            raise TokenStoreError(f"Cannot write {path}: {e}") from e
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2)
                f.write("\n")
            os.replace(tmp, path)
        except OSError as e:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise TokenStoreError(f"Cannot write {path}: {e}") from e
        return path

    def _get(self, provider):
        return _parse_record(self._read_all().get(provider))

    def _save(self, access_token, refresh_token, expires_at_ms, provider):
        data = self._read_all()
        data[provider] = {
            "access_token": access_token,
            "refresh_token": refresh_token,
            "expires_at": int(expires_at_ms // 1000),
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        return self._write_all(data)

    def _clear(self, provider):
        data = self._read_all()
        if data.pop(provider, None) is not None:
            self._write_all(data)

    async def get(self, provider=PROVIDER) -> StoredTokens | None:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._get, provider)

    async def save(self, access_token, refresh_token, expires_at_ms, provider=PROVIDER):
        loop = asyncio.get_running_loop()
        path = await loop.run_in_executor(
            None, self._save, access_token, refresh_token, expires_at_ms, provider)
        log.debug("Tokens written to %s", path)

    async def clear(self, provider=PROVIDER):
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._clear, provider)


class HttpTokenStore:
    """Token store backed by the data server's session API.

    The data server keeps a single token row, so get() ignores the provider
    beyond logging; save() and clear() address /api/session/<provider>.
    """

    def __init__(self, base_url=DEFAULT_DATA_SERVER_URL, session: aiohttp.ClientSession | None = None):
        self.base_url = base_url.rstrip("/")
        self._session = session

    async def _request(self, method, path, **kwargs) -> dict:
        url = f"{self.base_url}{path}"
        try:
            if self._session is not None:
                return await self._send(self._session, method, url, **kwargs)
            async with aiohttp.ClientSession() as session:
                return await self._send(session, method, url, **kwargs)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise TokenStoreError(f"{method} {url} failed: {e}") from e

    @staticmethod
    async def _send(session, method, url, **kwargs) -> dict:
        async with session.request(
            method, url, timeout=aiohttp.ClientTimeout(total=10), **kwargs
        ) as resp:
            if resp.status != 200:
                raise TokenStoreError(f"{method} {url} returned HTTP {resp.status}")
            data = await resp.json(content_type=None)
        if not isinstance(data, dict) or not data.get("success"):
            error = data.get("error") if isinstance(data, dict) else data
            raise TokenStoreError(f"{method} {url} failed: {error}")
        return data

    async def get(self, provider=PROVIDER) -> StoredTokens | None:
        data = await self._request("GET", "/api/session/tokens")
        tokens = _parse_record(data.get("tokens"))
        log.debug("Data server %s tokens: %s", provider, "found" if tokens else "none")
        return tokens

    async def save(self, access_token, refresh_token, expires_at_ms, provider=PROVIDER):
        await self._request("POST", f"/api/session/{provider}", json={
            "accessToken": access_token,
            "refreshToken": refresh_token,
            "tokenExpiry": expires_at_ms,
        })

    async def clear(self, provider=PROVIDER):
        await self._request("DELETE", f"/api/session/{provider}")
