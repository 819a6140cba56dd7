"""
Settings capability: get_setting(category, key, default).

HttpSettings reads from the data server's settings API and falls back to the
default on any failure (the settings server is optional).  ConfigSettings
reads the local JSON config instead.  Both are async so they can be swapped.
"""

import asyncio
import logging

import aiohttp

from jukebox.lib.config import cfg

from .tokens import DEFAULT_DATA_SERVER_URL

log = logging.getLogger('jukebox-spotify.settings')


class ConfigSettings:
    """Settings read from the JSON config file: category → section."""

    # Settings-API key names differ from the config file's snake_case keys
    KEY_ALIASES = {("spotify", "clientId"): "client_id"}

    async def get_setting(self, category, key, default=None):
        key = self.KEY_ALIASES.get((category, key), key)
        return cfg(category, key, default=default)


class HttpSettings:
    """Settings read from GET /api/settings/<category>/<key> on the data server."""

    def __init__(self, base_url=DEFAULT_DATA_SERVER_URL, session: aiohttp.ClientSession | None = None):
        self.base_url = base_url.rstrip("/")
        self._session = session

    async def get_setting(self, category, key, default=None):
        url = f"{self.base_url}/api/settings/{category}/{key}"
        params = {"defaultValue": "" if default is None else str(default)}
        try:
            if self._session is not None:
                data = await self._fetch(self._session, url, params)
            else:
                async with aiohttp.ClientSession() as session:
                    data = await self._fetch(session, url, params)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            log.warning("Settings API get %s.%s failed: %s", category, key, e)
            return default

        if not isinstance(data, dict) or not data.get("success"):
            log.warning("Settings API get %s.%s failed: %s", category, key,
                        data.get("error") if isinstance(data, dict) else data)
            return default
        value = data.get("value")
        # The data server echoes defaultValue back as "" when unset
        return default if value in (None, "") else value

    @staticmethod
    async def _fetch(session, url, params):
        async with session.get(
            url, params=params, timeout=aiohttp.ClientTimeout(total=10)
        ) as resp:
            if resp.status != 200:
                raise aiohttp.ClientResponseError(
                    resp.request_info, resp.history, status=resp.status)
            return await resp.json(content_type=None)


class ChainedSettings:
    """First non-empty value from several settings sources."""

    def __init__(self, *sources):
        self.sources = sources

    async def get_setting(self, category, key, default=None):
        for source in self.sources:
            value = await source.get_setting(category, key, None)
            if value not in (None, ""):
                return value
        return default
