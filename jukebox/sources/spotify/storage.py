"""
Credential persistence tiers.

A tier adapts one store to a uniform async contract:

  load()                -> Credential | None
  load_refresh_token()  -> str | None
  save(credential)
  clear()

TokenTiers tries an ordered list of tiers (durable first, local fallback
second).  Reads stop at the first tier that has data; writes and clears go
to every tier.  A failing tier is logged and skipped, never raised.

The local fallback store is a plain synchronous string key-value store —
think browser localStorage.  FileLocalStorage keeps it in a JSON file so it
survives restarts; MemoryLocalStorage lasts for the process lifetime only.
"""

import json
import logging
import os
import tempfile

from .credential import Credential, now_ms
from .tokens import PROVIDER, TokenStoreError

log = logging.getLogger('jukebox-spotify.storage')

ACCESS_TOKEN_KEY = "spotify_access_token"
EXPIRY_KEY = "spotify_token_expiry"
REFRESH_TOKEN_KEY = "spotify_refresh_token"
LAST_CONNECTED_KEY = "spotify_last_connected"

STORAGE_ERRORS = (TokenStoreError, OSError, ValueError)


class MemoryLocalStorage:
    """Process-lifetime key-value store."""

    def __init__(self, initial=None):
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key):
        return self._data.get(key)

    def set(self, key, value):
        self._data[key] = str(value)

    def remove(self, key):
        self._data.pop(key, None)


class FileLocalStorage(MemoryLocalStorage):
    """Key-value store persisted to a JSON file after every change."""

    def __init__(self, path):
        super().__init__()
        self.path = path
        try:
            with open(path) as f:
                data = json.load(f)
            if isinstance(data, dict):
                self._data = {k: str(v) for k, v in data.items()}
        except FileNotFoundError:
            pass
        except (OSError, json.JSONDecodeError) as e:
            log.warning("Ignoring unreadable local storage %s: %s", path, e)

    def set(self, key, value):
        super().set(key, value)
        self._flush()

    def remove(self, key):
        if key in self._data:
            super().remove(key)
            self._flush()

    def _flush(self):
        d = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(d, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=d, suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(self._data, f, indent=2)
                f.write("\n")
            os.replace(tmp, self.path)
        except Exception:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise


class DurableTier:
    """Adapts a durable token store (expiry in seconds) to the tier contract."""

    name = "durable"

    def __init__(self, store, provider=PROVIDER):
        self.store = store
        self.provider = provider

    async def load(self) -> Credential | None:
        record = await self.store.get(self.provider)
        if record is None:
            return None
        if record.expires_at is None:
            log.warning("Durable tokens have no expiry — ignoring them")
            return None
        return Credential(
            access_token=record.access_token,
            expires_at=record.expires_at * 1000,
            refresh_token=record.refresh_token,
        )

    async def load_refresh_token(self) -> str | None:
        record = await self.store.get(self.provider)
        return record.refresh_token if record else None

    async def save(self, credential: Credential):
        await self.store.save(
            credential.access_token, credential.refresh_token,
            credential.expires_at, provider=self.provider)

    async def clear(self):
        await self.store.clear(self.provider)


class LocalTier:
    """Adapts a synchronous key-value store to the tier contract."""

    name = "local"

    def __init__(self, storage, clock=now_ms):
        self.storage = storage
        self._clock = clock

    async def load(self) -> Credential | None:
        token = self.storage.get(ACCESS_TOKEN_KEY)
        expiry = self.storage.get(EXPIRY_KEY)
        if not token or not expiry:
            return None
        try:
            expires_at = int(expiry)
        except ValueError:
            log.warning("Local token expiry is not a number: %r", expiry)
            return None
        return Credential(
            access_token=token,
            expires_at=expires_at,
            refresh_token=self.storage.get(REFRESH_TOKEN_KEY) or None,
        )

    async def load_refresh_token(self) -> str | None:
        return self.storage.get(REFRESH_TOKEN_KEY) or None

    async def save(self, credential: Credential):
        self.storage.set(ACCESS_TOKEN_KEY, credential.access_token)
        self.storage.set(EXPIRY_KEY, str(credential.expires_at))
        if credential.refresh_token:
            self.storage.set(REFRESH_TOKEN_KEY, credential.refresh_token)
        self.storage.set(LAST_CONNECTED_KEY, str(self._clock()))

    async def clear(self):
        for key in (ACCESS_TOKEN_KEY, EXPIRY_KEY, REFRESH_TOKEN_KEY, LAST_CONNECTED_KEY):
            self.storage.remove(key)


class TokenTiers:
    """Ordered storage tiers, tried in sequence."""

    def __init__(self, tiers):
        self.tiers = list(tiers)

    async def load(self) -> Credential | None:
        """Return the first credential found, mirroring it into later tiers."""
        for i, tier in enumerate(self.tiers):
            try:
                credential = await tier.load()
            except STORAGE_ERRORS as e:
                log.warning("Token load from %s store failed: %s", tier.name, e)
                continue
            if credential is None:
                log.info("No tokens in %s store", tier.name)
                continue
            log.info("Tokens loaded from %s store", tier.name)
            for later in self.tiers[i + 1:]:
                await self._save_to(later, credential)
            return credential
        return None

    async def load_refresh_token(self) -> str | None:
        for tier in self.tiers:
            try:
                token = await tier.load_refresh_token()
            except STORAGE_ERRORS as e:
                log.warning("Refresh token load from %s store failed: %s", tier.name, e)
                continue
            if token:
                return token
        return None

    async def save(self, credential: Credential) -> list[str]:
        """Write to every tier.  Returns the names of the tiers that succeeded."""
        written = []
        for tier in self.tiers:
            if await self._save_to(tier, credential):
                written.append(tier.name)
        return written

    async def clear(self):
        for tier in self.tiers:
            try:
                await tier.clear()
            except STORAGE_ERRORS as e:
                log.warning("Could not clear %s store: %s", tier.name, e)

    @staticmethod
    async def _save_to(tier, credential) -> bool:
        try:
            await tier.save(credential)
            return True
        except STORAGE_ERRORS as e:
            log.warning("Token save to %s store failed: %s", tier.name, e)
            return False
