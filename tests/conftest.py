"""Shared fakes and fixtures for the Spotify credential tests."""

import asyncio
import sys
from pathlib import Path

import pytest

ROOT = str(Path(__file__).resolve().parents[1])
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from jukebox.sources.spotify.auth import SpotifyAuth  # noqa: E402
from jukebox.sources.spotify.sdk import BridgeSDK  # noqa: E402
from jukebox.sources.spotify.storage import (  # noqa: E402
    DurableTier,
    LocalTier,
    MemoryLocalStorage,
    TokenTiers,
)
from jukebox.sources.spotify.tokens import StoredTokens, TokenStoreError  # noqa: E402

NOW = 1_700_000_000_000
CLIENT_ID = "client-123"


class FakeClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms


class FakeDurableStore:
    def __init__(self):
        self.records: dict[str, StoredTokens] = {}
        self.fail_get = False
        self.fail_save = False
        self.saves = []
        self.clears = 0

    async def get(self, provider="spotify"):
        if self.fail_get:
            raise TokenStoreError("data server down")
        return self.records.get(provider)

    async def save(self, access_token, refresh_token, expires_at_ms, provider="spotify"):
        if self.fail_save:
            raise TokenStoreError("data server down")
        self.saves.append((access_token, refresh_token, expires_at_ms))
        self.records[provider] = StoredTokens(access_token, refresh_token, expires_at_ms // 1000)

    async def clear(self, provider="spotify"):
        self.clears += 1
        self.records.pop(provider, None)


class FakeOAuthClient:
    def __init__(self):
        self.refresh_calls = []
        self.probe_calls = []
        self.refresh_result = {"access_token": "fresh-access", "expires_in": 3600}
        self.refresh_error = None
        self.probe_status = 200
        self.gate: asyncio.Event | None = None

    async def refresh_access_token(self, client_id, refresh_token):
        self.refresh_calls.append((client_id, refresh_token))
        if self.gate is not None:
            await self.gate.wait()
        if self.refresh_error is not None:
            raise self.refresh_error
        return dict(self.refresh_result)

    async def probe(self, access_token):
        self.probe_calls.append(access_token)
        return self.probe_status


class FakeSettings:
    def __init__(self, values=None):
        self.values = dict(values or {})

    async def get_setting(self, category, key, default=None):
        return self.values.get((category, key), default)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def durable():
    return FakeDurableStore()


@pytest.fixture
def local():
    return MemoryLocalStorage()


@pytest.fixture
def oauth():
    return FakeOAuthClient()


@pytest.fixture
def settings():
    return FakeSettings({("spotify", "clientId"): CLIENT_ID})


@pytest.fixture
def tiers(durable, local, clock):
    return TokenTiers([DurableTier(durable), LocalTier(local, clock)])


@pytest.fixture
def auth(tiers, oauth, settings, clock):
    return SpotifyAuth(tiers, oauth, settings, clock=clock)


@pytest.fixture
def sdk():
    return BridgeSDK()
