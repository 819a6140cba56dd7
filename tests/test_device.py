import pytest

from jukebox.sources.spotify.device import (
    ConnectionStatus,
    DeviceSession,
    EventType,
    SDKEvent,
    derive_status,
)
from jukebox.sources.spotify.sdk import BridgeSDK


class TokenView:
    def __init__(self, token="tok", valid=True):
        self.token = token
        self.valid = valid

    def is_valid(self):
        return self.valid

    def get_token(self):
        return self.token


def make_session(sdk=None, valid=True):
    view = TokenView(valid=valid)
    return DeviceSession(view.is_valid, view.get_token, sdk), view


@pytest.mark.asyncio
async def test_creation_waits_for_sdk_and_token(sdk):
    session, _ = make_session(sdk=None)
    assert await session.ensure_player() is False
    assert session.player is None

    session, view = make_session(sdk=sdk, valid=False)
    assert await session.ensure_player() is False
    assert sdk.players == []

    view.valid = True
    assert await session.ensure_player() is True
    assert len(sdk.players) == 1
    assert session.status is ConnectionStatus.DEVICE_CONNECTING


@pytest.mark.asyncio
async def test_player_gets_a_live_token_getter(sdk):
    session, view = make_session(sdk=sdk)
    await session.ensure_player()
    player = sdk.players[0]

    assert player.name == "Jukebox Browser Player"
    assert player.volume == 0.7
    assert player.connected
    view.token = "rotated"
    assert player.get_oauth_token() == "rotated"


@pytest.mark.asyncio
async def test_second_creation_while_ready_is_a_no_op(sdk):
    session, _ = make_session(sdk=sdk)
    await session.ensure_player()
    await sdk.players[0].emit("ready", {"device_id": "dev-1"})

    assert await session.ensure_player() is True
    assert len(sdk.players) == 1
    assert session.device_id == "dev-1"
    assert session.status is ConnectionStatus.READY


@pytest.mark.asyncio
async def test_ready_event_notifies_listeners(sdk):
    session, _ = make_session(sdk=sdk)
    seen = []
    session.on_ready(seen.append)

    async def async_listener(device_id):
        seen.append(("async", device_id))

    session.on_ready(async_listener)
    await session.ensure_player()
    await sdk.players[0].emit("ready", {"device_id": "dev-1"})

    assert seen == ["dev-1", ("async", "dev-1")]


@pytest.mark.asyncio
async def test_not_ready_and_errors_leave_the_session_alone(sdk):
    session, _ = make_session(sdk=sdk)
    await session.ensure_player()
    player = sdk.players[0]
    await player.emit("ready", {"device_id": "dev-1"})

    await player.emit("not_ready", {"device_id": "dev-1"})
    await player.emit("authentication_error", {"message": "Invalid token scopes."})
    await player.emit("account_error", {"message": "Premium required"})
    await player.emit("initialization_error", {"message": "EME unsupported"})

    assert session.player is player
    assert session.device_id == "dev-1"
    assert session.status is ConnectionStatus.READY


@pytest.mark.asyncio
async def test_player_state_changes_mirror_paused_flag(sdk):
    session, _ = make_session(sdk=sdk)
    await session.ensure_player()
    player = sdk.players[0]

    await player.emit("player_state_changed", {"paused": False, "position": 1000})
    assert session.playing is True
    await player.emit("player_state_changed", {"paused": True})
    assert session.playing is False
    await player.emit("player_state_changed", None)
    assert session.playing is False


@pytest.mark.asyncio
async def test_teardown_forgets_device(sdk):
    session, _ = make_session(sdk=sdk)
    await session.ensure_player()
    player = sdk.players[0]
    await player.emit("ready", {"device_id": "dev-1"})
    await player.emit("player_state_changed", {"paused": False})

    await session.teardown()

    assert session.player is None
    assert session.device_id is None
    assert session.playing is None
    assert session.status is ConnectionStatus.DISCONNECTED
    assert not player.connected

    # Late events from the discarded player change nothing
    await player.emit("ready", {"device_id": "dev-1"})
    assert session.device_id is None


@pytest.mark.asyncio
async def test_dispatch_accepts_tagged_events():
    session, _ = make_session()
    await session.dispatch(SDKEvent(EventType.READY, device_id="dev-9"))
    assert session.device_id == "dev-9"
    await session.dispatch(SDKEvent(EventType.PLAYER_STATE_CHANGED, state={"paused": False}))
    assert session.playing is True


def test_event_from_payload():
    assert SDKEvent.from_payload("ready", {"device_id": "d"}) == SDKEvent(EventType.READY, device_id="d")
    assert SDKEvent.from_payload("account_error", {"message": "m"}).message == "m"
    assert SDKEvent.from_payload("player_state_changed", {"paused": True}).state == {"paused": True}
    with pytest.raises(ValueError):
        SDKEvent.from_payload("autoplay_failed")


@pytest.mark.asyncio
async def test_volume_is_clamped_to_whole_percent():
    commands = []
    sdk = BridgeSDK(lambda command, data: commands.append((command, data)))
    session, _ = make_session(sdk=sdk)

    assert await session.set_volume(0.5) is False
    await session.ensure_player()
    await sdk.players[0].emit("ready", {"device_id": "dev-1"})

    assert await session.set_volume(1.7) is True
    assert await session.set_volume(0.333) is True
    assert await session.set_volume(-2) is True
    volumes = [data["volume"] for command, data in commands if command == "volume"]
    assert volumes == [1.0, 0.33, 0.0]


@pytest.mark.asyncio
async def test_progress_only_while_playing(sdk):
    session, _ = make_session(sdk=sdk)
    assert await session.current_progress() is None

    await session.ensure_player()
    player = sdk.players[0]
    await player.emit("ready", {"device_id": "dev-1"})
    await player.emit("player_state_changed", {"paused": True, "position": 1000, "duration": 2000})
    assert await session.current_progress() is None

    await player.emit("player_state_changed", {"paused": False, "position": 61500, "duration": 180000})
    assert await session.current_progress() == (61.5, 180.0)


def test_derive_status():
    assert derive_status(False, "dev", True) is ConnectionStatus.DISCONNECTED
    assert derive_status(True, None, False) is ConnectionStatus.TOKEN_PENDING
    assert derive_status(True, None, True) is ConnectionStatus.DEVICE_CONNECTING
    assert derive_status(True, "dev", True) is ConnectionStatus.READY
    assert derive_status(True, "dev", True, expired=True) is ConnectionStatus.DISCONNECTED
    assert derive_status(True, None, True, expired=True) is ConnectionStatus.DISCONNECTED
