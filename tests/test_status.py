import asyncio

import pytest

from jukebox.lib.periodic import PeriodicTask
from jukebox.sources.spotify.device import ConnectionStatus, DeviceSession
from jukebox.sources.spotify.status import StatusPublisher, format_remaining, status_view


def test_format_remaining():
    assert format_remaining(3_900_000) == "Token: 1h 5min"
    assert format_remaining(7_200_000) == "Token: 2h 0min"
    assert format_remaining(720_000) == "Token: 12min"
    assert format_remaining(40_500) == "Token: 40s"
    assert format_remaining(0) == "Token expired"
    assert format_remaining(-5_000) == "Token expired"


def test_status_view_texts():
    ready = status_view(ConnectionStatus.READY, 720_000, "dev-1")
    assert ready == {
        "status": "ready",
        "text": "Token: 12min",
        "icon": "connected",
        "device_id": "dev-1",
        "remaining_ms": 720_000,
    }

    pending = status_view(ConnectionStatus.TOKEN_PENDING, 720_000)
    assert pending["text"] == "Token OK, Device pending"
    assert pending["icon"] == "disconnected"
    assert status_view(ConnectionStatus.DEVICE_CONNECTING)["text"] == "Token OK, Device pending"

    gone = status_view(ConnectionStatus.DISCONNECTED)
    assert gone["text"] == "Disconnected"
    assert gone["device_id"] is None


class RecordingAuth:
    has_token = True

    def __init__(self, calls):
        self.calls = calls

    def remaining_ms(self):
        return 600_000

    async def maybe_refresh(self):
        self.calls.append("refresh")


@pytest.mark.asyncio
async def test_tick_publishes_before_refreshing():
    calls = []
    device = DeviceSession(lambda: True, lambda: "tok")
    publisher = StatusPublisher(RecordingAuth(calls), device,
                                publish=lambda view: calls.append(("publish", view["status"])))

    await publisher.tick()

    assert calls == [("publish", "token_pending"), "refresh"]


@pytest.mark.asyncio
async def test_tick_refreshes_a_token_inside_the_buffer(auth, oauth, clock, local):
    await auth.persist("old-access", 3600, "refresh-1")
    device = DeviceSession(auth.is_valid, auth.get_access_token)
    views = []

    async def publish(view):
        views.append(view)

    publisher = StatusPublisher(auth, device, publish=publish)
    clock.advance(3_600_000 - 120_000)
    await publisher.tick()

    assert views[0]["status"] == "token_pending"
    assert oauth.refresh_calls == [("client-123", "refresh-1")]
    assert auth.get_access_token() == "fresh-access"
    assert auth.credential.expires_at == clock() + 3_600_000


@pytest.mark.asyncio
async def test_publish_status_without_token(auth):
    publisher = StatusPublisher(auth, DeviceSession(auth.is_valid, auth.get_access_token))
    view = await publisher.publish_status()
    assert view["status"] == "disconnected"
    assert view["remaining_ms"] is None
    assert publisher.last_view is view


@pytest.mark.asyncio
async def test_ready_device_shows_countdown(auth, sdk, clock):
    await auth.persist("tok", 3600)
    device = DeviceSession(auth.is_valid, auth.get_access_token, sdk)
    await device.ensure_player()
    await sdk.players[0].emit("ready", {"device_id": "dev-1"})
    clock.advance(5 * 60_000)

    view = await StatusPublisher(auth, device).publish_status()

    assert view["status"] == "ready"
    assert view["text"] == "Token: 55min"
    assert view["device_id"] == "dev-1"


@pytest.mark.asyncio
async def test_start_replaces_the_running_loop(auth):
    publisher = StatusPublisher(auth, DeviceSession(auth.is_valid, auth.get_access_token))
    assert not publisher.running

    publisher.start()
    first = publisher._task._task
    publisher.start()
    second = publisher._task._task
    await asyncio.sleep(0.01)

    assert first is not second
    assert first.done()
    assert publisher.running

    publisher.stop()
    assert not publisher.running


@pytest.mark.asyncio
async def test_periodic_task_keeps_going_after_a_failed_tick():
    calls = []

    async def callback():
        calls.append(len(calls))
        if len(calls) == 1:
            raise RuntimeError("boom")

    task = PeriodicTask("test", callback, interval=0.01)
    task.start()
    for _ in range(100):
        if len(calls) >= 3:
            break
        await asyncio.sleep(0.01)
    task.stop()

    assert len(calls) >= 3
    assert not task.running


@pytest.mark.asyncio
async def test_periodic_task_immediate_tick():
    fired = asyncio.Event()

    async def callback():
        fired.set()

    task = PeriodicTask("test", callback, interval=60)
    task.start(immediate=True)
    await asyncio.wait_for(fired.wait(), timeout=1)
    task.stop()


@pytest.mark.asyncio
async def test_stop_leaves_an_in_flight_tick_running():
    gate = asyncio.Event()
    finished = []

    async def callback():
        await gate.wait()
        finished.append(True)

    task = PeriodicTask("test", callback, interval=60)
    task.start(immediate=True)
    await asyncio.sleep(0.01)
    task.stop()
    gate.set()
    await asyncio.sleep(0.01)

    assert finished == [True]



def test_status_view_reflects_expiry():
    expiring = status_view(ConnectionStatus.TOKEN_PENDING, 120_000)
    assert expiring["text"] == "Token expiring, Device pending"

    expired = status_view(ConnectionStatus.DISCONNECTED, -1_000)
    assert expired["text"] == "Token expired"
    assert expired["icon"] == "disconnected"


@pytest.mark.asyncio
async def test_credential_expiring_without_a_device(auth, clock):
    await auth.persist("tok", 3600)
    publisher = StatusPublisher(auth, DeviceSession(auth.is_valid, auth.get_access_token))

    clock.advance(3_600_000 - 60_000)
    view = await publisher.publish_status()
    assert view["status"] == "token_pending"
    assert view["text"] == "Token expiring, Device pending"

    clock.advance(120_000)
    view = await publisher.publish_status()
    assert view["status"] == "disconnected"
    assert view["text"] == "Token expired"


@pytest.mark.asyncio
async def test_ready_device_loses_connected_icon_once_token_expires(auth, sdk, clock):
    await auth.persist("tok", 3600)
    device = DeviceSession(auth.is_valid, auth.get_access_token, sdk)
    await device.ensure_player()
    await sdk.players[0].emit("ready", {"device_id": "dev-1"})
    publisher = StatusPublisher(auth, device)

    clock.advance(3_600_000 - 60_000)
    view = await publisher.publish_status()
    assert view["icon"] == "connected"
    assert view["text"] == "Token: 1min"

    clock.advance(60_000)
    view = await publisher.publish_status()
    assert view["status"] == "disconnected"
    assert view["icon"] == "disconnected"
    assert view["text"] == "Token expired"
    assert device.status is ConnectionStatus.DISCONNECTED
