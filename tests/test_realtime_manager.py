"""Tests for the realtime connection manager."""

import asyncio
from unittest.mock import patch

import pytest

from mobile.config import ClientSettings
from mobile.realtime import ConnectionStatus, RealtimeConnectionManager
from mobile.transports import Channel, FallbackTransport, Transport, TransportError

API = "https://api.test/api"


class FakeChannel(Channel):
    """In-memory channel driven by the test."""

    def __init__(self, connection_id="conn"):
        self.connection_id = connection_id
        self.incoming = asyncio.Queue()
        self.sent = []
        self.closed = False

    async def send(self, event, data=None):
        self.sent.append((event, data))

    async def receive(self):
        while True:
            item = await self.incoming.get()
            if item is None:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    async def close(self):
        self.closed = True

    def drop(self):
        self.incoming.put_nowait(TransportError("connection reset"))


class ScriptedTransport(Transport):
    """Returns or raises the scripted outcomes in order, then keeps failing."""

    name = "scripted"

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.opened = []

    async def open(self, server_url, token):
        self.opened.append((server_url, token))
        outcome = self.outcomes.pop(0) if self.outcomes else TransportError("unreachable")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
        await asyncio.sleep(0)


class BlockingSleep:
    """Never returns; stands in for a long reconnect delay."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
        await asyncio.Event().wait()


async def wait_until(predicate, iterations=200):
    for _ in range(iterations):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


def record_statuses(manager):
    statuses = []
    manager.subscribe(statuses.append)
    return statuses


@pytest.mark.asyncio
async def test_fails_once_then_connects():
    """disconnected -> connecting -> connecting -> connected, one 1s wait."""
    channel = FakeChannel()
    transport = ScriptedTransport(TransportError("refused"), channel)
    sleep = RecordingSleep()
    manager = RealtimeConnectionManager(API, transport, sleep=sleep)
    statuses = record_statuses(manager)

    assert manager.status is ConnectionStatus.DISCONNECTED
    manager.connect("token-1")
    await wait_until(lambda: manager.is_connected)

    assert statuses == [
        ConnectionStatus.CONNECTING,
        ConnectionStatus.CONNECTING,
        ConnectionStatus.CONNECTED,
    ]
    assert sleep.delays == [1.0]
    assert transport.opened == [("https://api.test", "token-1")] * 2

    await manager.aclose()
    assert channel.closed is True
    assert statuses[-1] is ConnectionStatus.DISCONNECTED


@pytest.mark.asyncio
async def test_reconnects_after_drop():
    first, second = FakeChannel("a"), FakeChannel("b")
    transport = ScriptedTransport(first, second)
    sleep = RecordingSleep()
    manager = RealtimeConnectionManager(API, transport, sleep=sleep)
    statuses = record_statuses(manager)

    manager.connect("token-1")
    await wait_until(lambda: manager.is_connected)
    first.drop()
    await wait_until(lambda: len(transport.opened) == 2 and manager.is_connected)

    assert statuses == [
        ConnectionStatus.CONNECTING,
        ConnectionStatus.CONNECTED,
        ConnectionStatus.CONNECTING,
        ConnectionStatus.CONNECTED,
    ]
    assert first.closed is True
    assert sleep.delays == [1.0]

    await manager.aclose()


@pytest.mark.asyncio
async def test_delays_grow_to_cap():
    transport = ScriptedTransport()
    sleep = RecordingSleep()
    manager = RealtimeConnectionManager(API, transport, sleep=sleep)

    manager.connect("token-1")
    await wait_until(lambda: len(sleep.delays) >= 5)
    await manager.aclose()

    assert sleep.delays[:5] == [1.0, 2.0, 4.0, 5.0, 5.0]


@pytest.mark.asyncio
async def test_disconnect_cancels_pending_retry():
    transport = ScriptedTransport(TransportError("refused"))
    sleep = BlockingSleep()
    manager = RealtimeConnectionManager(API, transport, sleep=sleep)
    statuses = record_statuses(manager)

    manager.connect("token-1")
    await wait_until(lambda: manager.retry_pending)

    manager.disconnect()

    assert manager.status is ConnectionStatus.DISCONNECTED
    assert manager.retry_pending is False
    for _ in range(10):
        await asyncio.sleep(0)
    assert len(transport.opened) == 1
    assert statuses[-1] is ConnectionStatus.DISCONNECTED
    assert statuses.count(ConnectionStatus.DISCONNECTED) == 1

    await manager.aclose()


@pytest.mark.asyncio
async def test_token_change_tears_down_previous_channel():
    old_channel, new_channel = FakeChannel("old"), FakeChannel("new")
    transport = ScriptedTransport(old_channel, new_channel)
    manager = RealtimeConnectionManager(API, transport, sleep=RecordingSleep())
    received = []
    manager.on("typing", received.append)

    manager.connect("token-a")
    await wait_until(lambda: manager.is_connected)
    manager.connect("token-b")
    await wait_until(lambda: manager.is_connected and old_channel.closed)

    # Late event on the torn-down channel never reaches a handler
    old_channel.incoming.put_nowait(("typing", {"matchId": 1}))
    new_channel.incoming.put_nowait(("typing", {"matchId": 2}))
    await wait_until(lambda: received)

    assert [token for _, token in transport.opened] == ["token-a", "token-b"]
    assert received == [{"matchId": 2}]
    assert manager.session_token == "token-b"

    await manager.aclose()


@pytest.mark.asyncio
async def test_same_token_is_noop():
    transport = ScriptedTransport(FakeChannel())
    manager = RealtimeConnectionManager(API, transport, sleep=RecordingSleep())

    manager.connect("token-1")
    await wait_until(lambda: manager.is_connected)
    manager.connect("token-1")
    await asyncio.sleep(0)

    assert len(transport.opened) == 1
    assert manager.is_connected

    await manager.aclose()


@pytest.mark.asyncio
async def test_max_attempts_gives_up():
    transport = ScriptedTransport()
    sleep = RecordingSleep()
    manager = RealtimeConnectionManager(API, transport, max_attempts=2, sleep=sleep)
    statuses = record_statuses(manager)

    manager.connect("token-1")
    await wait_until(lambda: statuses and statuses[-1] is ConnectionStatus.DISCONNECTED)

    assert len(transport.opened) == 2
    assert sleep.delays == [1.0]


@pytest.mark.asyncio
async def test_emit_and_dispatch():
    channel = FakeChannel()
    manager = RealtimeConnectionManager(API, ScriptedTransport(channel), sleep=RecordingSleep())
    seen = []
    remove = manager.on("typing", seen.append)

    assert await manager.emit("typing:start", {"matchId": 1}) is False

    manager.connect("token-1")
    await wait_until(lambda: manager.is_connected)
    assert await manager.emit("typing:start", {"matchId": 1, "recipientId": 2}) is True
    assert channel.sent == [("typing:start", {"matchId": 1, "recipientId": 2})]

    channel.incoming.put_nowait(("typing", {"isTyping": True}))
    await wait_until(lambda: seen)
    remove()
    channel.incoming.put_nowait(("typing", {"isTyping": False}))
    for _ in range(5):
        await asyncio.sleep(0)

    assert seen == [{"isTyping": True}]
    await manager.aclose()


@pytest.mark.asyncio
async def test_listener_errors_do_not_break_connection():
    manager = RealtimeConnectionManager(API, ScriptedTransport(FakeChannel()), sleep=RecordingSleep())

    def broken(status):
        raise RuntimeError("listener bug")

    manager.subscribe(broken)
    manager.connect("token-1")
    await wait_until(lambda: manager.is_connected)

    await manager.aclose()


def test_server_url_strips_api_suffix():
    manager = RealtimeConnectionManager("https://api.test/api/", ScriptedTransport())
    assert manager.server_url == "https://api.test"


def test_from_settings_builds_fallback_chain():
    config = ClientSettings(api_base_url=API, reconnect_max_delay=3.0, reconnect_max_attempts=4)

    manager = RealtimeConnectionManager.from_settings(config)

    assert isinstance(manager._transport, FallbackTransport)
    assert [t.name for t in manager._transport.transports] == ["websocket", "polling"]
    assert manager.max_attempts == 4
    assert manager.backoff.next_delay(5) == 3.0


class BrokenChannel(FakeChannel):
    """Channel whose receive loop fails with a non-transport error."""

    async def receive(self):
        raise TypeError("'NoneType' object is not iterable")
        yield  # pragma: no cover


@pytest.mark.asyncio
async def test_unexpected_channel_error_schedules_reconnect():
    broken, healthy = BrokenChannel("a"), FakeChannel("b")
    transport = ScriptedTransport(broken, healthy)
    sleep = RecordingSleep()
    manager = RealtimeConnectionManager(API, transport, sleep=sleep)

    manager.connect("token-1")
    await wait_until(lambda: len(transport.opened) == 2 and manager.is_connected)

    assert broken.closed is True
    assert sleep.delays == [1.0]
    await manager.aclose()


@pytest.mark.asyncio
async def test_unexpected_open_error_counts_as_failed_attempt():
    channel = FakeChannel()
    transport = ScriptedTransport(RuntimeError("bad url"), channel)
    sleep = RecordingSleep()
    manager = RealtimeConnectionManager(API, transport, sleep=sleep)

    manager.connect("token-1")
    await wait_until(lambda: manager.is_connected)

    assert len(transport.opened) == 2
    assert sleep.delays == [1.0]
    await manager.aclose()


@pytest.mark.asyncio
async def test_drop_does_not_count_towards_max_attempts():
    first, second = FakeChannel("a"), FakeChannel("b")
    transport = ScriptedTransport(first, second)
    sleep = RecordingSleep()
    manager = RealtimeConnectionManager(API, transport, max_attempts=1, sleep=sleep)

    manager.connect("token-1")
    await wait_until(lambda: manager.is_connected)
    first.drop()
    await wait_until(lambda: len(transport.opened) == 2 and manager.is_connected)

    assert sleep.delays == [1.0]
    await manager.aclose()


@pytest.mark.asyncio
async def test_delays_keep_growing_after_drop():
    channel = FakeChannel()
    transport = ScriptedTransport(channel)
    sleep = RecordingSleep()
    manager = RealtimeConnectionManager(API, transport, sleep=sleep)

    manager.connect("token-1")
    await wait_until(lambda: manager.is_connected)
    channel.drop()
    await wait_until(lambda: len(sleep.delays) >= 3)

    assert sleep.delays[:3] == [1.0, 2.0, 4.0]
    await manager.aclose()


@pytest.mark.asyncio
async def test_async_handler_cancelled_on_disconnect():
    channel = FakeChannel()
    manager = RealtimeConnectionManager(API, ScriptedTransport(channel), sleep=RecordingSleep())
    release = asyncio.Event()
    started = []
    acted = []

    async def on_match(data):
        started.append(data)
        await release.wait()
        acted.append(data)

    manager.on("match", on_match)
    manager.connect("token-1")
    await wait_until(lambda: manager.is_connected)
    channel.incoming.put_nowait(("match", {"id": 7}))
    await wait_until(lambda: started)

    await manager.aclose()
    release.set()
    for _ in range(5):
        await asyncio.sleep(0)

    assert acted == []


@pytest.mark.asyncio
async def test_async_handler_failure_is_logged():
    channel = FakeChannel()
    manager = RealtimeConnectionManager(API, ScriptedTransport(channel), sleep=RecordingSleep())

    async def on_match(data):
        raise ValueError("handler bug")

    manager.on("match", on_match)
    manager.connect("token-1")
    await wait_until(lambda: manager.is_connected)
    with patch("mobile.realtime.logger") as mock_logger:
        channel.incoming.put_nowait(("match", {"id": 7}))
        await wait_until(lambda: mock_logger.error.called)

    message = mock_logger.error.call_args.args[0]
    assert "'match'" in message
    assert isinstance(mock_logger.error.call_args.kwargs["exc_info"], ValueError)

    assert manager.is_connected
    await manager.aclose()


class SlowCloseChannel(FakeChannel):
    async def close(self):
        for _ in range(3):
            await asyncio.sleep(0)
        self.closed = True


@pytest.mark.asyncio
async def test_aclose_waits_for_every_torn_down_channel():
    first = SlowCloseChannel("a")
    transport = ScriptedTransport(first, FakeChannel("b"))
    manager = RealtimeConnectionManager(API, transport, sleep=RecordingSleep())

    manager.connect("token-a")
    await wait_until(lambda: manager.is_connected)
    manager.connect("token-b")

    await manager.aclose()

    assert first.closed is True
    assert manager.status is ConnectionStatus.DISCONNECTED
