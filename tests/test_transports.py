"""Tests for realtime transports."""

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest
import respx

from mobile.transports import (
    FallbackTransport,
    PollingTransport,
    Transport,
    TransportError,
    WebSocketTransport,
    build_transport,
    derive_realtime_url,
    to_websocket_url,
)

SERVER = "https://api.test"


@pytest.mark.parametrize(
    "api_base_url,expected",
    [
        ("https://api.test/api", "https://api.test"),
        ("https://api.test/api/", "https://api.test"),
        ("http://localhost:3000/api", "http://localhost:3000"),
        ("https://api.test/v2", "https://api.test/v2"),
        ("https://api.test/apis", "https://api.test/apis"),
    ],
)
def test_derive_realtime_url(api_base_url, expected):
    assert derive_realtime_url(api_base_url) == expected


def test_to_websocket_url():
    assert to_websocket_url("https://api.test", "/realtime/ws") == "wss://api.test/realtime/ws"
    assert to_websocket_url("http://localhost:3000/", "/realtime/ws") == "ws://localhost:3000/realtime/ws"


class TestPollingTransport:
    @pytest.mark.asyncio
    async def test_open_receive_and_close(self):
        with respx.mock(base_url=SERVER) as router:
            open_route = router.post("/realtime/poll").mock(
                return_value=httpx.Response(200, json={"sid": "abc"})
            )
            router.get("/realtime/poll/abc").mock(
                side_effect=[
                    httpx.Response(200, json={"events": [{"type": "typing", "data": {"isTyping": True}}]}),
                    httpx.Response(200, json={"events": []}),
                    httpx.Response(404, json={"detail": "Unknown session"}),
                ]
            )
            close_route = router.delete("/realtime/poll/abc").mock(
                return_value=httpx.Response(200, json={"ok": True})
            )

            channel = await PollingTransport(poll_timeout=1).open(SERVER, "token-1")
            events = [event async for event in channel.receive()]
            await channel.close()
            await channel.close()

        assert json.loads(open_route.calls[0].request.content) == {"token": "token-1"}
        assert channel.connection_id == "abc"
        assert events == [("typing", {"isTyping": True})]
        assert close_route.call_count == 1

    @pytest.mark.asyncio
    async def test_send_posts_event(self):
        with respx.mock(base_url=SERVER) as router:
            router.post("/realtime/poll").mock(return_value=httpx.Response(200, json={"sid": "abc"}))
            send_route = router.post("/realtime/poll/abc").mock(
                return_value=httpx.Response(200, json={"ok": True})
            )
            router.delete("/realtime/poll/abc").mock(return_value=httpx.Response(200))

            channel = await PollingTransport().open(SERVER, "token-1")
            await channel.send("typing:start", {"matchId": 1, "recipientId": 2})
            await channel.close()

        body = json.loads(send_route.calls[0].request.content)
        assert body == {"type": "typing:start", "data": {"matchId": 1, "recipientId": 2}}

    @pytest.mark.asyncio
    async def test_rejected_open_raises(self):
        with respx.mock(base_url=SERVER) as router:
            router.post("/realtime/poll").mock(
                return_value=httpx.Response(401, json={"error": "Invalid or expired token"})
            )
            with pytest.raises(TransportError):
                await PollingTransport().open(SERVER, "bad")

    @pytest.mark.asyncio
    async def test_lost_poll_raises(self):
        with respx.mock(base_url=SERVER) as router:
            router.post("/realtime/poll").mock(return_value=httpx.Response(200, json={"sid": "abc"}))
            router.get("/realtime/poll/abc").mock(side_effect=httpx.ReadError("reset"))
            router.delete("/realtime/poll/abc").mock(return_value=httpx.Response(200))

            channel = await PollingTransport().open(SERVER, "token-1")
            with pytest.raises(TransportError):
                async for _ in channel.receive():
                    pass
            await channel.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("events", [None, {"type": "typing"}, "typing"])
    async def test_malformed_event_batch_raises(self, events):
        with respx.mock(base_url=SERVER) as router:
            router.post("/realtime/poll").mock(return_value=httpx.Response(200, json={"sid": "abc"}))
            router.get("/realtime/poll/abc").mock(return_value=httpx.Response(200, json={"events": events}))
            router.delete("/realtime/poll/abc").mock(return_value=httpx.Response(200))

            channel = await PollingTransport().open(SERVER, "token-1")
            with pytest.raises(TransportError):
                async for _ in channel.receive():
                    pass
            await channel.close()


class TestWebSocketTransport:
    def make_socket(self, reply):
        websocket = AsyncMock()
        websocket.recv.return_value = json.dumps(reply)
        return websocket

    @pytest.mark.asyncio
    async def test_token_sent_in_first_frame(self):
        websocket = self.make_socket({"type": "connected", "connection_id": "c1"})
        with patch("mobile.transports.websockets.connect", AsyncMock(return_value=websocket)) as connect:
            channel = await WebSocketTransport().open(SERVER, "token-1")

        assert connect.call_args.args[0] == "wss://api.test/realtime/ws"
        websocket.send.assert_awaited_once_with(json.dumps({"type": "auth", "token": "token-1"}))
        assert channel.connection_id == "c1"

    @pytest.mark.asyncio
    async def test_rejected_handshake_closes_socket(self):
        websocket = self.make_socket({"type": "error", "message": "Invalid or expired token"})
        with patch("mobile.transports.websockets.connect", AsyncMock(return_value=websocket)):
            with pytest.raises(TransportError, match="Invalid or expired token"):
                await WebSocketTransport().open(SERVER, "bad")

        websocket.close.assert_awaited()

    @pytest.mark.asyncio
    async def test_connect_failure_raises_transport_error(self):
        with patch("mobile.transports.websockets.connect", AsyncMock(side_effect=OSError("refused"))):
            with pytest.raises(TransportError):
                await WebSocketTransport().open(SERVER, "token-1")


class FailingTransport(Transport):
    name = "failing"

    def __init__(self):
        self.calls = 0

    async def open(self, server_url, token):
        self.calls += 1
        raise TransportError("unavailable")


class StaticTransport(Transport):
    name = "static"

    def __init__(self, channel):
        self.channel = channel

    async def open(self, server_url, token):
        return self.channel


class TestFallbackTransport:
    @pytest.mark.asyncio
    async def test_falls_back_in_order(self):
        failing = FailingTransport()
        channel = object()

        result = await FallbackTransport([failing, StaticTransport(channel)]).open(SERVER, "t")

        assert result is channel
        assert failing.calls == 1

    @pytest.mark.asyncio
    async def test_all_failing_raises(self):
        with pytest.raises(TransportError, match="All realtime transports failed"):
            await FallbackTransport([FailingTransport(), FailingTransport()]).open(SERVER, "t")

    def test_requires_a_transport(self):
        with pytest.raises(ValueError):
            FallbackTransport([])


def test_build_transport_respects_order():
    transport = build_transport(["polling", "websocket"], poll_timeout=5)

    assert [t.name for t in transport.transports] == ["polling", "websocket"]
    assert transport.transports[0].poll_timeout == 5
