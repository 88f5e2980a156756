"""Realtime transports: WebSocket first, HTTP long-polling as fallback.

The session token travels in the connection handshake (the first
WebSocket frame, or the body of the polling open request), never as a
header. Every transport failure surfaces as ``TransportError`` so the
connection manager has a single error type to recover from.
"""

import asyncio
import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Optional, Sequence, Tuple

import httpx
import websockets
from websockets.exceptions import ConnectionClosedOK, WebSocketException

logger = logging.getLogger(__name__)

Event = Tuple[str, Any]


class TransportError(Exception):
    """A realtime channel could not be opened or was lost."""


def derive_realtime_url(api_base_url: str) -> str:
    """Strip a trailing ``/api`` segment from the REST base URL.

    >>> derive_realtime_url("https://api.example.com/api/")
    'https://api.example.com'
    """
    return re.sub(r"/api/?$", "", api_base_url.strip()).rstrip("/")


def to_websocket_url(server_url: str, path: str) -> str:
    if server_url.startswith("https://"):
        server_url = "wss://" + server_url[len("https://"):]
    elif server_url.startswith("http://"):
        server_url = "ws://" + server_url[len("http://"):]
    return server_url.rstrip("/") + path


class Channel(ABC):
    """One open bidirectional realtime channel."""

    connection_id: Optional[str] = None

    @abstractmethod
    async def send(self, event: str, data: Any = None) -> None:
        pass

    @abstractmethod
    def receive(self) -> AsyncIterator[Event]:
        """Yield ``(event, data)`` pairs until the channel ends.

        Returns normally when the server closes the channel cleanly and
        raises ``TransportError`` when it is lost.
        """

    @abstractmethod
    async def close(self) -> None:
        """Close the channel. Safe to call more than once."""


class Transport(ABC):
    name: str = "transport"

    @abstractmethod
    async def open(self, server_url: str, token: str) -> Channel:
        """Open and authenticate a channel or raise ``TransportError``."""


class WebSocketChannel(Channel):
    def __init__(self, websocket: Any, connection_id: Optional[str] = None):
        self._websocket = websocket
        self.connection_id = connection_id

    async def send(self, event: str, data: Any = None) -> None:
        try:
            await self._websocket.send(json.dumps({"type": event, "data": data}))
        except WebSocketException as e:
            raise TransportError(f"WebSocket send failed: {e}") from e

    async def receive(self) -> AsyncIterator[Event]:
        try:
            async for raw in self._websocket:
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    logger.debug("Ignoring non-JSON realtime frame")
                    continue
                if isinstance(message, dict) and message.get("type"):
                    yield message["type"], message.get("data")
        except ConnectionClosedOK:
            return
        except (WebSocketException, OSError) as e:
            raise TransportError(f"WebSocket connection lost: {e}") from e

    async def close(self) -> None:
        try:
            await self._websocket.close()
        except (WebSocketException, OSError) as e:
            logger.debug(f"Ignoring error while closing WebSocket: {e}")


class WebSocketTransport(Transport):
    """Primary transport using the ``websockets`` client."""

    name = "websocket"

    def __init__(self, path: str = "/realtime/ws", open_timeout: float = 10.0):
        self.path = path
        self.open_timeout = open_timeout

    async def open(self, server_url: str, token: str) -> Channel:
        url = to_websocket_url(server_url, self.path)
        try:
            websocket = await websockets.connect(url, open_timeout=self.open_timeout)
        except (WebSocketException, OSError, asyncio.TimeoutError) as e:
            raise TransportError(f"WebSocket connect to {url} failed: {e}") from e

        try:
            await websocket.send(json.dumps({"type": "auth", "token": token}))
            reply = json.loads(await asyncio.wait_for(websocket.recv(), timeout=self.open_timeout))
        except (WebSocketException, OSError, asyncio.TimeoutError, json.JSONDecodeError) as e:
            await WebSocketChannel(websocket).close()
            raise TransportError(f"WebSocket handshake failed: {e}") from e

        if not isinstance(reply, dict) or reply.get("type") != "connected":
            await WebSocketChannel(websocket).close()
            message = reply.get("message") if isinstance(reply, dict) else None
            raise TransportError(f"WebSocket handshake rejected: {message or 'unexpected reply'}")

        return WebSocketChannel(websocket, reply.get("connection_id"))


class PollingChannel(Channel):
    def __init__(
        self,
        client: httpx.AsyncClient,
        session_url: str,
        connection_id: str,
        poll_timeout: float,
        owns_client: bool = True,
    ):
        self._client = client
        self._session_url = session_url
        self.connection_id = connection_id
        self._poll_timeout = poll_timeout
        self._owns_client = owns_client
        self._closed = False

    async def send(self, event: str, data: Any = None) -> None:
        try:
            response = await self._client.post(self._session_url, json={"type": event, "data": data})
        except httpx.HTTPError as e:
            raise TransportError(f"Polling send failed: {e}") from e
        if not response.is_success:
            raise TransportError(f"Polling send failed: HTTP {response.status_code}")

    async def receive(self) -> AsyncIterator[Event]:
        while not self._closed:
            try:
                response = await self._client.get(
                    self._session_url,
                    params={"timeout": self._poll_timeout},
                    timeout=self._poll_timeout + 10.0,
                )
            except httpx.HTTPError as e:
                raise TransportError(f"Polling request failed: {e}") from e

            if response.status_code == 404:
                # Session closed by the server
                return
            if not response.is_success:
                raise TransportError(f"Polling request failed: HTTP {response.status_code}")

            try:
                messages = response.json().get("events", [])
            except (ValueError, AttributeError) as e:
                raise TransportError(f"Polling response was not an event batch: {e}") from e
            if not isinstance(messages, list):
                raise TransportError(f"Polling response events must be a list, got {type(messages).__name__}")

            for message in messages:
                if isinstance(message, dict) and message.get("type"):
                    yield message["type"], message.get("data")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._client.delete(self._session_url)
        except httpx.HTTPError as e:
            logger.debug(f"Ignoring error while closing polling session: {e}")
        finally:
            if self._owns_client:
                await self._client.aclose()


class PollingTransport(Transport):
    """Fallback transport using HTTP long-polling over ``httpx``."""

    name = "polling"

    def __init__(
        self,
        path: str = "/realtime/poll",
        poll_timeout: float = 25.0,
        request_timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.path = path
        self.poll_timeout = poll_timeout
        self.request_timeout = request_timeout
        self._http_client = http_client

    async def open(self, server_url: str, token: str) -> Channel:
        owns_client = self._http_client is None
        client = self._http_client or httpx.AsyncClient(timeout=self.request_timeout)
        open_url = server_url.rstrip("/") + self.path

        try:
            response = await client.post(open_url, json={"token": token})
        except httpx.HTTPError as e:
            if owns_client:
                await client.aclose()
            raise TransportError(f"Polling open at {open_url} failed: {e}") from e

        if not response.is_success:
            if owns_client:
                await client.aclose()
            raise TransportError(f"Polling open rejected: HTTP {response.status_code}")

        try:
            sid = str(response.json()["sid"])
        except (ValueError, KeyError, TypeError) as e:
            if owns_client:
                await client.aclose()
            raise TransportError(f"Polling open returned no session id: {e}") from e

        return PollingChannel(
            client,
            f"{open_url}/{sid}",
            sid,
            poll_timeout=self.poll_timeout,
            owns_client=owns_client,
        )


class FallbackTransport(Transport):
    """Try transports in preference order; the first to open wins."""

    name = "fallback"

    def __init__(self, transports: Sequence[Transport]):
        if not transports:
            raise ValueError("At least one transport is required")
        self.transports = list(transports)

    async def open(self, server_url: str, token: str) -> Channel:
        last_error: Optional[TransportError] = None
        for transport in self.transports:
            try:
                channel = await transport.open(server_url, token)
            except TransportError as e:
                logger.debug(f"Realtime transport {transport.name} failed: {e}")
                last_error = e
                continue
            logger.debug(f"Realtime channel opened via {transport.name}")
            return channel
        raise TransportError(f"All realtime transports failed: {last_error}") from last_error


def build_transport(names: Sequence[str], poll_timeout: float = 25.0, timeout: float = 10.0) -> Transport:
    """Build a fallback chain from transport names (``websocket``, ``polling``)."""
    available = {
        "websocket": lambda: WebSocketTransport(open_timeout=timeout),
        "polling": lambda: PollingTransport(poll_timeout=poll_timeout, request_timeout=timeout),
    }
    return FallbackTransport([available[name]() for name in names])
