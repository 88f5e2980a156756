"""Persistent realtime connection with automatic reconnection.

State machine::

    disconnected --connect()--> connecting --open ok--> connected
    connected --drop--> connecting (after a retry delay)
    connecting|connected --disconnect()--> disconnected

Transport failures never propagate to the owner; they only flip
``is_connected`` and schedule the next attempt.
"""

import asyncio
import functools
import inspect
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from mobile.backoff import BackoffPolicy, ExponentialBackoff
from mobile.config import ClientSettings
from mobile.transports import (
    Channel,
    Transport,
    TransportError,
    build_transport,
    derive_realtime_url,
)

logger = logging.getLogger(__name__)

StatusListener = Callable[["ConnectionStatus"], None]
EventHandler = Callable[[Any], Any]


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class RealtimeConnectionManager:
    """Keeps one realtime channel open per authenticated session.

    Each connection attempt publishes ``connecting``; after a failed
    attempt or a drop the manager waits ``backoff.next_delay(n)`` (1s
    growing to a 5s cap by default) and tries again until it connects or
    ``disconnect()`` is called. ``max_attempts`` optionally bounds the
    consecutive failed connection attempts; a drop of an established
    channel does not count towards it.

    Usage:
        manager = RealtimeConnectionManager("https://api.example.com/api")
        manager.subscribe(lambda status: print(status))
        manager.on("typing", handle_typing)
        manager.connect(session_token)
        ...
        manager.disconnect()
    """

    def __init__(
        self,
        api_base_url: str,
        transport: Optional[Transport] = None,
        *,
        backoff: Optional[BackoffPolicy] = None,
        max_attempts: Optional[int] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_attempts is not None and max_attempts < 1:
            raise ValueError("max_attempts must be at least 1 or None")

        self.server_url = derive_realtime_url(api_base_url)
        self._transport = transport or build_transport(["websocket", "polling"])
        self.backoff = backoff or ExponentialBackoff(base_delay=1.0, factor=2.0, max_delay=5.0)
        self.max_attempts = max_attempts
        self._sleep = sleep

        self._status = ConnectionStatus.DISCONNECTED
        self._session_token: Optional[str] = None
        self._task: Optional[asyncio.Task] = None
        self._channel: Optional[Channel] = None
        self._retry_pending = False
        # Tasks cancelled by disconnect() that aclose() still waits for
        self._closing: Set[asyncio.Task] = set()
        # Running coroutine event handlers
        self._handler_tasks: Set[asyncio.Task] = set()
        # Bumped on every teardown; callbacks from an older generation are ignored
        self._generation = 0

        self._listeners: List[StatusListener] = []
        self._handlers: Dict[str, List[EventHandler]] = {}

    @classmethod
    def from_settings(cls, config: ClientSettings, **kwargs) -> "RealtimeConnectionManager":
        kwargs.setdefault(
            "transport",
            build_transport(
                config.realtime_transports,
                poll_timeout=config.realtime_poll_timeout,
                timeout=config.http_timeout,
            ),
        )
        return cls(
            config.api_base_url,
            backoff=ExponentialBackoff(
                base_delay=config.reconnect_base_delay,
                factor=2.0,
                max_delay=config.reconnect_max_delay,
            ),
            max_attempts=config.reconnect_max_attempts,
            **kwargs,
        )

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def is_connected(self) -> bool:
        return self._status is ConnectionStatus.CONNECTED

    @property
    def session_token(self) -> Optional[str]:
        return self._session_token

    @property
    def retry_pending(self) -> bool:
        """True while a reconnect delay is running."""
        return self._retry_pending

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Call ``listener`` with every status change; returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def on(self, event: str, handler: EventHandler) -> Callable[[], None]:
        """Call ``handler(data)`` for each ``event`` received; returns a remover."""
        self._handlers.setdefault(event, []).append(handler)

        def remove() -> None:
            handlers = self._handlers.get(event, [])
            if handler in handlers:
                handlers.remove(handler)

        return remove

    def connect(self, session_token: str) -> "RealtimeConnectionManager":
        """Open the channel for ``session_token``.

        Any channel belonging to a previous token is torn down first. Calling
        again with the active token is a no-op.
        """
        if session_token == self._session_token and self._task is not None and not self._task.done():
            return self

        self.disconnect()
        self._session_token = session_token
        generation = self._generation
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run(generation, session_token))
        return self

    def disconnect(self) -> None:
        """Tear down the channel and cancel any pending reconnect.

        Synchronous: once it returns, no callback from the torn-down
        session can change state or reach an event handler.
        """
        self._generation += 1
        self._session_token = None
        self._retry_pending = False
        self._channel = None

        task, self._task = self._task, None
        if task is not None and not task.done():
            # The task closes its channel when the cancellation lands
            task.cancel()
            self._track_closing(task)

        for handler_task in list(self._handler_tasks):
            handler_task.cancel()
            self._track_closing(handler_task)
        self._handler_tasks.clear()

        self._set_status(ConnectionStatus.DISCONNECTED)

    async def aclose(self) -> None:
        """Disconnect and wait until the channel is closed."""
        self.disconnect()
        closing = list(self._closing)
        self._closing.clear()
        if closing:
            await asyncio.gather(*closing, return_exceptions=True)

    def _track_closing(self, task: asyncio.Task) -> None:
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def emit(self, event: str, data: Any = None) -> bool:
        """Send ``event`` on the active channel; False when not connected."""
        channel = self._channel
        if channel is None or not self.is_connected:
            return False
        try:
            await channel.send(event, data)
        except TransportError as e:
            logger.debug(f"Realtime emit of {event!r} failed: {e}")
            return False
        return True

    def _set_status(self, status: ConnectionStatus, generation: Optional[int] = None) -> None:
        if generation is not None and generation != self._generation:
            return
        if status is self._status and status is not ConnectionStatus.CONNECTING:
            return

        self._status = status
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception:
                logger.exception("Realtime status listener failed")

    def _dispatch(self, generation: int, event: str, data: Any) -> None:
        if generation != self._generation:
            return
        for handler in list(self._handlers.get(event, [])):
            try:
                result = handler(data)
            except Exception:
                logger.exception(f"Realtime handler for {event!r} failed")
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._handler_tasks.add(task)
                task.add_done_callback(functools.partial(self._handler_done, event))

    def _handler_done(self, event: str, task: asyncio.Task) -> None:
        self._handler_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Realtime handler for {event!r} failed", exc_info=error)

    async def _run(self, generation: int, session_token: str) -> None:
        failures = 0  # consecutive failed opens, bounded by max_attempts
        retries = 0  # waits since the last established channel
        announce = True

        while generation == self._generation:
            if announce:
                self._set_status(ConnectionStatus.CONNECTING, generation)
            announce = True

            try:
                channel = await self._transport.open(self.server_url, session_token)
            except TransportError as e:
                failures += 1
                logger.info(f"Realtime connect attempt {failures} failed: {e}")
            except Exception:
                failures += 1
                logger.exception(f"Realtime connect attempt {failures} failed unexpectedly")
            else:
                failures = 0
                retries = 0
                await self._hold(generation, channel)
                if generation != self._generation:
                    return
                logger.info("Realtime channel dropped; reconnecting")
                # connected -> connecting happens at the drop, not after the delay
                self._set_status(ConnectionStatus.CONNECTING, generation)
                announce = False

            if generation != self._generation:
                return

            if self.max_attempts is not None and failures >= self.max_attempts:
                logger.warning(f"Realtime reconnection gave up after {failures} attempts")
                self._set_status(ConnectionStatus.DISCONNECTED, generation)
                return

            self._retry_pending = True
            try:
                await self._sleep(self.backoff.next_delay(retries))
            finally:
                if generation == self._generation:
                    self._retry_pending = False
            retries += 1

    async def _hold(self, generation: int, channel: Channel) -> None:
        """Publish ``connected`` and pump events until the channel ends."""
        try:
            if generation != self._generation:
                return
            self._channel = channel
            self._set_status(ConnectionStatus.CONNECTED, generation)

            async for event, data in channel.receive():
                self._dispatch(generation, event, data)
        except TransportError as e:
            logger.info(f"Realtime channel lost: {e}")
        except Exception:
            logger.exception("Realtime channel failed unexpectedly")
        finally:
            if self._channel is channel:
                self._channel = None
            await channel.close()
