"""Push notification handle registration with bounded retry.

``PushRegistrar.register`` is fire-and-forget: it schedules an attempt
sequence on the running event loop and returns. Registration is best
effort, so failures are logged and never raised to the caller.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

import httpx

from mobile.backoff import BackoffPolicy, ExponentialBackoff
from mobile.config import ClientSettings

logger = logging.getLogger(__name__)

# Every error httpx raises while building or sending a request
HTTP_ERRORS = (httpx.HTTPError, httpx.InvalidURL, httpx.StreamError)


class PushTokenProvider(ABC):
    """Platform source of the device push handle."""

    @abstractmethod
    async def get_device_handle(self) -> Optional[str]:
        """Return the device push handle.

        Returns None when permission is denied or the platform cannot
        receive push notifications (e.g. a simulator).
        """
        pass


class RegistrationStatus(str, Enum):
    IDLE = "idle"
    ATTEMPTING = "attempting"
    REGISTERED = "registered"
    EXHAUSTED = "exhausted"
    SKIPPED = "skipped"  # No device handle available


@dataclass
class PushRegistrationState:
    device_handle: Optional[str] = None
    session_token: Optional[str] = None
    registered: bool = False
    attempt: int = 0
    status: RegistrationStatus = RegistrationStatus.IDLE


class PushRegistrar:
    """Registers this device's push handle with the backend.

    One instance per authenticated session. Attempts are strictly
    sequential, separated by ``backoff.next_delay(i)`` after failure ``i``
    (1s, 2s, 4s, ... by default), and capped at ``max_attempts``.

    Usage:
        registrar = PushRegistrar("https://api.example.com/api", provider)
        registrar.register(session_token)
        ...
        await registrar.close()
    """

    def __init__(
        self,
        api_base_url: str,
        token_provider: PushTokenProvider,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        max_attempts: int = 3,
        backoff: Optional[BackoffPolicy] = None,
        timeout: float = 10.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self._base_url = api_base_url.rstrip("/")
        self._token_provider = token_provider
        self._client = http_client
        self._owns_client = http_client is None
        self._timeout = timeout
        self._sleep = sleep
        self.max_attempts = max_attempts
        self.backoff = backoff or ExponentialBackoff(base_delay=1.0, factor=2.0)

        self._state = PushRegistrationState()
        self._task: Optional[asyncio.Task] = None
        self._generation = 0

    @classmethod
    def from_settings(
        cls,
        config: ClientSettings,
        token_provider: PushTokenProvider,
        **kwargs,
    ) -> "PushRegistrar":
        return cls(
            config.api_base_url,
            token_provider,
            max_attempts=config.push_max_attempts,
            backoff=ExponentialBackoff(
                base_delay=config.push_base_delay, factor=config.push_backoff_factor
            ),
            timeout=config.http_timeout,
            **kwargs,
        )

    @property
    def state(self) -> PushRegistrationState:
        return self._state

    @property
    def registered(self) -> bool:
        return self._state.registered

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    def register(self, session_token: str) -> None:
        """Start registering the device handle for ``session_token``.

        A new token supersedes any sequence still running for the previous
        one; the same token while attempting or registered is a no-op.
        """
        if (
            session_token == self._state.session_token
            and self._state.status in (RegistrationStatus.ATTEMPTING, RegistrationStatus.REGISTERED)
        ):
            return

        self._cancel()
        self._generation += 1
        self._state = PushRegistrationState(
            device_handle=self._state.device_handle,
            session_token=session_token,
        )
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run(self._generation, session_token))

    async def wait(self) -> PushRegistrationState:
        """Wait for the current attempt sequence to finish."""
        task = self._task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return self._state

    def _cancel(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()

    async def _obtain_device_handle(self) -> Optional[str]:
        if self._state.device_handle is not None:
            return self._state.device_handle
        try:
            handle = await self._token_provider.get_device_handle()
        except Exception as e:
            logger.info(f"Push handle unavailable: {type(e).__name__}: {e}")
            return None
        return handle or None

    async def _run(self, generation: int, session_token: str) -> None:
        handle = await self._obtain_device_handle()
        if generation != self._generation:
            return

        if handle is None:
            self._state.status = RegistrationStatus.SKIPPED
            logger.info("No push handle available; skipping registration")
            return

        self._state.device_handle = handle
        self._state.status = RegistrationStatus.ATTEMPTING

        for attempt in range(self.max_attempts):
            self._state.attempt = attempt + 1
            succeeded = await self._attempt(handle, session_token, attempt)
            if generation != self._generation:
                return

            if succeeded:
                self._state.registered = True
                self._state.status = RegistrationStatus.REGISTERED
                logger.info(f"Push handle registered on attempt {attempt + 1}")
                return

            if attempt + 1 < self.max_attempts:
                await self._sleep(self.backoff.next_delay(attempt))
                if generation != self._generation:
                    return

        self._state.status = RegistrationStatus.EXHAUSTED
        logger.warning(f"Push registration gave up after {self.max_attempts} attempts")

    async def _attempt(self, handle: str, session_token: str, attempt: int) -> bool:
        """POST the handle once; True on any 2xx response."""
        try:
            response = await self._get_client().post(
                f"{self._base_url}/push/register",
                json={"pushToken": handle},
                headers={"Authorization": f"Bearer {session_token}"},
            )
        except HTTP_ERRORS as e:
            logger.warning(
                f"Push registration attempt {attempt + 1}/{self.max_attempts} failed: "
                f"{type(e).__name__}: {e}"
            )
            return False

        if response.is_success:
            return True

        # TODO: stop early on 400 "Invalid push token" once the backend sends a machine-readable error code
        logger.warning(
            f"Push registration attempt {attempt + 1}/{self.max_attempts} failed: "
            f"HTTP {response.status_code}"
        )
        return False

    async def unregister(self, session_token: Optional[str] = None) -> bool:
        """Ask the backend to forget this device's handle (on logout).

        Cancels any running registration. Best effort: one attempt, and
        failures are logged and reported as False.
        """
        token = session_token or self._state.session_token
        self._cancel()
        self._generation += 1
        self._state = PushRegistrationState(device_handle=self._state.device_handle)
        if token is None:
            return False

        try:
            response = await self._get_client().post(
                f"{self._base_url}/push/unregister",
                headers={"Authorization": f"Bearer {token}"},
            )
        except HTTP_ERRORS as e:
            logger.warning(f"Push unregistration failed: {type(e).__name__}: {e}")
            return False

        if not response.is_success:
            logger.warning(f"Push unregistration failed: HTTP {response.status_code}")
            return False
        return True

    async def close(self) -> None:
        """Cancel any running sequence and release the HTTP client."""
        task = self._task
        self._cancel()
        self._generation += 1
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
