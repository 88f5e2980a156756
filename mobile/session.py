"""Per-session wiring of the push registrar and realtime connection."""

import logging
from typing import Optional

from mobile.config import ClientSettings
from mobile.push import PushRegistrar, PushTokenProvider
from mobile.realtime import RealtimeConnectionManager

logger = logging.getLogger(__name__)


class SessionServices:
    """Owns the push registrar and realtime manager for the signed-in user.

    ``login`` with a new token tears down everything bound to the previous
    token before starting again; ``logout`` unregisters the push handle and
    closes the realtime channel.
    """

    def __init__(
        self,
        push: PushRegistrar,
        realtime: RealtimeConnectionManager,
    ):
        self.push = push
        self.realtime = realtime
        self._session_token: Optional[str] = None

    @classmethod
    def from_settings(
        cls,
        config: ClientSettings,
        token_provider: PushTokenProvider,
    ) -> "SessionServices":
        return cls(
            PushRegistrar.from_settings(config, token_provider),
            RealtimeConnectionManager.from_settings(config),
        )

    @property
    def session_token(self) -> Optional[str]:
        return self._session_token

    def login(self, session_token: str) -> None:
        """Bind both services to ``session_token``."""
        if session_token == self._session_token:
            return
        if self._session_token is not None:
            logger.info("Session token changed; restarting session services")
            self.realtime.disconnect()
        self._session_token = session_token
        self.realtime.connect(session_token)
        self.push.register(session_token)

    async def logout(self) -> None:
        """Unregister the push handle and close the realtime channel."""
        token, self._session_token = self._session_token, None
        await self.realtime.aclose()
        if token is not None:
            await self.push.unregister(token)

    async def close(self) -> None:
        await self.realtime.aclose()
        await self.push.close()
