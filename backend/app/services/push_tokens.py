"""Device push handle registry.

Stores the latest Expo push token per user. Storage is in-process; the
persistent user table belongs to the account service.
"""

import re
from typing import Optional

from backend.app.core.logging import get_log_context, get_logger

logger = get_logger(__name__)

_EXPO_TOKEN_RE = re.compile(r"^(?:ExponentPushToken|ExpoPushToken)\[[^\]]+\]$")
_UUID_TOKEN_RE = re.compile(
    r"^[a-z\d]{8}-[a-z\d]{4}-[a-z\d]{4}-[a-z\d]{4}-[a-z\d]{12}$", re.IGNORECASE
)


def is_expo_push_token(token: object) -> bool:
    """Return True if ``token`` looks like an Expo push token."""
    if not isinstance(token, str):
        return False
    return bool(_EXPO_TOKEN_RE.match(token) or _UUID_TOKEN_RE.match(token))


class PushTokenRegistry:
    """Maps user ids to their current device push handle."""

    def __init__(self) -> None:
        self._tokens: dict[str, str] = {}

    def register(self, user_id: str, push_token: str) -> bool:
        """Store ``push_token`` for ``user_id``; False if it is not valid.

        Re-registering the same token is a no-op, so client retries are
        harmless.
        """
        if not is_expo_push_token(push_token):
            logger.warning(
                "Rejected invalid push token",
                extra=get_log_context(user_id=user_id),
            )
            return False
        self._tokens[user_id] = push_token
        logger.info("Push token registered", extra=get_log_context(user_id=user_id))
        return True

    def unregister(self, user_id: str) -> None:
        self._tokens.pop(user_id, None)
        logger.info("Push token unregistered", extra=get_log_context(user_id=user_id))

    def get(self, user_id: str) -> Optional[str]:
        return self._tokens.get(user_id)

    def __len__(self) -> int:
        return len(self._tokens)
