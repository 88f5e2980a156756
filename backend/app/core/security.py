"""Session token verification.

Session tokens are HS256 JWTs issued by the auth service. The user id is
carried in the ``userId`` claim, with ``sub`` accepted as a fallback.
"""

import time
from typing import Optional

import jwt

from backend.app.core.config import settings
from backend.app.core.logging import get_logger
from backend.app.exceptions import AuthenticationError

logger = get_logger(__name__)


def decode_session_token(token: Optional[str]) -> str:
    """Verify a session token and return its user id.

    Args:
        token: JWT string (without "Bearer " prefix)

    Returns:
        User id from the token payload, as a string

    Raises:
        AuthenticationError: If the token is missing, invalid or expired
    """
    if not token:
        raise AuthenticationError("Authentication required")

    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        logger.debug("Session token expired")
        raise AuthenticationError("Invalid or expired token")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Session token invalid: {e}")
        raise AuthenticationError("Invalid or expired token")

    user_id = payload.get("userId", payload.get("sub"))
    if user_id is None:
        raise AuthenticationError("Invalid or expired token")
    return str(user_id)


def create_session_token(user_id: str | int, expires_in: int = 3600) -> str:
    """Issue a session token for ``user_id``.

    The auth service owns token issuance; this exists for tooling and tests.
    """
    now = int(time.time())
    payload = {"userId": user_id, "iat": now, "exp": now + expires_in}
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)
