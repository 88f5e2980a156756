from fastapi import Request

from backend.app.core.security import decode_session_token


def extract_bearer_token(request: Request) -> str | None:
    """Return the bearer token from the Authorization header, if any."""
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return auth[7:].strip() or None


async def require_user(request: Request) -> str:
    """FastAPI dependency resolving the authenticated user id.

    Raises AuthenticationError (401) when the token is missing or invalid.
    """
    user_id = decode_session_token(extract_bearer_token(request))
    request.state.user_id = user_id
    return user_id
