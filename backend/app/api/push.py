"""Push notification handle registration endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from backend.app.exceptions import InvalidPushTokenError
from backend.app.middleware.auth import require_user
from backend.app.services.push_tokens import PushTokenRegistry

router = APIRouter(prefix="/push", tags=["push"])


class PushRegisterRequest(BaseModel):
    pushToken: Optional[str] = None


class PushMessageResponse(BaseModel):
    message: str


async def push_rate_limit(request: Request) -> None:
    """Apply the application's push limiter to the current request."""
    await request.app.state.limiters.push(request)


def get_push_registry(request: Request) -> PushTokenRegistry:
    return request.app.state.push_registry


@router.post(
    "/register",
    response_model=PushMessageResponse,
    dependencies=[Depends(push_rate_limit)],
)
async def register_push_token(
    body: PushRegisterRequest,
    user_id: str = Depends(require_user),
    registry: PushTokenRegistry = Depends(get_push_registry),
) -> PushMessageResponse:
    """Register or replace the caller's device push handle."""
    if not body.pushToken:
        raise InvalidPushTokenError("pushToken is required")

    if not registry.register(user_id, body.pushToken):
        raise InvalidPushTokenError("Invalid push token")

    return PushMessageResponse(message="Push token registered successfully")


@router.post(
    "/unregister",
    response_model=PushMessageResponse,
    dependencies=[Depends(push_rate_limit)],
)
async def unregister_push_token(
    user_id: str = Depends(require_user),
    registry: PushTokenRegistry = Depends(get_push_registry),
) -> PushMessageResponse:
    """Forget the caller's device push handle (on logout)."""
    registry.unregister(user_id)
    return PushMessageResponse(message="Push token unregistered successfully")
