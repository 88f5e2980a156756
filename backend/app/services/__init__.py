"""Service layer for the backend."""

from backend.app.services.push_tokens import PushTokenRegistry, is_expo_push_token

__all__ = [
    "PushTokenRegistry",
    "is_expo_push_token",
]
