"""API endpoints package for the backend."""

from backend.app.api.push import router as push_router

__all__ = [
    "push_router",
]
