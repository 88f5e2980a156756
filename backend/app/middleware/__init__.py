"""Middleware package for the backend."""

from backend.app.middleware.auth import require_user
from backend.app.middleware.rate_limit import RateLimitMiddleware, RouteLimit, rate_limit
from backend.app.middleware.request_id import RequestIdMiddleware, get_request_id

__all__ = [
    "require_user",
    "RateLimitMiddleware",
    "RouteLimit",
    "rate_limit",
    "RequestIdMiddleware",
    "get_request_id",
]
