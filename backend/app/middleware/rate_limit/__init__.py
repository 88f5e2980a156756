"""Rate limiting for the backend.

This module provides fixed-window admission control per client. A limiter
is created per protected route family (login, signup, ...) and can be used
either as a FastAPI dependency on individual routes or through
``RateLimitMiddleware`` with path rules.

Counters live in a ``CounterStore``. The default in-memory store is shared
by every limiter in the process and is not coordinated across processes:
each horizontally scaled instance enforces its own independent limit.
"""

import math
import time
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from backend.app.core.logging import get_log_context, get_logger
from backend.app.exceptions import RateLimitExceededError

# Re-export models
from backend.app.middleware.rate_limit.models import (
    RateLimitDecision,
    RateLimitEntry,
)

# Re-export backends
from backend.app.middleware.rate_limit.backends import (
    CounterStore,
    InMemoryCounterStore,
    RedisCounterStore,
    get_counter_store,
    reset_counter_store,
)

logger = get_logger(__name__)

__all__ = [
    # Models
    "RateLimitDecision",
    "RateLimitEntry",
    # Backends
    "CounterStore",
    "InMemoryCounterStore",
    "RedisCounterStore",
    "get_counter_store",
    "reset_counter_store",
    # Main classes
    "RateLimiter",
    "RateLimitMiddleware",
    "RouteLimit",
    "rate_limit",
    "rate_limited_response",
]

RATE_LIMIT_MESSAGE = "Too many requests. Please try again later."

# Errors a remote counter store may raise; the in-memory store raises none
STORE_EXCEPTIONS = (RedisError, OSError)


class RateLimiter:
    """Fixed-window rate limiter for one key prefix.

    Within a window of ``window_seconds`` each client identifier may make
    ``max_requests`` requests. The window starts on the first request and
    the count resets entirely once it has passed.
    """

    def __init__(
        self,
        window_seconds: float,
        max_requests: int,
        key_prefix: str,
        *,
        store: Optional[CounterStore] = None,
        enabled: bool = True,
        fail_closed: bool = False,
        trust_forwarded: bool = False,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize rate limiter.

        Args:
            window_seconds: Length of the fixed window in seconds
            max_requests: Requests allowed per client within one window
            key_prefix: Namespace separating this limiter's counters
            store: Counter store (None = the process-wide store)
            enabled: False turns the limiter into a pass-through (tests)
            fail_closed: Reject instead of allow when the store errors
            trust_forwarded: Identify clients by the first X-Forwarded-For hop
            clock: Time source returning seconds
        """
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")

        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self.key_prefix = key_prefix
        self.enabled = enabled
        self.fail_closed = fail_closed
        self.trust_forwarded = trust_forwarded
        self._store = store
        self._clock = clock

    @property
    def store(self) -> CounterStore:
        if self._store is None:
            self._store = get_counter_store()
        return self._store

    def key_for(self, client_id: str) -> str:
        return f"{self.key_prefix}:{client_id}"

    def client_identifier(self, request: Request) -> str:
        """Derive the client identifier (source address) for a request."""
        if self.trust_forwarded:
            forwarded = request.headers.get("X-Forwarded-For")
            if forwarded:
                first_hop = forwarded.split(",")[0].strip()
                if first_hop:
                    return first_hop
        return request.client.host if request.client else "unknown"

    async def hit(self, client_id: str) -> RateLimitDecision:
        """Count one request for ``client_id`` and decide whether to admit it.

        Never raises: rejection is returned as a decision.
        """
        now = self._clock()
        if not self.enabled:
            return RateLimitDecision(
                allowed=True,
                limit=self.max_requests,
                remaining=self.max_requests,
                reset_at=now,
            )

        key = self.key_for(client_id)
        try:
            entry, allowed = await self.store.consume(
                key, now, self.window_seconds, self.max_requests
            )
        except STORE_EXCEPTIONS as e:
            return self._handle_store_failure(client_id, e)

        if allowed:
            return RateLimitDecision(
                allowed=True,
                limit=self.max_requests,
                remaining=self.max_requests - entry.count,
                reset_at=entry.reset_at,
            )

        retry_after = max(0, math.ceil(entry.reset_at - now))
        logger.warning(
            f"Rate limit exceeded for {key}, retry after {retry_after}s",
            extra=get_log_context(client_ip=client_id, key_prefix=self.key_prefix),
        )
        return RateLimitDecision(
            allowed=False,
            limit=self.max_requests,
            remaining=0,
            reset_at=entry.reset_at,
            retry_after=retry_after,
        )

    def _handle_store_failure(self, client_id: str, error: Exception) -> RateLimitDecision:
        """Apply the fail-open/fail-closed policy when the store is unavailable."""
        now = self._clock()
        context = get_log_context(client_ip=client_id, key_prefix=self.key_prefix)

        if self.fail_closed:
            logger.warning(
                f"Rate limit store failed ({type(error).__name__}: {error}); request denied",
                extra=context,
            )
            return RateLimitDecision(
                allowed=False,
                limit=self.max_requests,
                remaining=0,
                reset_at=now + self.window_seconds,
                retry_after=math.ceil(self.window_seconds),
            )

        logger.warning(
            f"Rate limit store failed ({type(error).__name__}: {error}); request allowed",
            extra=context,
        )
        return RateLimitDecision(
            allowed=True,
            limit=self.max_requests,
            remaining=self.max_requests,
            reset_at=now + self.window_seconds,
        )

    async def check(self, request: Request) -> RateLimitDecision:
        """Count ``request`` against its client's window."""
        return await self.hit(self.client_identifier(request))

    async def __call__(self, request: Request) -> RateLimitDecision:
        """FastAPI dependency: reject over-limit requests with 429."""
        decision = await self.check(request)
        if not decision.allowed:
            raise RateLimitExceededError(
                retry_after=decision.retry_after or 0,
                key_prefix=self.key_prefix,
            )
        request.state.rate_limit = decision
        return decision


def rate_limit(
    window_seconds: float,
    max_requests: int,
    key_prefix: str,
    **kwargs,
) -> RateLimiter:
    """Create a limiter for one route family.

    Example:
        >>> login_limiter = rate_limit(15 * 60, 10, "login")
        >>> @router.post("/auth/login", dependencies=[Depends(login_limiter)])
        ... async def login(...): ...
    """
    return RateLimiter(window_seconds, max_requests, key_prefix, **kwargs)


def rate_limited_response(retry_after: int, message: str = RATE_LIMIT_MESSAGE) -> JSONResponse:
    """Build the 429 response returned to rejected clients."""
    return JSONResponse(
        status_code=429,
        content={"error": message, "retry_after_seconds": retry_after},
        headers={"Retry-After": str(retry_after)},
    )


@dataclass
class RouteLimit:
    """Apply ``limiter`` to requests whose path is ``path`` or below it."""
    path: str
    limiter: RateLimiter
    methods: Optional[frozenset[str]] = None

    def matches(self, request: Request) -> bool:
        if self.methods is not None and request.method.upper() not in self.methods:
            return False
        request_path = request.url.path.rstrip("/") or "/"
        rule_path = self.path.rstrip("/") or "/"
        return request_path == rule_path or request_path.startswith(rule_path + "/")


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce route-family rate limits on requests.

    The first matching rule's limiter decides; requests matching no rule
    pass through untouched.
    """

    def __init__(self, app, rules: Sequence[RouteLimit] = ()):
        super().__init__(app)
        self.rules = list(rules)

    def _match(self, request: Request) -> Optional[RouteLimit]:
        for rule in self.rules:
            if rule.matches(request):
                return rule
        return None

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request with rate limiting."""
        rule = self._match(request)
        if rule is None:
            return await call_next(request)

        result = await rule.limiter.check(request)
        if not result.allowed:
            return rate_limited_response(result.retry_after or 0)

        response = await call_next(request)

        response.headers["X-RateLimit-Limit"] = str(result.limit)
        response.headers["X-RateLimit-Remaining"] = str(result.remaining)
        response.headers["X-RateLimit-Reset"] = str(int(result.reset_at))

        return response
