from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend.app.api.limiters import auth_route_limits, build_limiters
from backend.app.api.push import router as push_router
from backend.app.core.config import Settings, settings
from backend.app.core.logging import get_logger, setup_logging
from backend.app.exceptions import AuthenticationError, InvalidPushTokenError, RateLimitExceededError
from backend.app.middleware.rate_limit import (
    CounterStore,
    RateLimitMiddleware,
    RedisCounterStore,
    get_counter_store,
    rate_limited_response,
)
from backend.app.middleware.rate_limit.sweeper import CounterStoreSweeper
from backend.app.middleware.request_id import RequestIdMiddleware, get_request_id
from backend.app.realtime import RealtimeHub
from backend.app.realtime import router as realtime_router
from backend.app.services.push_tokens import PushTokenRegistry


def create_app(config: Optional[Settings] = None, store: Optional[CounterStore] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        config: Settings to use (defaults to the environment-loaded settings)
        store: Counter store for the rate limiters (defaults to the
            process-wide store)

    Returns:
        Configured FastAPI application instance
    """
    config = config or settings
    setup_logging()
    logger = get_logger(__name__)

    if store is None:
        store = get_counter_store(config.rate_limit_backend)
    limiters = build_limiters(config, store=store)
    if not config.rate_limit_enabled:
        logger.warning("Rate limiting disabled by configuration")

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Start the counter sweeper on startup and stop it on shutdown."""
        sweeper = CounterStoreSweeper(store, interval=config.rate_limit_sweep_interval_seconds)
        await sweeper.start()
        logger.info("Application startup complete")

        yield

        await sweeper.stop()
        if isinstance(store, RedisCounterStore):
            await store.close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Kindred API",
        description="Admission control, push registration and realtime endpoints",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.state.settings = config
    app.state.limiters = limiters
    app.state.push_registry = PushTokenRegistry()
    app.state.realtime_hub = RealtimeHub()

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Retry-After", "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset"],
    )

    # Auth route families are rate limited before they reach the auth service routes
    app.add_middleware(RateLimitMiddleware, rules=auth_route_limits(limiters))

    app.add_middleware(RequestIdMiddleware)

    api_router = APIRouter(prefix="/api")
    api_router.include_router(push_router)
    app.include_router(api_router)
    app.include_router(realtime_router)

    @app.get("/health")
    async def health(request: Request) -> dict[str, Any]:
        hub: RealtimeHub = request.app.state.realtime_hub
        return {
            "status": "ok",
            "components": {
                "rate_limit": {
                    "enabled": config.rate_limit_enabled,
                    "backend": config.rate_limit_backend,
                    "limiters": {
                        limiter.key_prefix: {
                            "window_seconds": limiter.window_seconds,
                            "max_requests": limiter.max_requests,
                        }
                        for limiter in limiters.all()
                    },
                },
                "realtime": {"connections": len(hub.connections)},
            },
        }

    @app.exception_handler(RateLimitExceededError)
    async def rate_limit_handler(request: Request, exc: RateLimitExceededError) -> JSONResponse:
        """Handle RateLimitExceededError and return HTTP 429 response."""
        return rate_limited_response(exc.retry_after, exc.message)

    @app.exception_handler(AuthenticationError)
    async def auth_error_handler(request: Request, exc: AuthenticationError) -> JSONResponse:
        """Handle AuthenticationError and return HTTP 401 response."""
        return JSONResponse(status_code=401, content={"error": exc.detail})

    @app.exception_handler(InvalidPushTokenError)
    async def push_token_handler(request: Request, exc: InvalidPushTokenError) -> JSONResponse:
        """Handle InvalidPushTokenError and return HTTP 400 response."""
        return JSONResponse(status_code=400, content={"error": exc.detail})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Log unhandled exceptions server-side and return a generic 500."""
        request_id = get_request_id(request)
        logger.exception(
            f"Unhandled exception [request_id={request_id}]",
            extra={"request_id": request_id, "exception_type": type(exc).__name__},
        )

        content = {"error": "Internal server error", "request_id": request_id}
        if config.debug:
            content["exception_type"] = type(exc).__name__
            content["message"] = str(exc)
        return JSONResponse(status_code=500, content=content)

    return app


# Create the application instance
app = create_app()
