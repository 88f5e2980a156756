"""Named rate limiters for the auth and push route families.

Each limiter is a configuration of the same fixed-window ``RateLimiter``;
windows and maxima come from settings so deployments can tune them.
"""

from dataclasses import dataclass
from typing import Optional

from backend.app.core.config import Settings
from backend.app.middleware.rate_limit import CounterStore, RateLimiter, RouteLimit, rate_limit

_POST = frozenset({"POST"})


@dataclass
class Limiters:
    """The limiters one application instance enforces."""
    login: RateLimiter
    signup: RateLimiter
    forgot_password: RateLimiter
    reset_password: RateLimiter
    push: RateLimiter

    def all(self) -> list[RateLimiter]:
        return [self.login, self.signup, self.forgot_password, self.reset_password, self.push]


def build_limiters(config: Settings, store: Optional[CounterStore] = None) -> Limiters:
    """Create the named limiters from ``config``.

    The bypass flag and store are passed explicitly to every limiter; none
    of them consults the environment on its own.
    """
    common = {
        "store": store,
        "enabled": config.rate_limit_enabled,
        "fail_closed": config.rate_limit_fail_closed,
        "trust_forwarded": config.rate_limit_trust_forwarded,
    }
    return Limiters(
        # Login: 10 attempts per 15 minutes per client
        login=rate_limit(
            config.login_rate_window_seconds, config.login_rate_max_requests, "login", **common
        ),
        # Signup: 5 attempts per hour per client
        signup=rate_limit(
            config.signup_rate_window_seconds, config.signup_rate_max_requests, "signup", **common
        ),
        # Password reset request: 5 attempts per 15 minutes per client
        forgot_password=rate_limit(
            config.forgot_password_rate_window_seconds,
            config.forgot_password_rate_max_requests,
            "forgot-pw",
            **common,
        ),
        # Reset password verify: 10 attempts per 15 minutes per client
        reset_password=rate_limit(
            config.reset_password_rate_window_seconds,
            config.reset_password_rate_max_requests,
            "reset-pw",
            **common,
        ),
        push=rate_limit(
            config.push_rate_window_seconds, config.push_rate_max_requests, "push", **common
        ),
    )


def auth_route_limits(limiters: Limiters, api_prefix: str = "/api") -> list[RouteLimit]:
    """Middleware rules protecting the auth routes served under ``api_prefix``."""
    return [
        RouteLimit(f"{api_prefix}/auth/login", limiters.login, _POST),
        RouteLimit(f"{api_prefix}/auth/signup", limiters.signup, _POST),
        RouteLimit(f"{api_prefix}/auth/forgot-password", limiters.forgot_password, _POST),
        RouteLimit(f"{api_prefix}/auth/reset-password", limiters.reset_password, _POST),
    ]
