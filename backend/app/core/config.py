import json
import re
import secrets
from typing import Annotated, Any

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


# HS256 keys shorter than the digest size are rejected outside debug mode
MIN_JWT_SECRET_BYTES = 32


def _parse_cors_origins(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, list):
        items = [str(v).strip() for v in raw]
        return [v for v in items if v]

    raw = str(raw).strip()
    if not raw or raw == "[]":
        return []
    if raw == "*":
        return ["*"]

    # Prefer JSON, but tolerate comma or whitespace separated values.
    if raw.startswith(("[", '"')):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            items = [str(v).strip() for v in parsed]
            return [v for v in items if v]
        if isinstance(parsed, str):
            raw = parsed.strip()

    origins: list[str] = []
    for part in re.split(r"[,\s]+", raw):
        if not part:
            continue
        if part == "*":
            return ["*"]
        if part not in origins:
            origins.append(part)
    return origins


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # CORS settings
    cors_origins: Annotated[list[str], NoDecode] = ["*"]

    @field_validator("cors_origins", mode="before")
    @classmethod
    def decode_cors_origins(cls, v: Any) -> list[str]:
        return _parse_cors_origins(v)

    # Session tokens issued by the auth service
    jwt_secret: str = Field(default="", validate_default=True)
    jwt_algorithm: str = "HS256"

    @field_validator("jwt_secret")
    @classmethod
    def validate_jwt_secret(cls, v: str, info: ValidationInfo) -> str:
        """Require a full-length signing key unless running in debug mode.

        In debug mode an unset secret is replaced by a random per-process
        key, so tokens do not survive a restart.
        """
        if len(v.encode()) >= MIN_JWT_SECRET_BYTES:
            return v
        if info.data.get("debug"):
            return v or secrets.token_urlsafe(MIN_JWT_SECRET_BYTES)
        raise ValueError(
            f"jwt_secret must be at least {MIN_JWT_SECRET_BYTES} bytes; set JWT_SECRET"
        )

    # Rate limiting settings
    rate_limit_enabled: bool = True  # False only for automated test runs
    rate_limit_backend: str = "memory"  # memory | redis
    rate_limit_fail_closed: bool = False  # Deny requests when the store errors
    rate_limit_trust_forwarded: bool = False  # Honour X-Forwarded-For
    rate_limit_sweep_interval_seconds: float = 300.0

    # Named limiters (window in seconds, max requests per window)
    login_rate_window_seconds: float = 15 * 60
    login_rate_max_requests: int = 10
    signup_rate_window_seconds: float = 60 * 60
    signup_rate_max_requests: int = 5
    forgot_password_rate_window_seconds: float = 15 * 60
    forgot_password_rate_max_requests: int = 5
    reset_password_rate_window_seconds: float = 15 * 60
    reset_password_rate_max_requests: int = 10
    push_rate_window_seconds: float = 15 * 60
    push_rate_max_requests: int = 20

    # Redis settings (optional counter store)
    redis_url: str = "redis://localhost:6379/0"

    @field_validator("rate_limit_backend")
    @classmethod
    def validate_rate_limit_backend(cls, v: str) -> str:
        """Validate the counter store backend name."""
        v = v.strip().lower()
        if v not in ("memory", "redis"):
            raise ValueError("rate_limit_backend must be 'memory' or 'redis'")
        return v

    @field_validator(
        "login_rate_max_requests",
        "signup_rate_max_requests",
        "forgot_password_rate_max_requests",
        "reset_password_rate_max_requests",
        "push_rate_max_requests",
    )
    @classmethod
    def validate_rate_limit_positive(cls, v: int) -> int:
        """Validate rate limit values are positive."""
        if v < 1:
            raise ValueError("Rate limit values must be at least 1")
        return v

    @field_validator(
        "login_rate_window_seconds",
        "signup_rate_window_seconds",
        "forgot_password_rate_window_seconds",
        "reset_password_rate_window_seconds",
        "push_rate_window_seconds",
        "rate_limit_sweep_interval_seconds",
    )
    @classmethod
    def validate_window_positive(cls, v: float) -> float:
        """Validate window and interval values are positive."""
        if v <= 0:
            raise ValueError("Window and interval values must be positive")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
