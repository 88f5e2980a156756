from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ClientSettings(BaseSettings):
    """Client settings loaded from ``KINDRED_`` environment variables."""

    # REST base URL; the realtime server is this URL without its /api suffix
    api_base_url: str = "http://localhost:3000/api"
    http_timeout: float = 10.0

    # Push handle registration
    push_max_attempts: int = 3
    push_base_delay: float = 1.0
    push_backoff_factor: float = 2.0

    # Realtime reconnection
    reconnect_base_delay: float = 1.0
    reconnect_max_delay: float = 5.0
    reconnect_max_attempts: Optional[int] = None  # None = retry until disconnect()
    realtime_transports: list[str] = ["websocket", "polling"]
    realtime_poll_timeout: float = 25.0

    @field_validator("push_max_attempts")
    @classmethod
    def validate_attempts_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("push_max_attempts must be at least 1")
        return v

    @field_validator("reconnect_max_attempts")
    @classmethod
    def validate_reconnect_attempts(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError("reconnect_max_attempts must be at least 1 or unset")
        return v

    @field_validator("realtime_transports")
    @classmethod
    def validate_transports(cls, v: list[str]) -> list[str]:
        names = [name.strip().lower() for name in v if name.strip()]
        unknown = set(names) - {"websocket", "polling"}
        if unknown or not names:
            raise ValueError("realtime_transports must list 'websocket' and/or 'polling'")
        return names

    @field_validator("http_timeout", "push_base_delay", "reconnect_base_delay", "reconnect_max_delay")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Timeouts and delays must be positive")
        return v

    model_config = SettingsConfigDict(env_prefix="KINDRED_", env_file=".env", extra="ignore")
