"""Core utilities for the backend application."""

from backend.app.core.config import settings
from backend.app.core.logging import get_logger, setup_logging
from backend.app.core.security import create_session_token, decode_session_token

__all__ = [
    "settings",
    "get_logger",
    "setup_logging",
    "create_session_token",
    "decode_session_token",
]
