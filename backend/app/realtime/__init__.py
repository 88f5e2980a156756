"""Realtime endpoint: WebSocket channel with long-polling fallback."""

from backend.app.realtime.hub import RealtimeConnection, RealtimeHub
from backend.app.realtime.router import router

__all__ = [
    "RealtimeConnection",
    "RealtimeHub",
    "router",
]
