"""Client-side session services: push registration and realtime connection."""

from mobile.backoff import BackoffPolicy, ConstantBackoff, ExponentialBackoff
from mobile.config import ClientSettings
from mobile.push import PushRegistrar, PushRegistrationState, PushTokenProvider, RegistrationStatus
from mobile.realtime import ConnectionStatus, RealtimeConnectionManager
from mobile.session import SessionServices
from mobile.transports import (
    FallbackTransport,
    PollingTransport,
    Transport,
    TransportError,
    WebSocketTransport,
    derive_realtime_url,
)

__all__ = [
    "BackoffPolicy",
    "ConstantBackoff",
    "ExponentialBackoff",
    "ClientSettings",
    "PushRegistrar",
    "PushRegistrationState",
    "PushTokenProvider",
    "RegistrationStatus",
    "ConnectionStatus",
    "RealtimeConnectionManager",
    "SessionServices",
    "FallbackTransport",
    "PollingTransport",
    "Transport",
    "TransportError",
    "WebSocketTransport",
    "derive_realtime_url",
]
