"""Connection registry for realtime clients.

A user may be connected from several devices at once, so connections are
indexed by user id. Each connection owns an outbound queue drained by its
transport (a WebSocket writer or a long-poll request).
"""

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from backend.app.core.logging import get_log_context, get_logger

logger = get_logger(__name__)


@dataclass
class RealtimeConnection:
    """One authenticated realtime channel."""
    connection_id: str
    user_id: str
    transport: str  # websocket | polling
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    created_at: float = field(default_factory=time.time)
    last_seen: float = field(default_factory=time.time)

    def touch(self) -> None:
        self.last_seen = time.time()


class RealtimeHub:
    """Tracks realtime connections and routes events between users."""

    def __init__(self, max_queue_size: int = 100):
        self.max_queue_size = max_queue_size
        self.connections: Dict[str, RealtimeConnection] = {}
        self.user_connections: Dict[str, Set[str]] = {}  # user_id -> connection_ids

    def add(self, user_id: str, transport: str) -> RealtimeConnection:
        connection = RealtimeConnection(
            connection_id=uuid.uuid4().hex,
            user_id=user_id,
            transport=transport,
            queue=asyncio.Queue(maxsize=self.max_queue_size),
        )
        self.connections[connection.connection_id] = connection
        self.user_connections.setdefault(user_id, set()).add(connection.connection_id)

        logger.info(
            f"Realtime connection {connection.connection_id} opened via {transport}",
            extra=get_log_context(user_id=user_id),
        )
        return connection

    def remove(self, connection_id: str) -> None:
        connection = self.connections.pop(connection_id, None)
        if connection is None:
            return

        sockets = self.user_connections.get(connection.user_id)
        if sockets is not None:
            sockets.discard(connection_id)
            if not sockets:
                del self.user_connections[connection.user_id]

        logger.info(
            f"Realtime connection {connection_id} closed",
            extra=get_log_context(user_id=connection.user_id),
        )

    def get(self, connection_id: str) -> Optional[RealtimeConnection]:
        return self.connections.get(connection_id)

    def is_online(self, user_id: str) -> bool:
        return bool(self.user_connections.get(user_id))

    def connections_for(self, user_id: str) -> List[RealtimeConnection]:
        return [
            self.connections[connection_id]
            for connection_id in self.user_connections.get(user_id, ())
            if connection_id in self.connections
        ]

    def emit_to_user(self, user_id: str, event: str, data: Any) -> int:
        """Queue ``event`` for every connection of ``user_id``.

        Returns:
            Number of connections the event was queued on.
        """
        message = {"type": event, "data": data}
        delivered = 0
        for connection in self.connections_for(user_id):
            if connection.queue.full():
                # Slow consumer: drop its oldest event
                connection.queue.get_nowait()
            connection.queue.put_nowait(message)
            delivered += 1
        return delivered

    def handle_client_event(self, connection: RealtimeConnection, message: Dict[str, Any]) -> None:
        """Dispatch an event sent by a client."""
        connection.touch()
        event = message.get("type")
        data = message.get("data")
        if not isinstance(data, dict):
            data = {}

        if event in ("typing:start", "typing:stop"):
            recipient_id = data.get("recipientId")
            if recipient_id is None:
                return
            self.emit_to_user(
                str(recipient_id),
                "typing",
                {
                    "matchId": data.get("matchId"),
                    "userId": connection.user_id,
                    "isTyping": event == "typing:start",
                },
            )
        elif event != "ping":
            logger.debug(
                f"Ignoring unknown realtime event {event!r}",
                extra=get_log_context(user_id=connection.user_id),
            )

    def prune_idle(self, max_idle_seconds: float, transport: str = "polling") -> int:
        """Remove ``transport`` connections not seen for ``max_idle_seconds``."""
        cutoff = time.time() - max_idle_seconds
        idle = [
            connection_id
            for connection_id, connection in self.connections.items()
            if connection.transport == transport and connection.last_seen < cutoff
        ]
        for connection_id in idle:
            self.remove(connection_id)
        return len(idle)
