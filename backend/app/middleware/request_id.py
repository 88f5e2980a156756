"""Request ID and access logging middleware.

Every request gets an id (the client's ``X-Request-ID`` when it sends a
usable one) that is echoed back and attached to the access log line, so a
rejected login can be traced from the client report to the server log.
"""

import logging
import re
import time
import uuid

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from backend.app.core.logging import get_log_context, get_logger

logger = get_logger(__name__)

# Client-supplied ids end up in logs; anything else is replaced
_VALID_REQUEST_ID = re.compile(r"^[A-Za-z0-9._-]{1,128}$")


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Assign a request id and log one line per completed request.

    The id is stored on ``request.state.request_id`` and returned in the
    ``header_name`` response header. Paths in ``quiet_paths`` (health
    checks) are logged at DEBUG.
    """

    def __init__(
        self,
        app,
        header_name: str = "X-Request-ID",
        quiet_paths: frozenset[str] = frozenset({"/health"}),
    ):
        super().__init__(app)
        self.header_name = header_name
        self.quiet_paths = quiet_paths

    def _request_id_for(self, request: Request) -> str:
        incoming = request.headers.get(self.header_name, "")
        if _VALID_REQUEST_ID.match(incoming):
            return incoming
        return uuid.uuid4().hex

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = self._request_id_for(request)
        request.state.request_id = request_id
        started = time.perf_counter()

        response = await call_next(request)
        response.headers[self.header_name] = request_id

        duration_ms = round((time.perf_counter() - started) * 1000, 1)
        level = logging.DEBUG if request.url.path in self.quiet_paths else logging.INFO
        logger.log(
            level,
            f"{request.method} {request.url.path} -> {response.status_code} ({duration_ms}ms)",
            extra=get_log_context(
                request_id=request_id,
                client_ip=request.client.host if request.client else None,
                path=request.url.path,
                method=request.method,
                status_code=response.status_code,
                duration_ms=duration_ms,
            ),
        )
        return response


def get_request_id(request: Request) -> str:
    """Get request ID from request state."""
    return getattr(request.state, "request_id", "unknown")
