"""Realtime transport endpoints.

WebSocket clients authenticate in the handshake: the first frame must be
``{"type": "auth", "token": "<session token>"}``. The server answers
``{"type": "connected", "connection_id": ...}`` or closes with code 4401.

Long-polling clients open a session with ``POST /realtime/poll`` and then
alternate ``GET /realtime/poll/{sid}`` (receive) and
``POST /realtime/poll/{sid}`` (send).
"""

import asyncio
import json
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from backend.app.core.logging import get_logger
from backend.app.core.security import decode_session_token
from backend.app.exceptions import AuthenticationError
from backend.app.realtime.hub import RealtimeConnection, RealtimeHub

logger = get_logger(__name__)

router = APIRouter(prefix="/realtime", tags=["realtime"])

AUTH_TIMEOUT_SECONDS = 10.0
AUTH_FAILED_CLOSE_CODE = 4401
POLL_IDLE_SECONDS = 60.0


class PollOpenRequest(BaseModel):
    token: Optional[str] = None


class PollOpenResponse(BaseModel):
    sid: str


class PollEventsResponse(BaseModel):
    events: List[Dict[str, Any]]


class ClientEvent(BaseModel):
    type: str
    data: Optional[Dict[str, Any]] = None


def _hub_from(app) -> RealtimeHub:
    return app.state.realtime_hub


async def _authenticate_websocket(websocket: WebSocket) -> Optional[str]:
    """Read the auth frame and return the user id, or None after closing."""
    try:
        raw = await asyncio.wait_for(websocket.receive_text(), timeout=AUTH_TIMEOUT_SECONDS)
        message = json.loads(raw)
    except (asyncio.TimeoutError, json.JSONDecodeError):
        message = {}

    token = message.get("token") if isinstance(message, dict) and message.get("type") == "auth" else None
    try:
        return decode_session_token(token)
    except AuthenticationError as e:
        await websocket.send_json({"type": "error", "message": e.detail})
        await websocket.close(code=AUTH_FAILED_CLOSE_CODE)
        return None


async def _pump_outbound(websocket: WebSocket, connection: RealtimeConnection) -> None:
    while True:
        message = await connection.queue.get()
        await websocket.send_json(message)


async def _pump_inbound(websocket: WebSocket, connection: RealtimeConnection, hub: RealtimeHub) -> None:
    while True:
        raw = await websocket.receive_text()
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            continue
        if isinstance(message, dict):
            hub.handle_client_event(connection, message)


@router.websocket("/ws")
async def realtime_websocket(websocket: WebSocket) -> None:
    await websocket.accept()
    user_id = await _authenticate_websocket(websocket)
    if user_id is None:
        return

    hub = _hub_from(websocket.app)
    connection = hub.add(user_id, "websocket")
    await websocket.send_json({"type": "connected", "connection_id": connection.connection_id})

    tasks = [
        asyncio.create_task(_pump_outbound(websocket, connection)),
        asyncio.create_task(_pump_inbound(websocket, connection, hub)),
    ]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.warning(f"Realtime connection {connection.connection_id} failed: {exc}")
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        hub.remove(connection.connection_id)


@router.post("/poll", response_model=PollOpenResponse)
async def open_poll_session(body: PollOpenRequest, request: Request) -> PollOpenResponse:
    """Open a long-polling session authenticated by the body token."""
    user_id = decode_session_token(body.token)
    hub = _hub_from(request.app)
    hub.prune_idle(POLL_IDLE_SECONDS)
    connection = hub.add(user_id, "polling")
    return PollOpenResponse(sid=connection.connection_id)


def _poll_connection(hub: RealtimeHub, sid: str) -> RealtimeConnection:
    connection = hub.get(sid)
    if connection is None or connection.transport != "polling":
        raise HTTPException(status_code=404, detail="Unknown session")
    connection.touch()
    return connection


@router.get("/poll/{sid}", response_model=PollEventsResponse)
async def poll_events(
    sid: str,
    request: Request,
    timeout: float = Query(25.0, gt=0, le=60),
) -> PollEventsResponse:
    """Wait up to ``timeout`` seconds for events queued on the session."""
    connection = _poll_connection(_hub_from(request.app), sid)

    events: List[Dict[str, Any]] = []
    try:
        events.append(await asyncio.wait_for(connection.queue.get(), timeout=timeout))
    except asyncio.TimeoutError:
        return PollEventsResponse(events=[])

    while not connection.queue.empty():
        events.append(connection.queue.get_nowait())
    connection.touch()
    return PollEventsResponse(events=events)


@router.post("/poll/{sid}")
async def send_poll_event(sid: str, event: ClientEvent, request: Request) -> Dict[str, bool]:
    hub = _hub_from(request.app)
    connection = _poll_connection(hub, sid)
    hub.handle_client_event(connection, event.model_dump())
    return {"ok": True}


@router.delete("/poll/{sid}")
async def close_poll_session(sid: str, request: Request) -> Dict[str, bool]:
    hub = _hub_from(request.app)
    _poll_connection(hub, sid)
    hub.remove(sid)
    return {"ok": True}
