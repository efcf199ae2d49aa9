from __future__ import annotations

import asyncio

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from cloudide.api.middleware.request_context import create_websocket_context
from cloudide.api.services.session_service import SessionService, new_session_id
from cloudide.api.websocket.errors import WSCloseCode, close_with_error, send_ws_error
from cloudide.api.websocket.manager import WebSocketManager
from cloudide.models.error_models import ErrorCode
from cloudide.models.event_models import Ping, RunRequest, SessionReady, StopRequest, parse_inbound
from cloudide.utils.logger import logger
from cloudide.utils.metrics import ws_messages_total

router = APIRouter()


@router.websocket("/ws")
async def editor_websocket(websocket: WebSocket) -> None:
    """Editor channel: one session per connection, torn down when the connection ends."""
    ws_manager: WebSocketManager = websocket.app.state.ws_manager
    sessions: SessionService = websocket.app.state.session_service

    session_id = new_session_id()
    client_ip = websocket.client.host if websocket.client else None
    create_websocket_context(session_id=session_id, client_ip=client_ip)

    # Connect with limits checking - returns False if connection rejected
    if not await ws_manager.connect(websocket, session_id):
        # The socket was not accepted yet; accept so the error and close code reach the client
        await websocket.accept()
        await close_with_error(
            websocket,
            code=ErrorCode.WS_CONNECTION_LIMIT,
            message="Service unavailable - connection limit reached",
            session_id=session_id,
        )
        return

    try:
        session = sessions.open_session(session_id)
        await ws_manager.send(
            session_id,
            SessionReady(session_id=session_id, port=session.port, preview_path=session.preview_path).to_dict(),
        )

        interval = websocket.app.state.settings.ws_keepalive_interval
        keepalive_task = asyncio.create_task(_keepalive(ws_manager, session_id, interval))
        try:
            while True:
                raw = await _receive_frame(websocket)
                # Update activity timestamp on any message
                await ws_manager.touch(session_id)
                ws_messages_total.labels(direction="inbound").inc()
                await _dispatch(websocket, sessions, session_id, raw)
        finally:
            keepalive_task.cancel()
    except WebSocketDisconnect:
        pass  # Normal client disconnect
    except RuntimeError as e:
        # Handle "WebSocket is not connected" errors gracefully
        if "not connected" not in str(e).lower() and "accept" not in str(e).lower():
            raise
    finally:
        await ws_manager.disconnect(session_id)
        await sessions.close_session(session_id)


async def _receive_frame(websocket: WebSocket) -> str | bytes:
    """Next text or binary frame; raises WebSocketDisconnect when the client goes away."""
    message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(message.get("code", WSCloseCode.NORMAL), message.get("reason"))
    if message.get("text") is not None:
        return message["text"]
    return message.get("bytes") or b""


async def _dispatch(websocket: WebSocket, sessions: SessionService, session_id: str, raw: str | bytes) -> None:
    try:
        message = parse_inbound(raw)
    except ValidationError as e:
        logger.info(f"Rejected message on session {session_id}: {e.error_count()} validation error(s)")
        await send_ws_error(
            websocket,
            code=ErrorCode.WS_MESSAGE_INVALID,
            message="Invalid message",
            session_id=session_id,
            recoverable=True,
            details={"errors": [err["msg"] for err in e.errors()]},
        )
        return

    if isinstance(message, RunRequest):
        logger.info(f"Run requested on session {session_id} ({len(message.files)} files)")
        await sessions.run(session_id, message.files)
    elif isinstance(message, StopRequest):
        logger.info(f"Stop requested on session {session_id}")
        await sessions.stop(session_id)


async def _keepalive(ws_manager: WebSocketManager, session_id: str, interval: float) -> None:
    """Send periodic ping messages."""
    while True:
        await asyncio.sleep(interval)
        if not await ws_manager.send(session_id, Ping().to_dict()):
            break
