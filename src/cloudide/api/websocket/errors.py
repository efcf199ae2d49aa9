"""
WebSocket error handling utilities for CloudIDE Runner.

Provides consistent error formatting for WebSocket connections,
with recovery hints and session-aware context.
"""

from __future__ import annotations

import contextlib

from typing import Any

from fastapi import WebSocket

from cloudide.api.middleware.request_context import get_request_id
from cloudide.models.error_models import ErrorCode, WebSocketError
from cloudide.utils.logger import logger


# WebSocket close codes (RFC 6455 + application-specific)
class WSCloseCode:
    """WebSocket close codes for error scenarios."""

    # Standard codes
    NORMAL = 1000
    GOING_AWAY = 1001
    TRY_AGAIN_LATER = 1013

    # Application-specific codes (4000-4999)
    IDLE_TIMEOUT = 4000
    SERVER_ERROR = 4500


# Map error codes to WebSocket close codes
ERROR_CODE_TO_WS_CLOSE: dict[ErrorCode, int] = {
    ErrorCode.WS_CONNECTION_LIMIT: WSCloseCode.TRY_AGAIN_LATER,
    ErrorCode.INTERNAL_ERROR: WSCloseCode.SERVER_ERROR,
}


async def send_ws_error(
    websocket: WebSocket,
    code: ErrorCode,
    message: str,
    session_id: str | None = None,
    recoverable: bool = True,
    details: dict[str, Any] | None = None,
) -> None:
    """Send a standardized error message over WebSocket.

    Args:
        websocket: Active WebSocket connection
        code: Application error code
        message: Human-readable error message
        session_id: Associated session ID (if any)
        recoverable: Whether the client should attempt to recover
        details: Additional error context
    """
    error = WebSocketError(
        code=code,
        message=message,
        request_id=get_request_id(),
        session_id=session_id,
        recoverable=recoverable,
        details=details,
    )

    try:
        await websocket.send_json(error.to_dict())
    except Exception as e:
        # Connection may already be closed
        logger.warning(f"Failed to send WebSocket error: {e}")


async def close_with_error(
    websocket: WebSocket,
    code: ErrorCode,
    message: str,
    session_id: str | None = None,
) -> None:
    """Send error message and close WebSocket connection.

    Args:
        websocket: Active WebSocket connection
        code: Application error code
        message: Human-readable error message
        session_id: Associated session ID (if any)
    """
    await send_ws_error(
        websocket,
        code=code,
        message=message,
        session_id=session_id,
        recoverable=False,
    )

    ws_close_code = ERROR_CODE_TO_WS_CLOSE.get(code, WSCloseCode.SERVER_ERROR)
    with contextlib.suppress(Exception):
        await websocket.close(code=ws_close_code, reason=message.encode("utf-8")[:123].decode("utf-8", errors="ignore"))


__all__ = [
    "ERROR_CODE_TO_WS_CLOSE",
    "WSCloseCode",
    "close_with_error",
    "send_ws_error",
]
