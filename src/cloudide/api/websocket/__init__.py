"""WebSocket connection management for the editor channel."""

from cloudide.api.websocket.errors import WSCloseCode, close_with_error, send_ws_error
from cloudide.api.websocket.manager import WebSocketManager

__all__ = ["WSCloseCode", "WebSocketManager", "close_with_error", "send_ws_error"]
