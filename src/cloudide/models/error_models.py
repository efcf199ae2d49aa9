"""
Standardized error response models for CloudIDE Runner.

Provides consistent error formatting across REST and WebSocket endpoints
with support for request tracking and error categorization.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

from cloudide.core.constants import MSG_TYPE_ERROR


class ErrorCode(str, Enum):
    """Application-specific error codes for categorization."""

    # Validation errors (2xxx)
    VALIDATION_ERROR = "VAL_2001"

    # Resource errors (3xxx)
    RESOURCE_NOT_FOUND = "RES_3001"

    # Session errors (4xxx)
    SESSION_NOT_FOUND = "SES_4001"

    # WebSocket errors (6xxx)
    WS_MESSAGE_INVALID = "WS_6002"
    WS_CONNECTION_LIMIT = "WS_6006"

    # Upstream errors (7xxx)
    UPSTREAM_UNREACHABLE = "PROC_7002"

    # Internal errors (9xxx)
    INTERNAL_ERROR = "INT_9001"
    INTERNAL_UNEXPECTED = "INT_9999"


class ErrorDetail(BaseModel):
    """Detailed information about a specific validation or sub-error."""

    field: str | None = None
    message: str
    code: str | None = None
    value: Any | None = Field(default=None, exclude=True)  # Excluded from response for security


class ErrorResponse(BaseModel):
    """Standardized error response model for REST endpoints.

    Example response:
    {
        "error": {
            "code": "SES_4001",
            "message": "Session not found: abc",
            "request_id": "req_abc123",
            "timestamp": "2025-01-15T10:30:00Z",
            "path": "/api/v1/sessions/abc"
        }
    }
    """

    code: ErrorCode
    message: str
    request_id: str | None = None
    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    details: list[ErrorDetail] | None = None
    path: str | None = None
    # Debug info - only included in development mode
    debug: dict[str, Any] | None = Field(default=None, exclude=True)

    def to_dict(self, include_debug: bool = False) -> dict[str, Any]:
        """Convert to dictionary for JSON response.

        Args:
            include_debug: Include debug information (only in development)
        """
        data = self.model_dump(mode="json", exclude_none=True)
        if include_debug and self.debug:
            data["debug"] = self.debug
        return {"error": data}


class WebSocketError(BaseModel):
    """Error format for WebSocket messages.

    Sent as a JSON message with type="error" over WebSocket connections.

    Example:
    {
        "type": "error",
        "code": "WS_6002",
        "message": "Invalid message format",
        "request_id": "ws_abc123",
        "recoverable": true,
        "session_id": "Xy3..."
    }
    """

    type: Literal["error"] = MSG_TYPE_ERROR
    code: ErrorCode
    message: str
    request_id: str | None = None
    session_id: str | None = None
    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    recoverable: bool = True  # Hint to client if reconnection might help
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for WebSocket JSON message."""
        return self.model_dump(mode="json", exclude_none=True)


# HTTP status code mappings for error codes
ERROR_CODE_TO_STATUS: dict[ErrorCode, int] = {
    # 404 Not Found
    ErrorCode.RESOURCE_NOT_FOUND: 404,
    ErrorCode.SESSION_NOT_FOUND: 404,
    # 422 Unprocessable Entity
    ErrorCode.VALIDATION_ERROR: 422,
    # 500 Internal Server Error
    ErrorCode.INTERNAL_ERROR: 500,
    ErrorCode.INTERNAL_UNEXPECTED: 500,
    # 502 Bad Gateway
    ErrorCode.UPSTREAM_UNREACHABLE: 502,
    # 503 Service Unavailable
    ErrorCode.WS_CONNECTION_LIMIT: 503,
}


def get_status_code(error_code: ErrorCode) -> int:
    """Get HTTP status code for an error code."""
    return ERROR_CODE_TO_STATUS.get(error_code, 500)


__all__ = [
    "ERROR_CODE_TO_STATUS",
    "ErrorCode",
    "ErrorDetail",
    "ErrorResponse",
    "WebSocketError",
    "get_status_code",
]
