"""
Session introspection API schemas.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class SessionResponse(BaseModel):
    """One live session and its guest process."""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "session_id": "pX3dQ0r9ZlJf8w2Ma1bC",
                "port": 3001,
                "state": "running",
                "pid": 48213,
                "preview_path": "/preview/pX3dQ0r9ZlJf8w2Ma1bC/",
                "created_at": "2025-01-15T10:30:00Z",
            }
        }
    )

    session_id: str = Field(..., description="Connection id")
    port: int = Field(..., description="Port allocated to the guest")
    state: str = Field(..., description="Supervisor state")
    pid: int | None = Field(default=None, description="Guest process id, if one is live")
    preview_path: str = Field(..., description="Path the guest server is proxied under")
    created_at: datetime = Field(..., description="When the connection opened")


class SessionListResponse(BaseModel):
    """All live sessions."""

    sessions: list[SessionResponse] = Field(default_factory=list)
    total_count: int = Field(default=0, ge=0)
