"""
Health check API schemas.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class HealthResponse(BaseModel):
    """Orchestrator health with the number of live sessions."""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "status": "ok",
                "connections": 3,
            }
        }
    )

    status: Literal["ok"] = Field(default="ok", description="Overall status")
    connections: int = Field(..., ge=0, description="Sessions currently registered")


class LivenessResponse(BaseModel):
    """Kubernetes-style liveness probe response."""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "alive": True,
            }
        }
    )

    alive: bool = Field(
        default=True,
        description="Process is running",
        json_schema_extra={"example": True},
    )
