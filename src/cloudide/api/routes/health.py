"""
Health endpoints.

``/health`` keeps the response shape the editor frontend polls:
``{"status": "ok", "connections": <live sessions>}``.
"""

from __future__ import annotations

from fastapi import APIRouter

from cloudide.api.dependencies import Registry
from cloudide.models.schemas.health import HealthResponse, LivenessResponse

router = APIRouter()


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Reports that the orchestrator is up and how many sessions are registered.",
)
async def health_check(registry: Registry) -> HealthResponse:
    return HealthResponse(status="ok", connections=registry.count)


@router.get("/health/live", response_model=LivenessResponse)
async def liveness_check() -> LivenessResponse:
    """Kubernetes-style liveness probe (just confirms process is running)."""
    return LivenessResponse(alive=True)
