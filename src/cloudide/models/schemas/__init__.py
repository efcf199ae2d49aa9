"""
API response schemas for CloudIDE Runner.
"""

from cloudide.models.schemas.health import HealthResponse, LivenessResponse
from cloudide.models.schemas.sessions import SessionListResponse, SessionResponse

__all__ = [
    "HealthResponse",
    "LivenessResponse",
    "SessionListResponse",
    "SessionResponse",
]
