"""
API v1 Router - Aggregates all v1 endpoints.

Usage in main.py:
    from cloudide.api.routes.v1 import router as v1_router
    app.include_router(v1_router, prefix="/api/v1")
"""

from fastapi import APIRouter

from cloudide.api.routes.v1 import sessions

# Create the v1 API router
router = APIRouter()

# Session introspection
router.include_router(
    sessions.router,
    tags=["Sessions"],
)

__all__ = ["router"]
