"""
Session introspection endpoints (v1).

Read-only view of live sessions for operators: allocated port, supervisor
state and guest process id.
"""

from __future__ import annotations

from fastapi import APIRouter

from cloudide.api.dependencies import Sessions
from cloudide.api.services.session_service import SessionService
from cloudide.models.schemas.sessions import SessionListResponse, SessionResponse

router = APIRouter()


def _describe(sessions: SessionService, session_id: str) -> SessionResponse:
    session = sessions.get(session_id)
    supervisor = sessions.supervisor(session_id)
    return SessionResponse(
        session_id=session.session_id,
        port=session.port,
        state=supervisor.state.value,
        pid=supervisor.pid,
        preview_path=session.preview_path,
        created_at=session.created_at,
    )


@router.get(
    "/sessions",
    response_model=SessionListResponse,
    summary="List sessions",
    description="List every open session with its port and guest process state.",
)
async def list_sessions(sessions: Sessions) -> SessionListResponse:
    items = [_describe(sessions, s.session_id) for s in sessions.all_sessions()]
    return SessionListResponse(sessions=items, total_count=len(items))


@router.get(
    "/sessions/{session_id}",
    response_model=SessionResponse,
    summary="Get session",
    responses={404: {"description": "No open session with this id"}},
)
async def get_session(session_id: str, sessions: Sessions) -> SessionResponse:
    """Describe one session. Unknown ids return the standard 404 error envelope."""
    return _describe(sessions, session_id)
