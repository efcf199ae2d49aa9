"""
Session lifecycle for editor connections.

A session is opened when a WebSocket connects and closed when it goes away.
Opening allocates a port and builds the session's process supervisor;
closing releases the port, kills the guest and deletes the scratch directory.
"""

from __future__ import annotations

import asyncio
import secrets

from collections.abc import Mapping
from functools import partial

from cloudide.api.middleware.exception_handlers import SessionNotFoundError
from cloudide.api.websocket.manager import WebSocketManager
from cloudide.core.constants import Settings
from cloudide.core.dependency_scan import DependencyResolver
from cloudide.core.installer import PackageInstaller
from cloudide.core.registry import SessionRegistry
from cloudide.core.supervisor import GuestProcessSupervisor
from cloudide.core.workspace import WorkspaceManager
from cloudide.models.event_models import OutboundMessage
from cloudide.models.session_models import Session
from cloudide.utils.logger import logger


def new_session_id() -> str:
    """Opaque, URL-safe connection id (20 characters)."""
    return secrets.token_urlsafe(15)


class SessionService:
    """Opens, runs and tears down sessions. One instance per application."""

    def __init__(
        self,
        registry: SessionRegistry,
        workspace: WorkspaceManager,
        resolver: DependencyResolver,
        installer: PackageInstaller,
        ws_manager: WebSocketManager,
        settings: Settings,
    ) -> None:
        self.registry = registry
        self.workspace = workspace
        self.resolver = resolver
        self.installer = installer
        self.ws_manager = ws_manager
        self.settings = settings
        self._sessions: dict[str, Session] = {}
        self._supervisors: dict[str, GuestProcessSupervisor] = {}

    def open_session(self, session_id: str | None = None) -> Session:
        """Register a session and allocate its port.

        Raises:
            ValueError: If the session id is already in use.
        """
        session_id = session_id or new_session_id()
        workdir = self.workspace.path_for(session_id)
        port = self.registry.allocate(session_id)

        session = Session(session_id=session_id, port=port, workspace=workdir)
        self._sessions[session_id] = session
        self._supervisors[session_id] = GuestProcessSupervisor.from_settings(
            session,
            self.workspace,
            self.resolver,
            self.installer,
            partial(self._deliver, session_id),
            self.settings,
        )
        logger.info(f"Session {session_id} opened on port {port}", session_id=session_id, port=port)
        return session

    async def close_session(self, session_id: str) -> None:
        """Release every resource held by a session. Safe to call more than once."""
        supervisor = self._supervisors.pop(session_id, None)
        session = self._sessions.pop(session_id, None)
        port = self.registry.release(session_id)

        if supervisor is not None:
            await supervisor.kill()
        if session is not None:
            removed = await asyncio.to_thread(self.workspace.remove, session_id)
            if not removed:
                logger.warning(f"Workspace of session {session_id} left behind", session_id=session_id)
            logger.info(f"Session {session_id} closed (port {port} released)", session_id=session_id)

    async def run(self, session_id: str, files: Mapping[str, str]) -> asyncio.Task[None]:
        """Start a run, replacing the session's current one."""
        return await self.supervisor(session_id).submit(files)

    async def stop(self, session_id: str) -> None:
        await self.supervisor(session_id).kill()

    def get(self, session_id: str) -> Session:
        """Look up a live session.

        Raises:
            SessionNotFoundError: If no such session is open.
        """
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def supervisor(self, session_id: str) -> GuestProcessSupervisor:
        supervisor = self._supervisors.get(session_id)
        if supervisor is None:
            raise SessionNotFoundError(session_id)
        return supervisor

    def all_sessions(self) -> list[Session]:
        return sorted(self._sessions.values(), key=lambda s: s.created_at)

    @property
    def count(self) -> int:
        return len(self._sessions)

    async def shutdown(self) -> None:
        """Close every open session."""
        session_ids = list(self._sessions)
        if session_ids:
            logger.info(f"Closing {len(session_ids)} session(s)")
            await asyncio.gather(*(self.close_session(sid) for sid in session_ids))
        await asyncio.to_thread(self.workspace.purge_trash)

    async def _deliver(self, session_id: str, message: OutboundMessage) -> None:
        await self.ws_manager.send(session_id, message.to_dict())
