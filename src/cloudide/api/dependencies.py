from __future__ import annotations

from typing import Annotated

import httpx

from fastapi import Depends, Request

from cloudide.api.services.session_service import SessionService
from cloudide.api.websocket.manager import WebSocketManager
from cloudide.core.constants import Settings
from cloudide.core.registry import SessionRegistry


def get_registry(request: Request) -> SessionRegistry:
    """Get the session registry from application state."""
    return request.app.state.registry


def get_session_service(request: Request) -> SessionService:
    """Get the session service from application state."""
    return request.app.state.session_service


def get_app_settings(request: Request) -> Settings:
    """Get the settings the application was created with."""
    return request.app.state.settings


def get_ws_manager(request: Request) -> WebSocketManager:
    return request.app.state.ws_manager


def get_proxy_client(request: Request) -> httpx.AsyncClient:
    """Get the shared HTTP client used by the preview proxy."""
    return request.app.state.proxy_client


# Type aliases for cleaner route signatures
AppSettings = Annotated[Settings, Depends(get_app_settings)]
Registry = Annotated[SessionRegistry, Depends(get_registry)]
Sessions = Annotated[SessionService, Depends(get_session_service)]
WSManager = Annotated[WebSocketManager, Depends(get_ws_manager)]
ProxyClient = Annotated[httpx.AsyncClient, Depends(get_proxy_client)]
