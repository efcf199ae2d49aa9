from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import make_asgi_app

from cloudide import __version__
from cloudide.api.middleware.exception_handlers import register_exception_handlers
from cloudide.api.middleware.request_context import RequestContextMiddleware
from cloudide.api.routes import gateway, health, preview
from cloudide.api.routes.preview import create_proxy_client
from cloudide.api.routes.v1 import router as v1_router
from cloudide.api.services.session_service import SessionService
from cloudide.api.websocket.manager import WebSocketManager
from cloudide.core.constants import Settings, get_settings
from cloudide.core.dependency_scan import RegexDependencyResolver
from cloudide.core.installer import PackageInstaller
from cloudide.core.registry import SessionRegistry
from cloudide.core.workspace import WorkspaceManager
from cloudide.utils.logger import configure_uvicorn_logging, logger


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the orchestrator application.

    Args:
        settings: Configuration to use instead of the cached environment settings
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan: startup and shutdown with graceful handling."""
        workspace = WorkspaceManager(settings.workspace_path)
        workspace.root.mkdir(parents=True, exist_ok=True)
        workspace.purge_trash()

        app.state.settings = settings
        app.state.registry = SessionRegistry(settings.port_range_start)
        app.state.ws_manager = WebSocketManager(
            idle_timeout_seconds=settings.ws_idle_timeout,
            max_connections=settings.ws_max_connections,
        )
        app.state.session_service = SessionService(
            registry=app.state.registry,
            workspace=workspace,
            resolver=RegexDependencyResolver(),
            installer=PackageInstaller(settings.package_manager, timeout=settings.install_timeout),
            ws_manager=app.state.ws_manager,
            settings=settings,
        )
        app.state.proxy_client = create_proxy_client(settings)
        await app.state.ws_manager.start_idle_checker()

        logger.info(
            f"Orchestrator ready: workspaces in {workspace.root}, "
            f"ports from {settings.port_range_start}, runtime '{settings.runtime_command} {settings.entry_point}'"
        )

        try:
            yield
        finally:
            logger.info("Initiating graceful shutdown sequence")

            # Phase 1: Stop accepting new WebSocket connections and drain existing
            await app.state.ws_manager.graceful_shutdown(timeout=settings.shutdown_connection_drain_timeout)

            # Phase 2: Kill every guest process and delete the scratch directories
            await app.state.session_service.shutdown()

            # Phase 3: Close the preview proxy client
            await app.state.proxy_client.aclose()
            logger.info("Shutdown complete")

    app = FastAPI(
        title="CloudIDE Runner",
        description="""
## CloudIDE Runner

Session execution orchestrator for the browser editor: runs submitted
programs as supervised guest processes, streams their console output over a
WebSocket and proxies the HTTP servers they start.

### Interfaces
- **WebSocket** `/ws`: one session per connection (`run`, `stop` in; `session-ready`, `output`, `process-exit` out)
- **Preview** `/preview/{session_id}/...`: reverse proxy to the session's guest server
- **Sessions** `/api/v1/sessions`: read-only introspection
""",
        version=__version__,
        lifespan=lifespan,
        openapi_tags=[
            {
                "name": "Health",
                "description": "Health check endpoints for monitoring and orchestration",
            },
            {
                "name": "Sessions",
                "description": "Live session introspection",
            },
        ],
        openapi_url="/api/v1/openapi.json",
        docs_url="/api/v1/docs",
        redoc_url="/api/v1/redoc",
    )

    # Register global exception handlers for consistent error responses
    register_exception_handlers(app)

    # Request context middleware (adds request ID tracking)
    # Note: Middleware is executed in reverse order of registration
    app.add_middleware(RequestContextMiddleware)

    # CORS for the editor frontend
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_origin_regex=settings.cors_allow_origin_regex,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routes
    app.include_router(health.router, tags=["Health"])
    app.include_router(v1_router, prefix="/api/v1")
    app.include_router(preview.router)

    # WebSocket routes (not versioned - protocol-level)
    app.include_router(gateway.router, tags=["WebSocket"])

    # Prometheus exposition
    app.mount("/metrics", make_asgi_app())

    return app


# Configure uvicorn logging at module level to ensure workers use it
configure_uvicorn_logging()

app = create_app()


def run() -> None:
    """Serve the orchestrator with uvicorn (``cloudide-runner`` console script)."""
    import uvicorn

    settings = get_settings()
    # Only watch src/ - guest programs write into the workspace root
    uvicorn.run(
        "cloudide.api.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        reload_dirs=["src"],
        log_config=None,
    )


if __name__ == "__main__":
    run()
