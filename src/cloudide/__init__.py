"""
CloudIDE Runner - Session execution orchestrator for a browser code playground
===============================================================================

FastAPI service that runs small multi-file programs submitted over a WebSocket
in per-session scratch directories and exposes whatever HTTP server they start
through a per-session preview URL.

Key Features:
    - **Session Lifecycle**: One session per WebSocket connection, with its own port and workspace
    - **Run Pipeline**: Workspace reset, dependency scan, package install, supervised spawn
    - **Live Output**: Guest stdout/stderr streamed back as output events
    - **Preview Proxy**: ``/preview/<session_id>/...`` forwarded to the guest's port
    - **Enterprise Logging**: Structured JSON logs with rotation and session correlation

Modules:
    api: FastAPI routes, services, middleware, and WebSocket handling
    core: Registry, workspace, dependency scan, installer, process supervisor, settings
    models: Pydantic models for the WebSocket protocol and API responses
    utils: Logging, metrics, terminal formatting
"""

__version__ = "1.0.0"
