"""Shared test fixtures for the CloudIDE Runner test suite.

Guest programs in tests are Python scripts run with the current interpreter,
so the suite does not need Node.js or npm.
"""

from __future__ import annotations

import os
import socket
import sys
import tempfile

from collections.abc import Generator
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest

# ============================================================================
# EARLY INITIALIZATION: Runs before test collection
# ============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Point settings at throwaway locations before any cloudide module is imported.

    ``cloudide.utils.logger`` configures logging at import time and
    ``cloudide.api.main`` builds an app, both from the cached settings.
    """
    scratch = tempfile.mkdtemp(prefix="cloudide-tests-")
    os.environ["APP_ENV"] = "test"
    os.environ["LOG_DIR"] = ""
    os.environ["WORKSPACE_ROOT"] = str(Path(scratch) / "workspaces")
    cfg: Any = config
    cfg._cloudide_scratch = scratch


# ============================================================================
# Test Isolation: Settings Management (MUST BE FIRST)
# ============================================================================


@pytest.fixture(autouse=True)
def reset_settings_singleton() -> Generator[None, None, None]:
    """Reset the settings singleton so each test sees a fresh environment."""
    from cloudide.core.constants import clear_settings_cache

    clear_settings_cache()
    yield
    clear_settings_cache()


# ============================================================================
# Helpers
# ============================================================================


def free_port() -> int:
    """A TCP port that nothing is listening on right now."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return int(sock.getsockname()[1])


#: Guest HTTP server used by proxy and end-to-end tests.
GUEST_HTTP_SERVER = """\
import http.server
import os

class Handler(http.server.BaseHTTPRequestHandler):
    def _reply(self, body):
        self.send_response(200)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Set-Cookie", "a=1")
        self.send_header("Set-Cookie", "b=2")
        self.send_header("X-Guest-Host", self.headers.get("X-Forwarded-Host", ""))
        self.end_headers()
        self.wfile.write(body)

    def do_GET(self):
        self._reply(f"hello from {self.path}".encode())

    def do_POST(self):
        length = int(self.headers.get("Content-Length", "0"))
        self._reply(b"echo:" + self.rfile.read(length))

    def log_message(self, *args):
        pass

port = int(os.environ["PORT"])
server = http.server.HTTPServer(("127.0.0.1", port), Handler)
print(f"listening on {port}", flush=True)
server.serve_forever()
"""


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def workspace_root(tmp_path: Path) -> Path:
    root = tmp_path / "workspaces"
    root.mkdir()
    return root


@pytest.fixture
def test_settings(workspace_root: Path) -> Any:
    """Settings for running Python guests: ``<python> main.py``."""
    from cloudide.core.constants import Settings

    return Settings(
        log_dir="",
        workspace_root=str(workspace_root),
        port_range_start=free_port(),
        runtime_command=f'"{sys.executable}" -u',
        entry_point="main.py",
        kill_grace_period=1.0,
        respawn_settle_delay=0.01,
        ws_keepalive_interval=3600,
    )


@pytest.fixture
def mock_installer() -> Any:
    """Installer that succeeds without touching a package manager."""
    from cloudide.core.installer import InstallResult, PackageInstaller

    installer = AsyncMock(spec=PackageInstaller)
    installer.install.return_value = InstallResult(success=True, exit_code=0)
    return installer


@pytest.fixture
def guest_http_server() -> str:
    """Source of a guest HTTP server (``main.py``) that listens on ``$PORT``."""
    return GUEST_HTTP_SERVER
