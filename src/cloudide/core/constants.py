"""
Constants and configuration for CloudIDE Runner.
Centralizes all magic numbers and configuration values.
Includes Pydantic validation for environment variables.
"""

from __future__ import annotations

import os
import shlex
import threading

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic_settings.sources import (
    DotEnvSettingsSource,
    PydanticBaseSettingsSource,
)

# ============================================================================
# Guest Runtime Configuration
# ============================================================================

#: File that must exist in the workspace for a run to spawn a guest process.
DEFAULT_ENTRY_POINT = "index.js"

#: Executable used to start the guest program (``node index.js``).
DEFAULT_RUNTIME_COMMAND = "node"

#: Package manager used to install detected dependencies.
DEFAULT_PACKAGE_MANAGER = "npm"

#: Environment variable through which the allocated port reaches the guest.
GUEST_PORT_ENV_VAR = "PORT"

#: First port handed out by the session registry.
#: Ports below this are reserved for the orchestrator and the editor frontend.
DEFAULT_PORT_RANGE_START = 3001

#: Node.js core modules. Specifiers in this set are never installed.
#: The first row is the list the editor has always shipped with; the rest
#: completes it with the remaining core modules so they are not sent to npm.
BUILTIN_MODULES: frozenset[str] = frozenset(
    {
        "fs", "path", "http", "os", "crypto", "util", "events", "stream", "url",
        "querystring", "net", "dns", "child_process",
        "assert", "async_hooks", "buffer", "cluster", "console", "constants",
        "dgram", "diagnostics_channel", "domain", "http2", "https", "inspector",
        "module", "perf_hooks", "process", "punycode", "readline", "repl",
        "string_decoder", "sys", "timers", "tls", "trace_events", "tty", "v8",
        "vm", "wasi", "worker_threads", "zlib",
    }
)  # fmt: skip

#: Prefix that marks a specifier as a core module regardless of its name.
BUILTIN_MODULE_PREFIX = "node:"

# ============================================================================
# Process Supervision
# ============================================================================

#: Seconds to wait for a guest to exit after SIGTERM before escalating to SIGKILL.
DEFAULT_KILL_GRACE_PERIOD = 2.0

#: Seconds to wait after a confirmed kill before spawning the replacement.
#: Gives the OS time to release the port and any file locks.
DEFAULT_RESPAWN_SETTLE_DELAY = 0.1

#: Bytes read from a guest pipe per output event.
OUTPUT_CHUNK_SIZE = 4096

# ============================================================================
# Workspace Configuration
# ============================================================================

#: Subdirectory of the workspace root holding directories that could not be
#: deleted yet (a dying guest still had them open).
WORKSPACE_TRASH_DIR = ".trash"

#: Allowed characters for session ids that become directory names.
SESSION_ID_PATTERN = r"^[A-Za-z0-9_-]{1,128}$"

# ============================================================================
# Preview Proxy Configuration
# ============================================================================

#: HTTP methods forwarded by the preview router.
PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]

#: Hop-by-hop headers (RFC 7230 section 6.1) never forwarded in either direction.
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)

# ============================================================================
# Logging Configuration
# ============================================================================

#: Maximum size in bytes for log files before rotation (10MB).
#: When a log file reaches this size, it's rotated to .log.1, .log.2, etc.
LOG_MAX_SIZE = 10 * 1024 * 1024

#: Number of server log backups to retain during rotation.
LOG_BACKUP_COUNT_SERVER = 5

#: Number of error log backups to retain during rotation.
LOG_BACKUP_COUNT_ERRORS = 3

#: Length of the component id attached to log records outside any request.
SESSION_ID_LENGTH = 8

# ============================================================================
# WebSocket Message Types
# ============================================================================

MSG_TYPE_RUN = "run"
MSG_TYPE_STOP = "stop"
MSG_TYPE_SESSION_READY = "session-ready"
MSG_TYPE_OUTPUT = "output"
MSG_TYPE_PROCESS_EXIT = "process-exit"
MSG_TYPE_ERROR = "error"
MSG_TYPE_PING = "ping"
MSG_TYPE_SERVER_SHUTDOWN = "server-shutdown"

# ============================================================================
# Environment Configuration with Pydantic Validation
# ============================================================================

#: Package directory for .env file resolution
_PACKAGE_DIR = Path(__file__).parent.parent


def _get_env_files() -> list[Path]:
    """Determine which .env files to load based on APP_ENV.

    Load order (later files override earlier - pydantic-settings last-wins):
    1. .env (base defaults) - lowest priority
    2. .env.{environment} (environment-specific overrides)
    3. .env.local (local developer overrides, gitignored) - highest priority

    Files are looked up in the working directory first, then next to the package.

    Returns:
        List of Path objects for env files that exist.
    """
    env_name = os.getenv("APP_ENV", "development").lower()
    if env_name not in ("development", "production", "test"):
        env_name = "development"

    names = [".env", f".env.{env_name}", ".env.local"]
    candidates = [Path.cwd() / name for name in names]
    if Path.cwd() != _PACKAGE_DIR:
        candidates = [_PACKAGE_DIR / name for name in names] + candidates
    return [p for p in candidates if p.exists()]


def _reload_dotenv_into_environ() -> None:
    """Reload our dotenv files into os.environ so environment-specific values win.

    Must be called BEFORE Settings() instantiation.
    """
    from dotenv import load_dotenv

    for env_file in _get_env_files():
        load_dotenv(env_file, override=True)


class Settings(BaseSettings):
    """Environment settings with validation and environment-specific file support.

    Configuration priority (highest to lowest):
    1. Values passed to Settings() constructor
    2. Environment variables (standard Docker/K8s behavior)
    3. .env.local > .env.{APP_ENV} > .env (dotenv files, last wins)

    Set APP_ENV environment variable to control which environment config to load:
    - development (default): Local development settings
    - production: Production settings
    - test: Test environment settings

    Validates at startup to fail fast on configuration errors.
    """

    # Debug and logging
    debug: bool = Field(default=False, description="Enable debug logging")
    log_dir: str = Field(default="logs", description="Directory for rotating JSON log files (empty disables)")

    # API server
    host: str = Field(default="0.0.0.0", description="Bind address of the orchestrator")
    port: int = Field(default=4000, description="Orchestrator HTTP/WebSocket port (env PORT)")

    # Sessions and workspaces
    workspace_root: str = Field(default="temp", description="Directory holding per-session scratch directories")
    port_range_start: int = Field(
        default=DEFAULT_PORT_RANGE_START,
        description="First port handed to a session (monotonic counter, never reused)",
    )

    # Guest runtime
    entry_point: str = Field(default=DEFAULT_ENTRY_POINT, description="File the guest runtime is started with")
    runtime_command: str = Field(
        default=DEFAULT_RUNTIME_COMMAND,
        description="Guest runtime command; may include arguments (e.g. 'node --enable-source-maps')",
    )
    package_manager: str = Field(default=DEFAULT_PACKAGE_MANAGER, description="Package manager for dependencies")
    install_timeout: float | None = Field(
        default=None,
        description="Upper bound for dependency installation (seconds, unset = no limit)",
    )
    run_timeout: float | None = Field(
        default=None,
        description="Upper bound for a guest process lifetime (seconds, unset = no limit)",
    )
    kill_grace_period: float = Field(
        default=DEFAULT_KILL_GRACE_PERIOD,
        description="Seconds between SIGTERM and SIGKILL when stopping a guest",
    )
    respawn_settle_delay: float = Field(
        default=DEFAULT_RESPAWN_SETTLE_DELAY,
        description="Pause after a confirmed kill before the replacement is spawned (seconds)",
    )

    # Preview proxy
    preview_host: str = Field(default="127.0.0.1", description="Host guest processes are reached on")
    proxy_connect_timeout: float = Field(default=5.0, description="Connect timeout to a guest port (seconds)")
    proxy_read_timeout: float = Field(default=60.0, description="Read timeout for proxied responses (seconds)")

    # WebSocket connection management
    ws_idle_timeout: float = Field(
        default=1800.0,
        description="Close WebSocket connections idle longer than this (seconds, default 30 min)",
    )
    ws_max_connections: int = Field(
        default=100,
        description="Maximum total WebSocket connections allowed",
    )
    ws_keepalive_interval: float = Field(
        default=30.0,
        description="WebSocket keepalive ping interval (seconds)",
    )

    # Graceful shutdown configuration
    shutdown_connection_drain_timeout: float = Field(
        default=10.0,
        description="Time to wait for WebSocket connections to drain during shutdown (seconds)",
    )

    # CORS - the editor frontend origins
    cors_allow_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost:3000", "https://cloudide-chi.vercel.app"],
        description="Origins allowed to call the API",
    )
    cors_allow_origin_regex: str | None = Field(
        default=r"https://.*\.vercel\.app",
        description="Additional origin pattern allowed to call the API",
    )

    model_config = SettingsConfigDict(
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Customize settings source priority for environment-specific config.

        Priority (highest to lowest):
        1. init_settings - Values passed to Settings() constructor
        2. env_settings - Environment variables
        3. dotenv files - .env.local > .env.{APP_ENV} > .env (last-wins in list)
        """
        dotenv_source = DotEnvSettingsSource(
            settings_cls,
            env_file=_get_env_files(),
            env_file_encoding="utf-8",
        )
        return (init_settings, env_settings, dotenv_source)

    @field_validator("install_timeout", "run_timeout", mode="before")
    @classmethod
    def empty_timeout_is_unset(cls, v: object) -> object:
        """Treat empty or zero timeouts as 'no limit'."""
        if v in (None, "", "0", 0, "none", "None"):
            return None
        return v

    @field_validator(
        "install_timeout",
        "run_timeout",
        "kill_grace_period",
        "proxy_connect_timeout",
        "proxy_read_timeout",
        "ws_idle_timeout",
    )
    @classmethod
    def validate_positive_timeout(cls, v: float | None) -> float | None:
        """Timeouts must be positive when set."""
        if v is not None and v <= 0:
            raise ValueError("timeouts must be positive")
        return v

    @field_validator("respawn_settle_delay")
    @classmethod
    def validate_settle_delay(cls, v: float) -> float:
        """The settle delay may be zero but never negative."""
        if v < 0:
            raise ValueError("respawn_settle_delay must not be negative")
        return v

    @field_validator("port", "port_range_start")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Ports must be valid TCP ports."""
        if not 0 < v < 65536:
            raise ValueError(f"invalid port number: {v}")
        return v

    @property
    def workspace_path(self) -> Path:
        """Workspace root as an absolute path."""
        return Path(self.workspace_root).resolve()

    @property
    def runtime_argv(self) -> list[str]:
        """Runtime command split into argv form."""
        return shlex.split(self.runtime_command)


# ============================================================================
# Settings Management (Thread-safe)
# ============================================================================


class _SettingsManager:
    """Thread-safe settings manager.

    Uses a class to avoid global statement warnings from linters.
    """

    __slots__ = ("_instance", "_lock")

    def __init__(self) -> None:
        self._instance: Settings | None = None
        self._lock = threading.Lock()

    def get(self) -> Settings:
        """Get the cached settings instance, loading it on first use.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self._instance is not None:
            return self._instance

        with self._lock:
            # Double-check after acquiring lock
            if self._instance is not None:
                return self._instance

            _reload_dotenv_into_environ()
            self._instance = Settings()
            return self._instance

    def reload(self) -> Settings:
        """Force reload settings from environment files."""
        with self._lock:
            _reload_dotenv_into_environ()
            self._instance = Settings()
            return self._instance

    def clear(self) -> None:
        """Clear cached settings instance.

        Primarily useful for testing to ensure fresh settings on each test.
        """
        with self._lock:
            self._instance = None


# Module-level singleton manager
_settings_manager = _SettingsManager()


def get_settings() -> Settings:
    """Get settings instance.

    This is the primary entry point for accessing application settings.
    Settings are validated at startup and cached for performance.

    Raises:
        ValueError: If required configuration is missing or invalid.
    """
    return _settings_manager.get()


def reload_settings() -> Settings:
    """Force reload settings from environment files."""
    return _settings_manager.reload()


def clear_settings_cache() -> None:
    """Clear cached settings instance."""
    _settings_manager.clear()
