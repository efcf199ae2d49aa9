"""
Logging setup for CloudIDE Runner using Python's standard logging
with JSON formatting for structured logs.

Log destinations:
- Console (stderr): Human-readable format for debugging
- logs/server.jsonl: JSON format for session lifecycle and run history
- logs/errors.jsonl: JSON format for error tracking
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
import uuid

from pathlib import Path
from typing import Any, cast

from pythonjsonlogger import json as jsonlogger

from cloudide.api.middleware.request_context import get_request_context
from cloudide.core.constants import (
    LOG_BACKUP_COUNT_ERRORS,
    LOG_BACKUP_COUNT_SERVER,
    LOG_MAX_SIZE,
    SESSION_ID_LENGTH,
    get_settings,
)

#: Name of the application logger; ``logging.getLogger(__name__)`` in any
#: ``cloudide.*`` module propagates into it.
LOGGER_NAME = "cloudide"


class ServerFilter(logging.Filter):
    """Filter to allow INFO and above into the server log"""

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno >= logging.INFO


class ErrorFilter(logging.Filter):
    """Filter to only allow ERROR and CRITICAL logs"""

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno >= logging.ERROR


class ColoredConsoleFormatter(logging.Formatter):
    """
    Custom formatter that adds colors to log levels and standardizes format.
    Format: HH:MM:SS [LEVEL] logger_name - message
    """

    # ANSI color codes
    GREY = "\x1b[38;20m"
    GREEN = "\x1b[32;20m"
    YELLOW = "\x1b[33;20m"
    RED = "\x1b[31;20m"
    BOLD_RED = "\x1b[31;1m"
    RESET = "\x1b[0m"

    # We only color the level part: [LEVEL]
    def format(self, record: logging.LogRecord) -> str:
        level_fmt = f"[{record.levelname}]"

        if record.levelno == logging.DEBUG:
            level_fmt = f"{self.GREY}{level_fmt}{self.RESET}"
        elif record.levelno == logging.INFO:
            level_fmt = f"{self.GREEN}{level_fmt}{self.RESET}"
        elif record.levelno == logging.WARNING:
            level_fmt = f"{self.YELLOW}{level_fmt}{self.RESET}"
        elif record.levelno == logging.ERROR:
            level_fmt = f"{self.RED}{level_fmt}{self.RESET}"
        elif record.levelno == logging.CRITICAL:
            level_fmt = f"{self.BOLD_RED}{level_fmt}{self.RESET}"

        record.asctime = self.formatTime(record, "%H:%M:%S")

        # uvicorn access logs: (client_addr, method, full_path, http_version, status_code)
        if record.name == "uvicorn.access" and record.args and len(record.args) == 5:
            client_addr, method, full_path, http_version, status_code = record.args

            status_code_num = int(cast(Any, status_code))
            if status_code_num < 400:
                status_code_fmt = f"{self.GREEN}{status_code}{self.RESET}"
            elif status_code_num < 500:
                status_code_fmt = f"{self.YELLOW}{status_code}{self.RESET}"
            else:
                status_code_fmt = f"{self.RED}{status_code}{self.RESET}"

            method_fmt = f"\x1b[1m{method}\x1b[0m"
            message = f'{client_addr} - "{method_fmt} {full_path} HTTP/{http_version}" {status_code_fmt}'
            return f"{record.asctime} {level_fmt} {record.name} - {message}"

        message = record.getMessage()
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return f"{record.asctime} {level_fmt} {record.name} - {message}"


def configure_uvicorn_logging() -> None:
    """
    Configure uvicorn loggers to use our standard colored formatting.
    This ensures uvicorn logs (access, error) match the application log style.
    """
    formatter = ColoredConsoleFormatter()

    main_logger = logging.getLogger("uvicorn")
    main_logger.handlers = []
    main_logger.setLevel(logging.INFO)

    for name in ("uvicorn.access", "uvicorn.error"):
        uv_logger = logging.getLogger(name)
        uv_logger.handlers = []
        uv_logger.setLevel(logging.INFO)
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(formatter)
        uv_logger.addHandler(handler)
        uv_logger.propagate = False


def setup_logging(
    name: str = LOGGER_NAME,
    debug: bool | None = None,
    log_dir: str | None = None,
) -> logging.Logger:
    """
    Set up logging with console and rotating JSON file handlers.

    Args:
        name: Logger name
        debug: Enable debug logging (defaults to the DEBUG setting)
        log_dir: Directory for JSON logs (defaults to the LOG_DIR setting, empty disables files)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)  # Capture all, filter at handler level
    logger.handlers = []
    logger.propagate = False

    if debug is None or log_dir is None:
        settings = get_settings()
        debug = settings.debug if debug is None else debug
        log_dir = settings.log_dir if log_dir is None else log_dir

    # --- Console Handler (Human-readable) ---
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.DEBUG if debug else logging.INFO)
    console_handler.setFormatter(ColoredConsoleFormatter())
    logger.addHandler(console_handler)

    if not log_dir:
        return logger

    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    # --- Server Log Handler (JSON) ---
    server_handler = logging.handlers.RotatingFileHandler(
        log_path / "server.jsonl",
        maxBytes=LOG_MAX_SIZE,
        backupCount=LOG_BACKUP_COUNT_SERVER,
        encoding="utf-8",
    )
    server_handler.setLevel(logging.INFO)
    server_handler.addFilter(ServerFilter())
    server_handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(timestamp)s %(levelname)s %(name)s %(message)s %(session_id)s %(request_id)s",
            timestamp=True,
        )
    )
    logger.addHandler(server_handler)

    # --- Error Log Handler (JSON) ---
    error_handler = logging.handlers.RotatingFileHandler(
        log_path / "errors.jsonl",
        maxBytes=LOG_MAX_SIZE,
        backupCount=LOG_BACKUP_COUNT_ERRORS,
        encoding="utf-8",
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.addFilter(ErrorFilter())
    error_handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(timestamp)s %(levelname)s %(name)s %(message)s",
            timestamp=True,
        )
    )
    logger.addHandler(error_handler)

    return logger


class RunnerLogger:
    """
    High-level logging interface for CloudIDE Runner.
    Wraps standard Python logging; keyword arguments become structured fields.
    """

    def __init__(self, name: str = LOGGER_NAME):
        self.logger = setup_logging(name)
        self.component_id = str(uuid.uuid4())[:SESSION_ID_LENGTH]

    def _enrich_context(self, kwargs: dict[str, Any]) -> dict[str, Any]:
        """Enrich log arguments with request context."""
        # Explicit kwargs win over the request context, which wins over the component id
        if ctx := get_request_context():
            for key, value in ctx.to_log_context().items():
                kwargs.setdefault(key, value)
        kwargs.setdefault("session_id", self.component_id)
        return kwargs

    def debug(self, message: str, **kwargs: Any) -> None:
        """Debug level logging"""
        self.logger.debug(message, extra=self._enrich_context(kwargs))

    def info(self, message: str, **kwargs: Any) -> None:
        """Info level logging"""
        self.logger.info(message, extra=self._enrich_context(kwargs))

    def warning(self, message: str, **kwargs: Any) -> None:
        """Warning level logging"""
        self.logger.warning(message, extra=self._enrich_context(kwargs))

    def error(self, message: str, exc_info: bool = False, **kwargs: Any) -> None:
        """Error level logging with optional exception info"""
        self.logger.error(message, extra=self._enrich_context(kwargs), exc_info=exc_info)


# Global logger instance
logger = RunnerLogger()
