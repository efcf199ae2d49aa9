"""
Global exception handlers for CloudIDE Runner API.

Provides centralized error handling with consistent response formatting,
proper logging, and request context integration.
"""

from __future__ import annotations

import traceback

from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from cloudide.api.middleware.request_context import get_request_context, get_request_id
from cloudide.core.constants import get_settings
from cloudide.models.error_models import (
    ErrorCode,
    ErrorDetail,
    ErrorResponse,
    get_status_code,
)
from cloudide.utils.logger import logger


class AppException(Exception):
    """Base application exception with error code support.

    Use this for business logic errors that should return a specific
    error code and message to the client.

    Example:
        raise AppException(
            code=ErrorCode.SESSION_NOT_FOUND,
            message="Session not found",
            details={"session_id": session_id}
        )
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ):
        self.code = code
        self.message = message
        self.details = details
        self.cause = cause
        super().__init__(message)


class ResourceNotFoundError(AppException):
    """Resource not found errors."""

    def __init__(
        self,
        resource: str,
        resource_id: str | None = None,
        code: ErrorCode = ErrorCode.RESOURCE_NOT_FOUND,
    ):
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} '{resource_id}' not found"
        super().__init__(code=code, message=message, details={"resource": resource, "id": resource_id})


class SessionNotFoundError(ResourceNotFoundError):
    """Session not found error."""

    def __init__(self, session_id: str):
        super().__init__(resource="Session", resource_id=session_id, code=ErrorCode.SESSION_NOT_FOUND)


def _create_error_response(
    code: ErrorCode,
    message: str,
    request: Request | None = None,
    details: list[ErrorDetail] | None = None,
    debug_info: dict[str, Any] | None = None,
) -> ErrorResponse:
    """Create a standardized error response.

    Args:
        code: Application error code
        message: Human-readable error message
        request: FastAPI request object for path extraction
        details: List of detailed error information
        debug_info: Debug information (only included in development)
    """
    return ErrorResponse(
        code=code,
        message=message,
        request_id=get_request_id(),
        path=request.url.path if request else None,
        details=details,
        debug=debug_info,
    )


def _log_error(error: Exception, code: ErrorCode, status_code: int) -> None:
    """Log error with appropriate level and context."""
    ctx = get_request_context()
    log_context = ctx.to_log_context() if ctx else {}
    log_context["error_code"] = code.value
    log_context["status_code"] = status_code

    if status_code >= 500:
        logger.error(f"Server error: {code.value} - {error}", exc_info=True, **log_context)
    elif status_code >= 400:
        logger.warning(f"Client error: {code.value} - {error}", **log_context)


def _validation_details(errors: list[Any]) -> list[ErrorDetail]:
    return [
        ErrorDetail(
            field=".".join(str(loc) for loc in error["loc"]),
            message=error["msg"],
            code=error["type"],
        )
        for error in errors
    ]


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handle application-specific exceptions."""
    status_code = get_status_code(exc.code)

    settings = get_settings()
    debug_info = None
    if settings.debug:
        debug_info = {
            "exception_type": type(exc).__name__,
            "cause": str(exc.cause) if exc.cause else None,
        }

    details = None
    if exc.details:
        details = [ErrorDetail(message=str(v), field=k) for k, v in exc.details.items()]

    error_response = _create_error_response(
        code=exc.code,
        message=exc.message,
        request=request,
        details=details,
        debug_info=debug_info,
    )

    _log_error(exc, exc.code, status_code)

    return JSONResponse(
        status_code=status_code,
        content=error_response.to_dict(include_debug=settings.debug),
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle FastAPI HTTPException with consistent formatting."""
    status_to_code = {
        400: ErrorCode.VALIDATION_ERROR,
        404: ErrorCode.RESOURCE_NOT_FOUND,
        422: ErrorCode.VALIDATION_ERROR,
        500: ErrorCode.INTERNAL_ERROR,
        502: ErrorCode.UPSTREAM_UNREACHABLE,
        503: ErrorCode.WS_CONNECTION_LIMIT,
    }

    code = status_to_code.get(exc.status_code, ErrorCode.INTERNAL_ERROR)
    message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)

    settings = get_settings()
    debug_info = {"original_status": exc.status_code} if settings.debug else None

    error_response = _create_error_response(code=code, message=message, request=request, debug_info=debug_info)

    _log_error(exc, code, exc.status_code)

    return JSONResponse(
        status_code=exc.status_code,
        content=error_response.to_dict(include_debug=settings.debug),
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle Pydantic validation errors from request parsing."""
    error_response = _create_error_response(
        code=ErrorCode.VALIDATION_ERROR,
        message="Request validation failed",
        request=request,
        details=_validation_details(list(exc.errors())),
    )

    _log_error(exc, ErrorCode.VALIDATION_ERROR, 422)

    return JSONResponse(status_code=422, content=error_response.to_dict())


async def pydantic_exception_handler(request: Request, exc: ValidationError) -> JSONResponse:
    """Handle Pydantic ValidationError from model validation."""
    error_response = _create_error_response(
        code=ErrorCode.VALIDATION_ERROR,
        message="Data validation failed",
        request=request,
        details=_validation_details(list(exc.errors())),
    )

    _log_error(exc, ErrorCode.VALIDATION_ERROR, 422)

    return JSONResponse(status_code=422, content=error_response.to_dict())


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions with graceful degradation."""
    settings = get_settings()

    logger.error(
        f"Unhandled exception: {type(exc).__name__}: {exc}",
        exc_info=True,
        request_id=get_request_id(),
        path=request.url.path,
    )

    debug_info = None
    if settings.debug:
        debug_info = {
            "exception_type": type(exc).__name__,
            "exception_message": str(exc),
            "traceback": traceback.format_exc(),
        }

    error_response = _create_error_response(
        code=ErrorCode.INTERNAL_UNEXPECTED,
        message="An unexpected error occurred",
        request=request,
        debug_info=debug_info,
    )

    return JSONResponse(
        status_code=500,
        content=error_response.to_dict(include_debug=settings.debug),
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI application."""
    # Note: type: ignore needed because Starlette's type signature expects Exception,
    # but covariant exception types in handlers are safe and work correctly at runtime
    app.add_exception_handler(AppException, app_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(HTTPException, http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(ValidationError, pydantic_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, generic_exception_handler)


__all__ = [
    "AppException",
    "ResourceNotFoundError",
    "SessionNotFoundError",
    "app_exception_handler",
    "generic_exception_handler",
    "http_exception_handler",
    "pydantic_exception_handler",
    "register_exception_handlers",
    "validation_exception_handler",
]
