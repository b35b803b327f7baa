"""
Error types and the JSON error envelope for the credential vault.

Every response, success or failure, has the shape

    {"success": bool, "data": <payload or null>, "error": <message or null>}

Status mapping:
- 400: ValidationError, UpstreamError (platform rejected the credentials)
- 401: AuthenticationError
- 404: NotFoundError
- 409: ConflictError
- 429: RateLimitError
- 500: DecryptionError, ConfigurationError, UpstreamUnavailableError, anything unhandled

Only `message` is sent to clients. `details` is logged server-side and never
contains secret values; tracebacks are never sent.
"""

import logging
import uuid
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"

UNEXPECTED_ERROR_MESSAGE = "An unexpected error occurred"

INVALID_JSON_MESSAGE = "Request body must be valid JSON"


def envelope(data: Any = None, error: Optional[str] = None) -> dict:
    return {"success": error is None, "data": data, "error": error}


class AppError(Exception):
    """Base for every error the vault maps to an HTTP status."""

    code = "INTERNAL_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        code: Optional[str] = None,
        message: str = "Internal error",
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return envelope(error=self.message)

    def response_headers(self) -> dict[str, str]:
        return {}


class _SimpleError(AppError):
    """Subclasses only pick a code and status; callers pass message and details."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message=message, details=details)


class ValidationError(_SimpleError):
    code = "VALIDATION_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST


class ConflictError(_SimpleError):
    """Integration row changed between read and write."""

    code = "CONFLICT"
    status_code = status.HTTP_409_CONFLICT


class ConfigurationError(_SimpleError):
    """Encryption key, shared secret or OAuth client settings are missing or malformed."""

    code = "CONFIGURATION_ERROR"


class AuthenticationError(_SimpleError):
    code = "AUTHENTICATION_ERROR"
    status_code = status.HTTP_401_UNAUTHORIZED

    def __init__(self, message: str = "Unauthorized", details: Optional[dict[str, Any]] = None):
        super().__init__(message, details)


class DecryptionError(_SimpleError):
    """Cipher text failed to parse or authenticate. The message never echoes plaintext."""

    code = "DECRYPTION_ERROR"

    def __init__(self, message: str = "Failed to decrypt credentials", details: Optional[dict[str, Any]] = None):
        super().__init__(message, details)


class NotFoundError(AppError):
    code = "NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, resource: str, identifier: Optional[str] = None):
        label = f"{resource} '{identifier}'" if identifier else resource
        super().__init__(message=f"{label} not found")


class UpstreamError(AppError):
    """A social platform refused the request; usually the user must reconnect."""

    code = "UPSTREAM_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, platform: Optional[str] = None):
        super().__init__(message=message, details={"platform": platform} if platform else None)


class UpstreamUnavailableError(UpstreamError):
    """Network failure or 5xx from a social platform."""

    code = "UPSTREAM_UNAVAILABLE"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str = "Platform request failed", platform: Optional[str] = None):
        super().__init__(message, platform)


class RateLimitError(AppError):
    code = "RATE_LIMIT_EXCEEDED"
    status_code = status.HTTP_429_TOO_MANY_REQUESTS

    def __init__(self, message: str = "Rate limit exceeded. Please try again later.", retry_after: Optional[int] = None):
        super().__init__(
            message=message,
            details={"retry_after_seconds": retry_after} if retry_after else None,
        )
        self.retry_after = retry_after

    def response_headers(self) -> dict[str, str]:
        return {"Retry-After": str(self.retry_after)} if self.retry_after else {}


def generate_correlation_id() -> str:
    return str(uuid.uuid4())


def _request_context(request: Request) -> dict[str, Any]:
    return {
        "correlation_id": getattr(request.state, "correlation_id", None),
        "path": request.url.path,
        "method": request.method,
    }


def _render(status_code: int, message: str, request: Request, headers: Optional[dict] = None) -> JSONResponse:
    headers = dict(headers or {})
    correlation_id = getattr(request.state, "correlation_id", None)
    if correlation_id:
        headers[CORRELATION_HEADER] = correlation_id
    return JSONResponse(status_code=status_code, content=envelope(error=message), headers=headers)


def render_app_error(request: Request, error: AppError) -> JSONResponse:
    """Log an AppError (error level for 5xx, warning otherwise) and render its envelope."""
    level = logging.ERROR if error.status_code >= 500 else logging.WARNING
    logger.log(
        level,
        "Application error",
        extra={
            **_request_context(request),
            "error_code": error.code,
            "status_code": error.status_code,
            **error.details,
        },
    )
    return _render(error.status_code, error.message, request, error.response_headers())


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """
    Outermost safety net: assigns the correlation id and turns anything that
    escapes the route handlers into the envelope.
    """

    async def dispatch(self, request: Request, call_next):
        request.state.correlation_id = request.headers.get(CORRELATION_HEADER) or generate_correlation_id()

        try:
            response = await call_next(request)
        except AppError as e:
            return render_app_error(request, e)
        except HTTPException as e:
            logger.warning("HTTP exception", extra={**_request_context(request), "status_code": e.status_code})
            return _render(e.status_code, str(e.detail), request)
        except Exception as e:
            logger.exception("Unhandled exception", extra={**_request_context(request), "error_type": type(e).__name__})
            return _render(status.HTTP_500_INTERNAL_SERVER_ERROR, UNEXPECTED_ERROR_MESSAGE, request)

        response.headers[CORRELATION_HEADER] = request.state.correlation_id
        return response


async def _app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    return render_app_error(request, exc)


async def _http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _render(exc.status_code, str(exc.detail), request, getattr(exc, "headers", None))


async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Report the first failing field as "field.path: reason"
    problems = exc.errors()
    first = problems[0] if problems else {}
    if first.get("type") == "json_invalid":
        return _render(status.HTTP_400_BAD_REQUEST, INVALID_JSON_MESSAGE, request)
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    reason = first.get("msg", "Invalid request")
    return _render(status.HTTP_400_BAD_REQUEST, f"{field}: {reason}" if field else reason, request)


def register_error_handlers(app: FastAPI) -> None:
    """Route framework errors and AppError through the same envelope."""
    app.add_exception_handler(AppError, _app_error_handler)
    app.add_exception_handler(StarletteHTTPException, _http_exception_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
