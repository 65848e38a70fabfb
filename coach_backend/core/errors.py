"""Application error taxonomy and FastAPI exception handlers.

Every failure leaving the API is rendered as
``{"error": CODE, "message": ..., "type": ErrorType}`` so clients can branch
on the code instead of parsing text.
"""

import os
from enum import Enum

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException
from starlette.responses import JSONResponse

logger = structlog.get_logger(__name__)

MESSAGE_LIMIT_REACHED = "MESSAGE_LIMIT_REACHED"


class ErrorType(str, Enum):
    VALIDATION = "VALIDATION"
    AUTHENTICATION = "AUTHENTICATION"
    AUTHORIZATION = "AUTHORIZATION"
    NOT_FOUND = "NOT_FOUND"
    RATE_LIMIT = "RATE_LIMIT"
    EXTERNAL_SERVICE = "EXTERNAL_SERVICE"
    DATABASE = "DATABASE"
    FILE_UPLOAD = "FILE_UPLOAD"
    NETWORK = "NETWORK"
    UNKNOWN = "UNKNOWN"


_DEFAULT_MESSAGES = {
    ErrorType.VALIDATION: "The provided data is invalid. Please check your input and try again.",
    ErrorType.AUTHENTICATION: "Authentication required. Please log in to continue.",
    ErrorType.AUTHORIZATION: "You do not have permission to perform this action.",
    ErrorType.NOT_FOUND: "The requested resource was not found.",
    ErrorType.RATE_LIMIT: "Too many requests. Please wait a moment and try again.",
    ErrorType.EXTERNAL_SERVICE: "An external service is temporarily unavailable. Please try again later.",
    ErrorType.DATABASE: "A database error occurred. Please try again.",
    ErrorType.FILE_UPLOAD: "File upload failed. Please check the file and try again.",
    ErrorType.NETWORK: "Network error. Please check your connection and try again.",
    ErrorType.UNKNOWN: "An unexpected error occurred. Please try again.",
}

_STATUS_TO_TYPE = {
    400: ErrorType.VALIDATION,
    401: ErrorType.AUTHENTICATION,
    403: ErrorType.AUTHORIZATION,
    404: ErrorType.NOT_FOUND,
    413: ErrorType.FILE_UPLOAD,
    422: ErrorType.VALIDATION,
    429: ErrorType.RATE_LIMIT,
    503: ErrorType.EXTERNAL_SERVICE,
}


def default_message(error_type: ErrorType) -> str:
    return _DEFAULT_MESSAGES[error_type]


class AppError(Exception):
    """Operational error with a category, HTTP status and user-facing text.

    Attributes:
        error_type: Category used for the ``type`` field.
        status_code: HTTP status of the rendered response.
        user_message: Safe text shown to the user.
        code: Machine-readable ``error`` field; the category name unless a
            domain code (e.g. MESSAGE_LIMIT_REACHED) overrides it.
        context: Extra fields for the log line.
    """

    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.UNKNOWN,
        status_code: int = 500,
        user_message: str | None = None,
        code: str | None = None,
        context: dict | None = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.status_code = status_code
        self.user_message = user_message or default_message(error_type)
        self.code = code or error_type.value
        self.context = context or {}


class ValidationError(AppError):
    def __init__(self, message: str, field: str | None = None, context: dict | None = None):
        super().__init__(
            message,
            ErrorType.VALIDATION,
            400,
            f"Invalid {field}: {message}" if field else message,
            context=context,
        )


class AuthenticationError(AppError):
    def __init__(self, message: str = "Authentication required", context: dict | None = None):
        super().__init__(message, ErrorType.AUTHENTICATION, 401, context=context)


class AuthorizationError(AppError):
    def __init__(self, message: str = "Insufficient permissions", context: dict | None = None):
        super().__init__(message, ErrorType.AUTHORIZATION, 403, context=context)


class NotFoundError(AppError):
    def __init__(self, resource: str, context: dict | None = None):
        super().__init__(
            f"{resource} not found",
            ErrorType.NOT_FOUND,
            404,
            f"The requested {resource.lower()} was not found.",
            context=context,
        )


class FileUploadError(AppError):
    def __init__(self, message: str, context: dict | None = None):
        super().__init__(message, ErrorType.FILE_UPLOAD, 400, message, context=context)


class ExternalServiceError(AppError):
    def __init__(self, service: str, message: str, context: dict | None = None):
        super().__init__(
            f"{service} error: {message}",
            ErrorType.EXTERNAL_SERVICE,
            503,
            f"{service} is temporarily unavailable. Please try again later.",
            context=context,
        )


class MessageLimitError(AppError):
    """The user's plan-based daily message quota is exhausted."""

    def __init__(self, daily_limit: int, context: dict | None = None):
        super().__init__(
            f"Daily message limit reached ({daily_limit} messages)",
            ErrorType.RATE_LIMIT,
            429,
            f"You have reached your daily limit of {daily_limit} messages. "
            "Upgrade to Pro for unlimited messages.",
            code=MESSAGE_LIMIT_REACHED,
            context=context,
        )


def error_body(code: str, message: str, error_type: ErrorType, detail: str | None = None) -> dict:
    body = {"error": code, "message": message, "type": error_type.value}
    if detail and os.environ.get("DEBUG_ERRORS", "").lower() in ("1", "true", "yes"):
        body["detail"] = detail
    return body


def _request_context(request: Request) -> dict:
    return {
        "endpoint": request.url.path,
        "method": request.method,
        "request_id": request.headers.get("x-request-id"),
    }


async def _app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    log = logger.warning if exc.status_code < 500 else logger.error
    log("api.error", code=exc.code, status=exc.status_code, error=str(exc),
        **exc.context, **_request_context(request))
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.code, exc.user_message, exc.error_type, detail=str(exc)),
    )


async def _http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    error_type = _STATUS_TO_TYPE.get(exc.status_code, ErrorType.UNKNOWN)
    message = exc.detail if isinstance(exc.detail, str) else default_message(error_type)
    logger.warning("api.http_error", status=exc.status_code, **_request_context(request))
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(error_type.value, message, error_type),
        headers=getattr(exc, "headers", None),
    )


async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"Invalid {field}: {first.get('msg')}" if field else default_message(ErrorType.VALIDATION)
    logger.warning("api.validation_error", errors=len(errors), **_request_context(request))
    return JSONResponse(
        status_code=422,
        content=error_body(ErrorType.VALIDATION.value, message, ErrorType.VALIDATION, detail=str(errors)),
    )


async def _database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error("api.database_error", error=str(exc), **_request_context(request))
    return JSONResponse(
        status_code=500,
        content=error_body(ErrorType.DATABASE.value, default_message(ErrorType.DATABASE),
                           ErrorType.DATABASE, detail=str(exc)),
    )


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("api.unhandled_error", error=str(exc), error_class=type(exc).__name__,
                 **_request_context(request))
    return JSONResponse(
        status_code=500,
        content=error_body(ErrorType.UNKNOWN.value, default_message(ErrorType.UNKNOWN),
                           ErrorType.UNKNOWN, detail=str(exc)),
    )


def register_error_handlers(app: FastAPI) -> None:
    """Attach the uniform error rendering to an application."""
    app.add_exception_handler(AppError, _app_error_handler)
    app.add_exception_handler(HTTPException, _http_exception_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
    app.add_exception_handler(SQLAlchemyError, _database_error_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)
