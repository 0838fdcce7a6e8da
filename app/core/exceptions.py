import logging
from typing import Any, List, Optional

from fastapi import Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError

from app.core.config import settings

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base class for errors that map onto an HTTP status code."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message: str = "Internal server error"

    def __init__(self, message: Optional[str] = None, details: Any = None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    @property
    def is_client_error(self) -> bool:
        return 400 <= self.status_code < 500

    def to_dict(self) -> dict:
        content = {"success": False, "message": self.message}
        if self.details is not None:
            content["errors"] = self.details
        return content


class NotFoundError(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Resource not found"


class ConflictError(AppError):
    status_code = status.HTTP_409_CONFLICT
    default_message = "Resource already exists"


class BadRequestError(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Bad request"


class ServiceUnavailableError(AppError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "Service unavailable"


# --- Query-specific Errors ---


class QueryNotFoundError(NotFoundError):
    default_message = "Query not found"

    def __init__(self, name: Optional[str] = None):
        message = f"Query '{name}' not found" if name else None
        super().__init__(message)
        self.name = name


class QueryAlreadyExistsError(ConflictError):
    default_message = "Query already exists"

    def __init__(self, name: Optional[str] = None):
        message = f"Query '{name}' already exists" if name else None
        super().__init__(message)
        self.name = name


class InvalidParametersError(BadRequestError):
    """Raised when caller-supplied parameters fail template validation."""

    default_message = "Invalid query parameters"

    def __init__(self, errors: List[str], message: Optional[str] = None):
        super().__init__(message, details=list(errors))
        self.errors = list(errors)


class QueryExecutionError(AppError):
    default_message = "Query execution failed"


class QueryTimeoutError(QueryExecutionError):
    status_code = status.HTTP_504_GATEWAY_TIMEOUT
    default_message = "Query execution timed out"


def register_exception_handlers(app):
    """Register all exception handlers."""

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        """Handle application errors raised by services."""
        if exc.is_client_error:
            logger.warning(f"⚠️ {exc.__class__.__name__} on {request.url.path}: {exc}")
        else:
            logger.error(f"❌ {exc.__class__.__name__} on {request.url.path}: {exc}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(ValidationError)
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc):
        """Handle validation errors."""
        logger.warning(f"Validation error on {request.url.path}")
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "success": False,
                "message": "Validation error",
                "errors": (
                    jsonable_encoder(exc.errors())
                    if hasattr(exc, "errors")
                    else str(exc)
                ),
            },
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle all uncaught exceptions."""
        logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "success": False,
                "message": str(exc) if settings.DEBUG else "Internal server error",
                "path": str(request.url.path),
            },
        )
