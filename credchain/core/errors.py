"""
Standardized Error Handling for Credchain.

Every service-level failure is a CredchainError subclass carrying an error
code and the HTTP status the API answers with. All API errors return JSON
with the same structure: {error, message, details, request_id}.
"""

import logging
import traceback
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


# =============================================================================
# Error Response Models
# =============================================================================

class ErrorDetail(BaseModel):
    """Detail for a single error."""
    loc: list[str] | None = None  # field path
    msg: str
    type: str


class ErrorResponse(BaseModel):
    """Standard error response format."""
    error: str  # error code, e.g. "validation_error"
    message: str
    details: list[ErrorDetail] | None = None
    request_id: str | None = None


# =============================================================================
# Custom Exceptions
# =============================================================================

class CredchainError(Exception):
    """Base exception for Credchain-specific errors."""

    def __init__(
        self,
        message: str,
        error_code: str = "credchain_error",
        status_code: int = 500,
        details: list[dict] | None = None,
    ):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details
        super().__init__(message)


class ValidationError(CredchainError):
    """Input rejected before any side effect."""

    def __init__(self, message: str, field: str | None = None, details: list[dict] | None = None):
        if details is None and field:
            details = [{"loc": [field], "msg": message, "type": "value_error"}]
        self.field = field
        super().__init__(
            message=message,
            error_code="validation_error",
            status_code=422,
            details=details,
        )


class ConflictError(CredchainError):
    """Resource conflict (e.g., viewer already granted)."""

    def __init__(self, message: str = "Resource conflict"):
        super().__init__(
            message=message,
            error_code="conflict",
            status_code=409,
        )


class DuplicateDocumentError(CredchainError):
    """A document with the same content hash is already registered."""

    def __init__(self, existing_hash: str):
        self.existing_hash = existing_hash
        super().__init__(
            message="Document already registered",
            error_code="duplicate_document",
            status_code=409,
            details=[{"document_hash": existing_hash}],
        )


class AuthFailure(CredchainError):
    """Ciphertext or sealed key failed authentication."""

    def __init__(self, message: str = "Ciphertext authentication failed"):
        super().__init__(
            message=message,
            error_code="auth_failure",
            status_code=400,
        )


class NotFoundError(CredchainError):
    """Resource not found."""

    def __init__(self, resource: str, identifier: Any = None):
        message = f"{resource} not found"
        if identifier:
            message = f"{resource} '{identifier}' not found"
        super().__init__(
            message=message,
            error_code="not_found",
            status_code=404,
        )


class UnauthorizedError(CredchainError):
    """Caller is identified but not permitted."""

    def __init__(self, message: str = "Permission denied"):
        super().__init__(
            message=message,
            error_code="permission_denied",
            status_code=403,
        )


class OperationTimeout(CredchainError):
    """An external call exceeded its budget."""

    def __init__(self, operation: str, timeout: float):
        self.operation = operation
        self.timeout = timeout
        super().__init__(
            message=f"{operation} timed out after {timeout:.1f}s",
            error_code="timeout",
            status_code=504,
        )


class StorageError(CredchainError):
    """Storage provider error."""

    def __init__(
        self,
        provider: str = "storage",
        message: str = "Storage operation failed",
        retriable: bool = False,
        http_status: int | None = None,
    ):
        self.provider = provider
        self.retriable = retriable
        self.http_status = http_status
        super().__init__(
            message=f"{provider}: {message}",
            error_code="storage_error",
            status_code=502,
        )


class AllProvidersUnavailable(CredchainError):
    """Every storage provider, local included, failed."""

    def __init__(self, errors: dict[str, str] | None = None, queue_position: int | None = None):
        self.errors = errors or {}
        self.queue_position = queue_position
        super().__init__(
            message="All storage providers failed",
            error_code="all_providers_unavailable",
            status_code=503,
            details=[{"provider": k, "error": v} for k, v in self.errors.items()] or None,
        )


class LedgerError(CredchainError):
    """Ledger unreachable or transaction rejected."""

    def __init__(self, message: str = "Ledger operation failed"):
        super().__init__(
            message=message,
            error_code="ledger_error",
            status_code=502,
        )


class InternalError(CredchainError):
    """Invariant broken inside the service."""

    def __init__(self, message: str = "Internal error"):
        super().__init__(
            message=message,
            error_code="internal_error",
            status_code=500,
        )


class ConfigurationError(CredchainError):
    """Missing or malformed configuration."""

    def __init__(self, message: str):
        super().__init__(
            message=message,
            error_code="configuration_error",
            status_code=500,
        )


# =============================================================================
# Exception Handlers
# =============================================================================

def get_request_id(request: Request) -> Optional[str]:
    """Extract request ID from request."""
    return getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")


async def credchain_error_handler(request: Request, exc: CredchainError) -> JSONResponse:
    """Handle Credchain-specific exceptions."""
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "CredchainError: %s - %s",
        exc.error_code,
        exc.message,
        extra={"error_code": exc.error_code, "path": request.url.path},
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.error_code,
            "message": exc.message,
            "details": exc.details,
            "request_id": get_request_id(request),
        },
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Handle standard HTTP exceptions."""
    error_codes = {
        400: "bad_request",
        401: "authentication_required",
        403: "permission_denied",
        404: "not_found",
        405: "method_not_allowed",
        409: "conflict",
        413: "payload_too_large",
        422: "validation_error",
        500: "internal_error",
        502: "bad_gateway",
        503: "service_unavailable",
        504: "timeout",
    }

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": error_codes.get(exc.status_code, "error"),
            "message": str(exc.detail) if exc.detail else f"HTTP {exc.status_code}",
            "request_id": get_request_id(request),
        },
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle request validation errors."""
    details = []
    for error in exc.errors():
        details.append({
            "loc": [str(part) for part in error.get("loc", [])],
            "msg": error.get("msg", ""),
            "type": error.get("type", ""),
        })

    logger.info(
        "Validation error on %s: %d issues",
        request.url.path,
        len(details),
    )

    return JSONResponse(
        status_code=422,
        content={
            "error": "validation_error",
            "message": "Request validation failed",
            "details": details,
            "request_id": get_request_id(request),
        },
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger.error(
        "Unhandled exception on %s: %s",
        request.url.path,
        str(exc),
        exc_info=True,
        extra={
            "path": request.url.path,
            "method": request.method,
            "traceback": traceback.format_exc(),
        },
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_error",
            "message": "An unexpected error occurred",
            "request_id": get_request_id(request),
        },
    )


# =============================================================================
# Setup Function
# =============================================================================

def setup_exception_handlers(app: FastAPI) -> None:
    """
    Register all exception handlers with the FastAPI app.

    Call during app initialization:
        setup_exception_handlers(app)
    """
    app.add_exception_handler(CredchainError, credchain_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)


__all__ = [
    "CredchainError",
    "ErrorResponse",
    "ErrorDetail",
    "ValidationError",
    "ConflictError",
    "DuplicateDocumentError",
    "AuthFailure",
    "NotFoundError",
    "UnauthorizedError",
    "OperationTimeout",
    "StorageError",
    "AllProvidersUnavailable",
    "LedgerError",
    "InternalError",
    "ConfigurationError",
    "setup_exception_handlers",
]
