"""
Security pipeline exceptions.

Every error carries a human-readable message and the HTTP status it maps to.
Only the message is ever rendered to the caller.
"""

from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = structlog.get_logger(__name__)


class StorefrontError(Exception):
    """
    Base error with an HTTP mapping.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code for logs
        status_code: HTTP status code for this error type
        context: Additional context, logged but never returned
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int = 400,
        context: dict[str, Any] | None = None,
    ):
        self.message = message
        self.error_code = error_code or "STOREFRONT_ERROR"
        self.status_code = status_code
        self.context = context or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to the response body."""
        return {"message": self.message}


class UserNotFoundError(StorefrontError):
    """Referenced user identity does not exist."""

    def __init__(self, user_id: Any) -> None:
        super().__init__(
            "User not found",
            error_code="USER_NOT_FOUND",
            status_code=404,
            context={"user_id": str(user_id)},
        )


class InvalidLockActionError(StorefrontError):
    """Lock endpoint called with something other than lock/unlock."""

    def __init__(self, action: Any) -> None:
        super().__init__(
            "Invalid action. Use 'lock' or 'unlock'.",
            error_code="INVALID_LOCK_ACTION",
            status_code=400,
            context={"action": action},
        )


class AuthenticationRequiredError(StorefrontError):
    """No authenticated user on the request."""

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(message, error_code="AUTHENTICATION_REQUIRED", status_code=401)


class AdminRequiredError(StorefrontError):
    """Authenticated user lacks the admin role."""

    def __init__(self, message: str = "Admin access required") -> None:
        super().__init__(message, error_code="ADMIN_REQUIRED", status_code=403)


class PolicyRejection(StorefrontError):
    """A security gate refused the request."""


class RateLimitExceededError(PolicyRejection):
    """Fixed-window cap reached for a caller and route class."""

    def __init__(self, message: str, retry_after: int, route_class: str | None = None) -> None:
        super().__init__(
            message,
            error_code="RATE_LIMITED",
            status_code=429,
            context={"route_class": route_class},
        )
        self.retry_after = retry_after

    def to_dict(self) -> dict[str, Any]:
        return {"message": self.message, "retryAfter": self.retry_after}


class BruteForceBlockedError(PolicyRejection):
    """Too many gated authentication attempts from one address."""

    def __init__(self, message: str, address: str | None = None) -> None:
        super().__init__(
            message,
            error_code="BRUTE_FORCE_BLOCKED",
            status_code=429,
            context={"address": address},
        )


class CSRFValidationError(PolicyRejection):
    """Anti-forgery token missing or mismatched."""

    def __init__(self, message: str = "CSRF token validation failed", reason: str = "") -> None:
        super().__init__(
            message,
            error_code="CSRF_FAILED",
            status_code=403,
            context={"reason": reason},
        )


def error_response(exc: StorefrontError) -> JSONResponse:
    """Render an error as a JSON response."""
    headers = None
    if isinstance(exc, RateLimitExceededError):
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


async def storefront_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle StorefrontError subclasses raised by routes and dependencies."""
    if not isinstance(exc, StorefrontError):
        raise exc
    logger.info(
        "request.rejected",
        path=request.url.path,
        error_code=exc.error_code,
        status_code=exc.status_code,
        **exc.context,
    )
    return error_response(exc)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last-resort handler: log the failure, never leak it."""
    logger.error(
        "request.unhandled_error",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        exc_info=True,
    )
    return JSONResponse(status_code=500, content={"message": "Internal server error"})


def register_exception_handlers(app: FastAPI) -> None:
    """Install the pipeline's exception handlers on an application."""
    app.add_exception_handler(StorefrontError, storefront_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)


__all__ = [
    "StorefrontError",
    "UserNotFoundError",
    "InvalidLockActionError",
    "AuthenticationRequiredError",
    "AdminRequiredError",
    "PolicyRejection",
    "RateLimitExceededError",
    "BruteForceBlockedError",
    "CSRFValidationError",
    "error_response",
    "register_exception_handlers",
]
