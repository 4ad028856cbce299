"""
Authentication error taxonomy and FastAPI exception handlers.

Every failure the auth core can report carries a stable machine-readable
error code, rendered as {"success": false, "error_code": ..., "message": ...}.
"""

import logging
from typing import Optional

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class AuthError(Exception):
    """Base class for errors surfaced to API callers."""

    error_code = "auth_error"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Authentication error"

    def __init__(self, message: Optional[str] = None, **details):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)


class NotFoundError(AuthError):
    error_code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Not found"


class SignupRequiredError(NotFoundError):
    error_code = "signup_required"
    default_message = "No account exists for this identifier. Please sign up first."


class ExpiredError(AuthError):
    error_code = "expired"
    status_code = status.HTTP_410_GONE
    default_message = "Code or challenge has expired"


class ExhaustedError(AuthError):
    error_code = "exhausted"
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    default_message = "Too many attempts. Please request a new code."


class InvalidCredentialError(AuthError):
    error_code = "invalid_credential"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Invalid credential"


class InvalidAssertionError(InvalidCredentialError):
    error_code = "invalid_assertion"
    default_message = "Biometric assertion could not be verified"

    def __init__(self, message: Optional[str] = None, replay: bool = False, **details):
        self.replay = replay
        super().__init__(message, **details)


class AlreadyExistsError(AuthError):
    error_code = "already_exists"
    status_code = status.HTTP_409_CONFLICT
    default_message = "Already exists"


class QuotaExceededError(AuthError):
    error_code = "quota_exceeded"
    status_code = status.HTTP_409_CONFLICT
    default_message = "Credential limit reached"


class RateLimitedError(AuthError):
    error_code = "rate_limited"
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    default_message = "Too many requests. Please try again later."


class UpstreamUnavailableError(AuthError):
    error_code = "upstream_unavailable"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "Delivery channel unavailable"


class InvalidRequestError(AuthError):
    error_code = "invalid_request"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_message = "Invalid request"


class SessionError(AuthError):
    """Session or continuation token could not be validated."""

    error_code = "invalid_session"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Not authenticated"


class SessionExpiredError(SessionError):
    error_code = "session_expired"
    default_message = "Session has expired"


class MalformedTokenError(SessionError):
    error_code = "malformed_token"
    default_message = "Token is malformed"


class SignatureInvalidError(SessionError):
    error_code = "signature_invalid"
    default_message = "Token signature is invalid"


def error_body(error_code: str, message: str) -> dict:
    return {"success": False, "error_code": error_code, "message": message}


async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render AuthError subclasses with their stable error code"""
    logger.info(f"{exc.error_code} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.error_code, exc.message))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle request validation errors with field-level detail"""
    logger.warning(f"Validation error on {request.url.path}: {exc.errors()}")
    body = error_body(InvalidRequestError.error_code, "Validation error")
    body["errors"] = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=body)


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions"""
    logger.error(f"Unexpected error on {request.url.path}: {str(exc)}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_body("internal_error", "Internal server error"),
    )
