"""
Exception handlers for the security API.

Maps security.exceptions onto HTTP responses:
- AccountLockedError / DeviceLockedError -> 423 with lockTimeRemaining (minutes)
- RateLimitExceededError -> 429 with Retry-After (seconds)
- AccessDeniedError / MFARequiredError -> 403 with code and reason
- InvalidTokenError -> 401
- AuthorizationUnavailableError -> 503
- NotFoundError -> 404, SystemRoleProtectedError -> 409
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from security.exceptions import (
    AccessDeniedError,
    AccountLockedError,
    AuthorizationUnavailableError,
    DeviceLockedError,
    InvalidTokenError,
    MFARequiredError,
    NotFoundError,
    RateLimitExceededError,
    SecurityError,
    SystemRoleProtectedError,
)

logger = logging.getLogger(__name__)


def error_body(error: SecurityError, **extra) -> dict:
    body = {"success": False, "error": error.message, "code": error.code}
    body.update(extra)
    return body


async def locked_handler(request: Request, exc: SecurityError) -> JSONResponse:
    return JSONResponse(
        status_code=423,
        content=error_body(exc, lockTimeRemaining=exc.lock_time_remaining),
    )


async def rate_limit_handler(request: Request, exc: RateLimitExceededError) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content=error_body(exc, retryAfter=exc.retry_after),
        headers={"Retry-After": str(exc.retry_after)},
    )


async def access_denied_handler(request: Request, exc: AccessDeniedError) -> JSONResponse:
    logger.info(f"Access denied on {request.method} {request.url.path}: {exc.code}")
    return JSONResponse(
        status_code=403,
        content=error_body(exc, requiresMFA=exc.requires_mfa),
    )


async def mfa_required_handler(request: Request, exc: MFARequiredError) -> JSONResponse:
    return JSONResponse(status_code=403, content=error_body(exc, requiresMFA=True))


async def invalid_token_handler(request: Request, exc: InvalidTokenError) -> JSONResponse:
    return JSONResponse(
        status_code=401,
        content=error_body(exc),
        headers={"WWW-Authenticate": "Bearer"},
    )


async def unavailable_handler(request: Request, exc: AuthorizationUnavailableError) -> JSONResponse:
    return JSONResponse(status_code=503, content=error_body(exc))


async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content=error_body(exc))


async def protected_handler(request: Request, exc: SystemRoleProtectedError) -> JSONResponse:
    return JSONResponse(status_code=409, content=error_body(exc))


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AccountLockedError, locked_handler)
    app.add_exception_handler(DeviceLockedError, locked_handler)
    app.add_exception_handler(RateLimitExceededError, rate_limit_handler)
    app.add_exception_handler(AccessDeniedError, access_denied_handler)
    app.add_exception_handler(MFARequiredError, mfa_required_handler)
    app.add_exception_handler(InvalidTokenError, invalid_token_handler)
    app.add_exception_handler(AuthorizationUnavailableError, unavailable_handler)
    app.add_exception_handler(NotFoundError, not_found_handler)
    app.add_exception_handler(SystemRoleProtectedError, protected_handler)
