# Copyright (C) 2024 TripDesk Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Application errors and the handlers that render them."""

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from tripdesk_server.config import settings

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"
SENSITIVE_KEYS = frozenset(
    {"authorization", "cookie", "x-api-key", "otp", "code", "token", "id_token", "password"}
)


class AppError(Exception):
    """Expected, user-facing failure with an HTTP status and a stable code."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "BAD_REQUEST"
    message: str = "Bad request"

    def __init__(self, message: str | None = None, details: dict[str, Any] | None = None):
        self.message = message or self.message
        self.details = details
        super().__init__(self.message)


class AlreadyRegistered(AppError):
    code = "ALREADY_REGISTERED"
    message = "Email already in use. Please use a different email or login."


class OtpInvalid(AppError):
    code = "OTP_INVALID"
    message = "Incorrect verification code. Please try again."


class OtpExpiredOrInvalid(AppError):
    code = "OTP_EXPIRED"
    message = "Verification code has expired. Please request a new one."


class UserNotFound(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "USER_NOT_FOUND"
    message = "User not found"


class NotFound(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"
    message = "Guest account not found. Please create a guest account first."


class GoogleAuthFailed(AppError):
    code = "GOOGLE_AUTH_FAILED"
    message = "Failed to authenticate with Google"


class GoogleAuthUnavailable(AppError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "GOOGLE_AUTH_UNAVAILABLE"
    message = "Google sign-in is not configured"


class TooManyRequests(AppError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    code = "TOO_MANY_REQUESTS"
    message = "Too many requests from this IP, please try again later."


def redact(values: Mapping[str, Any], keys: Iterable[str] = SENSITIVE_KEYS) -> dict[str, Any]:
    """Copy of values with sensitive entries (case-insensitive key match) masked."""
    keys = {k.lower() for k in keys}
    return {k: REDACTED if k.lower() in keys else v for k, v in values.items()}


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    logger.info("%s %s -> %s %s", request.method, request.url.path, exc.status_code, exc.code)
    body: dict[str, Any] = {"status": "error", "message": exc.message, "code": exc.code}
    if exc.details:
        body["details"] = exc.details
    return JSONResponse(status_code=exc.status_code, content=body)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "status": "error",
            "message": "Validation Error",
            "details": jsonable_encoder(exc.errors()),
        },
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log with redacted request context; hide internals outside development."""
    logger.exception(
        "%s: %s request=%s",
        type(exc).__name__,
        exc,
        {
            "method": request.method,
            "path": request.url.path,
            "query": redact(request.query_params),
            "headers": redact(request.headers),
        },
    )
    body: dict[str, Any] = {"status": "error", "message": "Something went wrong"}
    if settings.environment == "development":
        body["error"] = f"{type(exc).__name__}: {exc}"
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=body)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
