"""Billing error taxonomy and the JSON exception handlers."""

from __future__ import annotations

import logging
import re
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)

# Regex to detect internal paths (Unix/Linux focus for container env)
_PATH_PATTERN = re.compile(r"(\/(?:app|home|var|tmp|usr|etc|opt|root|srv)\/[\w\-\.\/]+)")

# Storage failures surface unmodified as the driver/ORM error.
StorageError = SQLAlchemyError


class BillingError(Exception):
    """Base class for every error the billing services raise on purpose."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "BILLING_ERROR"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def payload(self) -> dict[str, Any]:
        return {}


class ValidationError(BillingError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "VALIDATION_ERROR"


class InvalidSignatureError(ValidationError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "INVALID_SIGNATURE"


class NotFoundError(BillingError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"


class AccessDeniedError(BillingError):
    """Gate denial; carries the machine reason and an optional upgrade prompt."""

    reason: str = "feature_disabled"

    def __init__(
        self,
        message: str,
        *,
        reason: str | None = None,
        upgrade_prompt: dict[str, str] | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message, code=code)
        if reason:
            self.reason = reason
        self.upgrade_prompt = upgrade_prompt

    def payload(self) -> dict[str, Any]:
        return {"reason": self.reason, "upgrade_prompt": self.upgrade_prompt}


class AuthorizationError(AccessDeniedError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "SUBSCRIPTION_REQUIRED"
    reason = "subscription_required"


class InsufficientCreditsError(AccessDeniedError):
    status_code = status.HTTP_402_PAYMENT_REQUIRED
    code = "INSUFFICIENT_CREDITS"
    reason = "insufficient_credits"

    def __init__(
        self,
        message: str = "Insufficient credits",
        *,
        required: int | None = None,
        available: int | None = None,
        upgrade_prompt: dict[str, str] | None = None,
    ) -> None:
        super().__init__(message, upgrade_prompt=upgrade_prompt)
        self.required = required
        self.available = available

    def payload(self) -> dict[str, Any]:
        data = super().payload()
        if self.required is not None:
            data["required"] = self.required
        if self.available is not None:
            data["available"] = self.available
        return data


class WebhookProcessingError(BillingError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "WEBHOOK_FAILED"


def sanitize_message(msg: str) -> str:
    """
    Sanitize string messages to prevent leaking internal details.
    """
    if _PATH_PATTERN.search(msg):
        return _PATH_PATTERN.sub("[INTERNAL_PATH]", msg)
    return msg


def create_error_response(
    status_code: int,
    message: str,
    error_code: str | None = None,
    extra: dict[str, Any] | None = None,
) -> JSONResponse:
    content: dict[str, Any] = {"detail": message}
    if error_code:
        content["code"] = error_code
    if extra:
        content.update(extra)
    return JSONResponse(status_code=status_code, content=content)


async def billing_exception_handler(request: Request, exc: BillingError):
    """
    Render domain errors with their own status and machine-readable code.
    """
    if exc.status_code >= 500:
        logger.error(
            "Billing error",
            extra={"data": {"path": request.url.path, "code": exc.code}},
        )
    return create_error_response(
        exc.status_code,
        sanitize_message(exc.message),
        exc.code,
        exc.payload(),
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """
    Handle explicit HTTP exceptions (e.g. 404, 403).
    """
    response = create_error_response(exc.status_code, sanitize_message(str(exc.detail)))
    if exc.headers:
        response.headers.update(exc.headers)
    return response


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """
    Handle Pydantic validation errors.
    """
    sanitized_errors = []
    for err in exc.errors():
        loc = ".".join([str(x) for x in err.get("loc", [])])
        msg = err.get("msg", "Invalid input")
        sanitized_errors.append(f"{loc}: {msg}")

    error_msg = "; ".join(sanitized_errors)
    return create_error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        f"Validation Error: {sanitize_message(error_msg)}",
    )


async def database_exception_handler(request: Request, exc: SQLAlchemyError):
    """
    Handle database errors. Log the full error, return generic message.
    """
    logger.exception("Database error occurred", extra={"data": {"path": request.url.path}})
    return create_error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "A database error occurred. Please try again later.",
        "DB_ERROR",
    )


async def global_exception_handler(request: Request, exc: Exception):
    """
    Catch-all for unhandled exceptions.
    """
    logger.exception("Unhandled exception", extra={"data": {"path": request.url.path}})
    return create_error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "An internal server error occurred.",
        "INTERNAL_ERROR",
    )


def register_exception_handlers(app: FastAPI):
    """
    Registrar for all exception handlers.
    """
    app.add_exception_handler(BillingError, billing_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(SQLAlchemyError, database_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
