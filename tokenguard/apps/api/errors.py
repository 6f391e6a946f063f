from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tokenguard.apps.api.response import error_response
from tokenguard.core.errors import (
    ConcurrencyConflict,
    DatabaseError,
    InvalidTierError,
    PaymentProviderError,
    TokenGuardError,
    UnknownPackageError,
    WebhookPayloadError,
    WebhookSignatureError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    402: "TOKENS_UNAVAILABLE",
    403: "ACCOUNT_SUSPENDED",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    502: "UPSTREAM_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Checked in order, so subclasses come before their bases.
_DOMAIN_ERRORS: tuple[tuple[type[TokenGuardError], int, str], ...] = (
    (WebhookSignatureError, 400, "WEBHOOK_SIGNATURE_INVALID"),
    (WebhookPayloadError, 400, "WEBHOOK_PAYLOAD_INVALID"),
    (InvalidTierError, 400, "INVALID_TIER"),
    (UnknownPackageError, 400, "UNKNOWN_PACKAGE"),
    (ConcurrencyConflict, 409, "CONCURRENCY_CONFLICT"),
    (PaymentProviderError, 502, "PAYMENT_PROVIDER_ERROR"),
    (DatabaseError, 503, "DATABASE_UNAVAILABLE"),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=422)


async def domain_exception_handler(request: Request, exc: TokenGuardError) -> JSONResponse:
    status_code, code = 500, "INTERNAL_ERROR"
    for error_type, mapped_status, mapped_code in _DOMAIN_ERRORS:
        if isinstance(exc, error_type):
            status_code, code = mapped_status, mapped_code
            break
    if status_code >= 500:
        logger.error("request_failed path=%s code=%s", request.url.path, code, exc_info=exc)
    payload = error_response(request=request, code=code, message=str(exc) or code)
    return JSONResponse(content=payload, status_code=status_code)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Never leak stack traces; the log carries the detail.
    logger.exception("request_unhandled_error path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)


def http_error(status_code: int, code: str, message: str, **details: Any) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"code": code, "message": message, **details})
