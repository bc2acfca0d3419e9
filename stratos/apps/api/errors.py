from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from stratos.apps.api.response import error_response
from stratos.core.errors import (
    ConflictError,
    NotFoundError,
    OperationTimeoutError,
    StoreUnavailableError,
    StratosError,
    ValidationError,
)


logger = logging.getLogger(__name__)

# Fallback codes for HTTP errors raised without an explicit code.
_STATUS_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    402: "QUOTA_EXCEEDED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    503: "SERVICE_UNAVAILABLE",
}

# First isinstance match wins, so subclasses map with their parents.
_DOMAIN_STATUS: tuple[tuple[type[StratosError], int], ...] = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
    (StoreUnavailableError, 503),
    (OperationTimeoutError, 504),
)


def status_for(exc: StratosError) -> int:
    for error_type, status_code in _DOMAIN_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


def _envelope(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Dependencies raise HTTPException with {"code", "message", **details}; routing misses carry a string.
    detail = exc.detail
    fallback = _STATUS_CODES.get(exc.status_code, "HTTP_ERROR")
    if isinstance(detail, dict):
        extra = {key: value for key, value in detail.items() if key not in {"code", "message"}}
        return _envelope(
            request,
            status_code=exc.status_code,
            code=str(detail.get("code") or fallback),
            message=str(detail.get("message") or "Request failed"),
            details=jsonable_encoder(extra) or None,
            headers=exc.headers,
        )
    return _envelope(
        request,
        status_code=exc.status_code,
        code=fallback,
        message=str(detail) if detail else "Request failed",
        headers=exc.headers,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _envelope(
        request,
        status_code=422,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )


async def stratos_exception_handler(request: Request, exc: StratosError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        logger.warning("request_failed path=%s code=%s", request.url.path, exc.code)
    return _envelope(
        request,
        status_code=status_code,
        code=exc.code,
        message=exc.message,
        details=jsonable_encoder(exc.details) if exc.details else None,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Never echo exception text; the traceback goes to the log only.
    logger.error("unhandled_exception path=%s", request.url.path, exc_info=exc)
    return _envelope(request, status_code=500, code="INTERNAL_ERROR", message="Internal server error")
