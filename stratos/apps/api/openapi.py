from __future__ import annotations

from typing import Any

from stratos.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, example: dict[str, Any]) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _response(
        "Bad request",
        _error_example(
            code="CATALOG_INVALID",
            message="Plan catalog is invalid",
            details={"problems": ["thresholds.warning must be below thresholds.critical"]},
        ),
    ),
    401: _response(
        "Unauthorized",
        _error_example(code="AUTH_UNAUTHORIZED", message="X-Tenant-Id header is required"),
    ),
    402: _response(
        "Quota exceeded",
        _error_example(
            code="QUOTA_EXCEEDED",
            message="Usage would exceed the plan limit",
            details={"resource": "tokens", "current": 100000, "amount": 1, "limit": 100000},
        ),
    ),
    403: _response(
        "Forbidden",
        _error_example(code="AUTH_FORBIDDEN", message="Insufficient role for this operation"),
    ),
    404: _response(
        "Not found",
        _error_example(code="NOT_FOUND", message="Client not found: client_missing"),
    ),
    409: _response(
        "Conflict",
        _error_example(code="CONFLICT", message="Stale version for clients/client_acme"),
    ),
    422: _response(
        "Validation error",
        _error_example(
            code="REQUEST_VALIDATION_ERROR",
            message="Validation error",
            details={"errors": [{"loc": ["body", "name"], "msg": "Field required"}]},
        ),
    ),
    500: _response(
        "Internal error",
        _error_example(code="INTERNAL_ERROR", message="Internal server error"),
    ),
    503: _response(
        "Store unavailable",
        _error_example(code="STORE_UNAVAILABLE", message="Document store unavailable"),
    ),
    504: _response(
        "Deadline exceeded",
        _error_example(code="TIMEOUT", message="record_usage exceeded its deadline", details={"timeout_s": 5.0}),
    ),
}
