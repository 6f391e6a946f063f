from __future__ import annotations

from typing import Any

from tokenguard.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
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
    400: _response("Bad request", _error_example(code="BAD_REQUEST", message="Bad request")),
    401: _response(
        "Unauthorized", _error_example(code="AUTH_UNAUTHORIZED", message="Missing X-User-Id header")
    ),
    404: _response("Not found", _error_example(code="USER_NOT_FOUND", message="User not found")),
    409: _response(
        "Conflict",
        _error_example(code="CONCURRENCY_CONFLICT", message="Could not serialize update for user u_123"),
    ),
    500: _response("Internal error", _error_example(code="INTERNAL_ERROR", message="Internal server error")),
    503: _response(
        "Database unavailable", _error_example(code="DATABASE_UNAVAILABLE", message="Database unavailable")
    ),
}
