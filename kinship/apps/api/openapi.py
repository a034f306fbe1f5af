from __future__ import annotations

from typing import Any

from kinship.apps.api.response import ErrorEnvelope


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


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    401: _response(
        "Unauthorized",
        _error_example(code="AUTH_UNAUTHORIZED", message="Missing authenticated user header"),
    ),
    403: _response(
        "Forbidden",
        _error_example(
            code="PERMISSION_DENIED",
            message="Not in same tenant",
            details={"reason": "Not in same tenant"},
        ),
    ),
    404: _response(
        "Not found",
        _error_example(code="NOT_FOUND", message="Approval ticket not found: 3f2a"),
    ),
    409: _response(
        "Conflict",
        _error_example(
            code="CONFLICT",
            message="Ticket has already been approved",
            details={"current_status": "approved"},
        ),
    ),
    422: _response(
        "Validation error",
        _error_example(code="VALIDATION_ERROR", message="Invalid entity type: family"),
    ),
    500: _response(
        "Internal server error",
        _error_example(code="INTERNAL_ERROR", message="Internal server error"),
    ),
}
