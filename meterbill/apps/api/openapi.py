from __future__ import annotations

from typing import Any

from meterbill.apps.api.response import ErrorEnvelope


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
            code="VALIDATION_ERROR",
            message="Validation error",
            details={"issues": [{"field": "events[0].payload.input_tokens", "message": "Field required"}]},
        ),
    ),
    401: _response(
        "Unauthorized",
        _error_example(code="AUTH_UNAUTHORIZED", message="Missing Authorization header"),
    ),
    403: _response(
        "Forbidden",
        _error_example(code="AUTH_FORBIDDEN", message="Insufficient scopes: billing:read required"),
    ),
    404: _response(
        "Not found",
        _error_example(code="NOT_FOUND", message="Team not found"),
    ),
    409: _response(
        "Conflict",
        _error_example(
            code="INVALID_INVOICE_STATUS",
            message="Cannot transition invoice inv_example from VOID to PAID",
            details={"current_status": "VOID", "target_status": "PAID"},
        ),
    ),
    500: _response(
        "Internal error",
        _error_example(code="INTERNAL_ERROR", message="Internal server error"),
    ),
}
