from __future__ import annotations

import logging
from typing import Any, Sequence

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from meterbill.apps.api.response import error_response
from meterbill.core.errors import MeterbillError


logger = logging.getLogger(__name__)

INTERNAL_ERROR_MESSAGE = "Internal server error"

# Fallback codes for HTTP errors raised without an explicit code (router 404/405, auth).
_STATUS_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    415: "UNSUPPORTED_MEDIA_TYPE",
    503: "SERVICE_UNAVAILABLE",
}


def _envelope(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


def field_path(loc: Sequence[Any]) -> str:
    """Render a pydantic error location, e.g. ("body", "events", 0, "team_id") -> "body.events[0].team_id"."""
    rendered = ""
    for part in loc:
        if isinstance(part, int):
            rendered += f"[{part}]"
        else:
            rendered = f"{rendered}.{part}" if rendered else str(part)
    return rendered


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Dependencies raise HTTPException(detail={"code", "message", ...}); plain strings get a status code.
    fallback = _STATUS_CODES.get(exc.status_code, "UNKNOWN_ERROR")
    detail = exc.detail
    if isinstance(detail, dict):
        extra = {key: value for key, value in detail.items() if key not in ("code", "message")}
        return _envelope(
            request,
            exc.status_code,
            str(detail.get("code") or fallback),
            str(detail.get("message") or "Request failed"),
            extra or None,
            exc.headers,
        )
    message = detail if isinstance(detail, str) and detail else "Request failed"
    return _envelope(request, exc.status_code, fallback, message, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    issues = [
        {"field": field_path(error.get("loc", ())), "message": error.get("msg", "Invalid value")}
        for error in exc.errors()
    ]
    return _envelope(request, 400, "VALIDATION_ERROR", "Validation error", {"issues": issues})


async def domain_exception_handler(request: Request, exc: MeterbillError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("domain_error code=%s message=%s", exc.code, exc.message, exc_info=exc)
        return _envelope(request, 500, "INTERNAL_ERROR", INTERNAL_ERROR_MESSAGE)
    return _envelope(request, exc.status_code, exc.code, exc.message, exc.details)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Stack traces go to the log only.
    logger.error("unhandled_exception method=%s path=%s", request.method, request.url.path, exc_info=exc)
    return _envelope(request, 500, "INTERNAL_ERROR", INTERNAL_ERROR_MESSAGE)


def register_exception_handlers(app: FastAPI) -> None:
    # FastAPI's HTTPException subclasses Starlette's, so one handler covers both.
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(MeterbillError, domain_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
