from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, Field


API_VERSION = "v1"
REQUEST_ID_HEADER = "X-Request-Id"

T = TypeVar("T")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = Field(default=API_VERSION)


class ErrorDetail(BaseModel):
    # details is omitted from the wire when empty.
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def get_request_id(request: Request) -> str:
    """Return the correlation id for this request, assigning one on first use.

    The middleware normally sets it; handlers that run before the middleware (or
    direct calls in tests) fall back to a non-blank inbound header, then a uuid4.
    """
    cached = getattr(request.state, "request_id", None)
    if cached:
        return cached
    request_id = (request.headers.get(REQUEST_ID_HEADER) or "").strip() or str(uuid4())
    request.state.request_id = request_id
    return request_id


def _meta(request: Request) -> dict[str, Any]:
    return ResponseMeta(request_id=get_request_id(request)).model_dump()


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    return {"data": data, "meta": _meta(request)}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    detail = ErrorDetail(code=code, message=message, details=details or None)
    return {"error": detail.model_dump(exclude_none=True), "meta": _meta(request)}
