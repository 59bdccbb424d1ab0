from __future__ import annotations

import hmac
import logging
from typing import AsyncGenerator

from fastapi import Depends, Header, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from meterbill.apps.api.response import get_request_id
from meterbill.core.config import Settings, get_settings
from meterbill.persistence.db import Database
from meterbill.services.auth.client_tokens import ClientClaims, ClientTokenError, verify_client_token


logger = logging.getLogger(__name__)

ADMIN_ACTOR = "admin"


def get_database(request: Request) -> Database:
    return request.app.state.database


def get_app_settings(request: Request) -> Settings:
    # Prefer the settings the app was built with; fall back to process settings.
    return getattr(request.app.state, "settings", None) or get_settings()


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    # Request-scoped session from the injected Database handle.
    async with get_database(request).session() as session:
        yield session


class AdminContext(BaseModel):
    # Identify the operator for audit entries on admin mutations.
    actor: str
    request_id: str


def _auth_error(message: str) -> HTTPException:
    # 401 carries a Bearer challenge so clients know to re-mint.
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _forbidden_error(message: str) -> HTTPException:
    # Use 403 for callers that reached a route they may not use.
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


async def require_admin(
    request: Request,
    x_admin_api_key: str | None = Header(default=None, alias="X-Admin-Api-Key"),
    settings: Settings = Depends(get_app_settings),
) -> AdminContext:
    # Distinct messages let operators tell a misconfigured deployment from a bad key.
    if not x_admin_api_key:
        raise _forbidden_error("Missing admin API key")
    expected = settings.admin_api_key
    if not expected:
        logger.error("admin_api_key_not_configured path=%s", request.url.path)
        raise _forbidden_error("Admin access is not configured")
    if not hmac.compare_digest(x_admin_api_key.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("admin_api_key_invalid path=%s", request.url.path)
        raise _forbidden_error("Invalid admin API key")
    return AdminContext(actor=ADMIN_ACTOR, request_id=get_request_id(request))


async def get_client_claims(
    authorization: str | None = Header(default=None),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> ClientClaims:
    if not authorization:
        raise _auth_error("Missing Authorization header")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        raise _auth_error("Malformed Authorization header")
    token = token.strip()
    if not token:
        raise _auth_error("Empty bearer token")
    try:
        return await verify_client_token(db, token, settings=settings)
    except ClientTokenError as exc:
        logger.info("client_token_rejected reason=%s", exc)
        raise _auth_error(str(exc)) from exc


def require_scope(scope: str):
    # Dependency factory mirroring role checks: authenticate first, then authorize.
    async def _require_scope(claims: ClientClaims = Depends(get_client_claims)) -> ClientClaims:
        if not claims.has_scope(scope):
            raise _forbidden_error(f"Insufficient scopes: {scope} required")
        return claims

    return _require_scope


def ensure_app_matches(claims: ClientClaims, app_id: str) -> None:
    # Client tokens are bound to one app; cross-app calls are forbidden.
    if claims.app_id != app_id:
        raise _forbidden_error("JWT appId does not match route appId")
