from __future__ import annotations

from datetime import datetime, timezone
import logging

import jwt
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from meterbill.core.config import Settings
from meterbill.core.errors import SecretFormatError
from meterbill.domain.enums import SecretStatus
from meterbill.domain.models import AppSecret, JtiUsage
from meterbill.persistence.claims import insert_or_conflict
from meterbill.services.crypto.secrets import decrypt_secret


logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
ISSUER_PREFIX = "app:"
SCOPE_BILLING_READ = "billing:read"
SCOPE_USAGE_WRITE = "usage:write"


class ClientTokenError(Exception):
    """Client token rejected; the message is safe to return to callers."""


class ClientClaims(BaseModel):
    app_id: str
    subject: str
    scopes: list[str]
    jti: str
    kid: str

    def has_scope(self, scope: str) -> bool:
        return scope in self.scopes


def _parse_scopes(raw: object) -> list[str]:
    # Accept either a JSON list or an OAuth-style space-delimited string.
    if isinstance(raw, str):
        return [scope for scope in raw.split() if scope]
    if isinstance(raw, list):
        return [str(scope) for scope in raw]
    return []


async def verify_client_token(session: AsyncSession, token: str, *, settings: Settings) -> ClientClaims:
    """Verify an app-signed HS256 token and burn its jti so it cannot be replayed."""
    try:
        header = jwt.get_unverified_header(token)
    except jwt.InvalidTokenError as exc:
        raise ClientTokenError("Malformed JWT") from exc
    if header.get("alg") != ALGORITHM:
        raise ClientTokenError("Unsupported JWT algorithm")
    kid = header.get("kid")
    if not kid:
        raise ClientTokenError("Missing JWT kid")

    secret = (await session.execute(select(AppSecret).where(AppSecret.kid == kid))).scalar_one_or_none()
    if secret is None or secret.status != SecretStatus.ACTIVE.value:
        raise ClientTokenError("Unknown or revoked signing key")
    try:
        signing_key = decrypt_secret(secret.secret_encrypted)
    except SecretFormatError as exc:
        logger.error("app_secret_decrypt_failed kid=%s", kid)
        raise ClientTokenError("Unknown or revoked signing key") from exc

    try:
        claims = jwt.decode(
            token,
            signing_key,
            algorithms=[ALGORITHM],
            audience=settings.jwt_audience,
            issuer=f"{ISSUER_PREFIX}{secret.app_id}",
            leeway=settings.jwt_leeway_s,
            options={"require": ["exp", "iat", "iss", "aud", "sub", "jti"]},
        )
    except jwt.ExpiredSignatureError as exc:
        raise ClientTokenError("JWT expired") from exc
    except jwt.InvalidAudienceError as exc:
        raise ClientTokenError("Invalid JWT audience") from exc
    except jwt.InvalidIssuerError as exc:
        raise ClientTokenError("Invalid JWT issuer") from exc
    except jwt.InvalidSignatureError as exc:
        raise ClientTokenError("Invalid JWT signature") from exc
    except jwt.MissingRequiredClaimError as exc:
        raise ClientTokenError(f"Missing JWT claim: {exc.claim}") from exc
    except jwt.InvalidTokenError as exc:
        raise ClientTokenError("Invalid JWT") from exc

    expires_at = datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc)
    fresh = await insert_or_conflict(
        session,
        JtiUsage,
        {"jti": str(claims["jti"]), "app_id": secret.app_id, "expires_at": expires_at},
    )
    await session.commit()
    if not fresh:
        logger.warning("client_token_replay app_id=%s jti=%s", secret.app_id, claims["jti"])
        raise ClientTokenError("JWT has already been used")

    return ClientClaims(
        app_id=secret.app_id,
        subject=str(claims["sub"]),
        scopes=_parse_scopes(claims.get("scopes", claims.get("scope"))),
        jti=str(claims["jti"]),
        kid=kid,
    )
