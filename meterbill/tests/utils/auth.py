from __future__ import annotations

import time
from typing import Iterable
from uuid import uuid4

import jwt

from meterbill.services.auth.client_tokens import SCOPE_BILLING_READ, SCOPE_USAGE_WRITE


DEFAULT_SCOPES = (SCOPE_USAGE_WRITE, SCOPE_BILLING_READ)


def mint_client_token(
    *,
    app_id: str,
    kid: str,
    secret: str,
    scopes: Iterable[str] = DEFAULT_SCOPES,
    subject: str = "svc-test",
    audience: str = "billing-service",
    issuer: str | None = None,
    expires_in_s: int = 300,
    jti: str | None = None,
) -> str:
    # Sign the way an integrating app would: HS256 with the kid in the header.
    now = int(time.time())
    claims = {
        "iss": issuer or f"app:{app_id}",
        "aud": audience,
        "sub": subject,
        "jti": jti or uuid4().hex,
        "iat": now,
        "exp": now + expires_in_s,
        "scopes": list(scopes),
    }
    return jwt.encode(claims, secret, algorithm="HS256", headers={"kid": kid})


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def client_headers(*, app_id: str, kid: str, secret: str, scopes: Iterable[str] = DEFAULT_SCOPES) -> dict[str, str]:
    # Fresh jti per call; tokens are single use.
    return bearer(mint_client_token(app_id=app_id, kid=kid, secret=secret, scopes=scopes))
