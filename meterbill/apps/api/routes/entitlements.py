from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from meterbill.apps.api.deps import ensure_app_matches, get_client_claims, get_db
from meterbill.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from meterbill.apps.api.response import SuccessEnvelope, success_response
from meterbill.services.auth.client_tokens import ClientClaims
from meterbill.services.entitlements import resolve_entitlements


router = APIRouter(tags=["entitlements"], responses=DEFAULT_ERROR_RESPONSES)


class EntitlementsResponse(BaseModel):
    app_id: str
    team_id: str
    billing_mode: str
    billable: bool
    contract_id: str | None
    features: dict[str, Any]
    meters: dict[str, dict[str, Any]]


@router.get("/apps/{app_id}/teams/{team_id}/entitlements", response_model=SuccessEnvelope[EntitlementsResponse])
async def get_entitlements(
    app_id: str,
    team_id: str,
    request: Request,
    claims: ClientClaims = Depends(get_client_claims),
    db: AsyncSession = Depends(get_db),
) -> dict:
    ensure_app_matches(claims, app_id)
    entitlements = await resolve_entitlements(db, app_id=app_id, team_id=team_id)
    return success_response(request=request, data=entitlements.to_dict())
