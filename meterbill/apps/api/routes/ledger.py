from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from meterbill.apps.api.deps import ensure_app_matches, get_db, require_scope
from meterbill.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from meterbill.apps.api.response import SuccessEnvelope, success_response
from meterbill.domain.enums import LedgerEntryType
from meterbill.services.auth.client_tokens import SCOPE_BILLING_READ, ClientClaims
from meterbill.services.billing.ledger import (
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    entry_to_dict,
    get_balance,
    list_entries,
    resolve_billing_entity_id,
)


router = APIRouter(tags=["ledger"], responses=DEFAULT_ERROR_RESPONSES)


class LedgerEntryResponse(BaseModel):
    id: str
    app_id: str
    billing_entity_id: str
    ledger_account_id: str
    occurred_at: str | None
    entry_type: str
    amount_minor: int
    currency: str
    reference_type: str
    reference_id: str | None
    idempotency_key: str
    metadata: dict[str, Any]


class LedgerPageResponse(BaseModel):
    entries: list[LedgerEntryResponse]
    total: int
    limit: int
    offset: int
    receivable_balance_minor: int


@router.get("/apps/{app_id}/teams/{team_id}/ledger", response_model=SuccessEnvelope[LedgerPageResponse])
async def get_ledger(
    app_id: str,
    team_id: str,
    request: Request,
    from_: datetime | None = Query(None, alias="from"),
    to: datetime | None = Query(None),
    entry_type: LedgerEntryType | None = Query(None, alias="type"),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    claims: ClientClaims = Depends(require_scope(SCOPE_BILLING_READ)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    ensure_app_matches(claims, app_id)
    billing_entity_id = await resolve_billing_entity_id(db, team_id=team_id, app_id=app_id)
    page = await list_entries(
        db,
        app_id=app_id,
        billing_entity_id=billing_entity_id,
        start=from_,
        end=to,
        entry_type=entry_type,
        limit=limit,
        offset=offset,
    )
    balance = await get_balance(db, app_id=app_id, billing_entity_id=billing_entity_id)
    payload = LedgerPageResponse(
        entries=[LedgerEntryResponse(**entry_to_dict(entry)) for entry in page.entries],
        total=page.total,
        limit=limit,
        offset=offset,
        receivable_balance_minor=balance,
    )
    return success_response(request=request, data=payload.model_dump())
