from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Body, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from meterbill.apps.api.deps import ensure_app_matches, get_client_claims, get_db, require_scope
from meterbill.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from meterbill.apps.api.response import SuccessEnvelope, success_response
from meterbill.core.clock import isoformat
from meterbill.services.auth.client_tokens import SCOPE_BILLING_READ, ClientClaims
from meterbill.services.usage.aggregation import GroupBy, aggregate_cogs, aggregate_usage
from meterbill.services.usage.ingestion import UsageEventIn, ingest_events


router = APIRouter(tags=["usage"], responses=DEFAULT_ERROR_RESPONSES)


class IngestResponse(BaseModel):
    accepted: int
    duplicates: int


class UsageGroupResponse(BaseModel):
    key: str
    quantity: int
    event_count: int


class UsageReportResponse(BaseModel):
    team_id: str
    start: str | None
    end: str | None
    group_by: str
    groups: list[UsageGroupResponse]


class CogsGroupResponse(BaseModel):
    app_id: str
    meter_key: str
    cost_minor: int
    event_count: int


class CogsReportResponse(BaseModel):
    team_id: str
    start: str | None
    end: str | None
    total_cost_minor: int
    groups: list[CogsGroupResponse]


@router.post("/apps/{app_id}/usage/events", response_model=SuccessEnvelope[IngestResponse])
async def ingest_usage_events(
    app_id: str,
    request: Request,
    events: list[UsageEventIn] = Body(..., min_length=1),
    claims: ClientClaims = Depends(get_client_claims),
    db: AsyncSession = Depends(get_db),
) -> dict:
    ensure_app_matches(claims, app_id)
    result = await ingest_events(db, app_id=app_id, events=events)
    payload = IngestResponse(accepted=result.accepted, duplicates=result.duplicates)
    return success_response(request=request, data=payload.model_dump())


@router.get("/teams/{team_id}/usage", response_model=SuccessEnvelope[UsageReportResponse])
async def usage_report(
    team_id: str,
    request: Request,
    from_: datetime = Query(..., alias="from"),
    to: datetime = Query(...),
    group_by: GroupBy = Query(..., alias="groupBy"),
    claims: ClientClaims = Depends(require_scope(SCOPE_BILLING_READ)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    groups = await aggregate_usage(
        db, team_id=team_id, start=from_, end=to, group_by=group_by, app_id=claims.app_id
    )
    payload = UsageReportResponse(
        team_id=team_id,
        start=isoformat(from_),
        end=isoformat(to),
        group_by=group_by,
        groups=[
            UsageGroupResponse(key=group.key, quantity=group.quantity, event_count=group.event_count)
            for group in groups
        ],
    )
    return success_response(request=request, data=payload.model_dump())


@router.get("/teams/{team_id}/cogs", response_model=SuccessEnvelope[CogsReportResponse])
async def cogs_report(
    team_id: str,
    request: Request,
    from_: datetime = Query(..., alias="from"),
    to: datetime = Query(...),
    claims: ClientClaims = Depends(require_scope(SCOPE_BILLING_READ)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    groups = await aggregate_cogs(db, team_id=team_id, start=from_, end=to, app_id=claims.app_id)
    payload = CogsReportResponse(
        team_id=team_id,
        start=isoformat(from_),
        end=isoformat(to),
        total_cost_minor=sum(group.cost_minor for group in groups),
        groups=[
            CogsGroupResponse(
                app_id=group.app_id,
                meter_key=group.meter_key,
                cost_minor=group.cost_minor,
                event_count=group.event_count,
            )
            for group in groups
        ],
    )
    return success_response(request=request, data=payload.model_dump())
