from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, model_validator
from sqlalchemy.ext.asyncio import AsyncSession

from meterbill.apps.api.deps import AdminContext, get_app_settings, get_database, get_db, require_admin
from meterbill.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from meterbill.apps.api.response import SuccessEnvelope, success_response
from meterbill.core.config import Settings
from meterbill.persistence.db import Database
from meterbill.services.billing import (
    PeriodCloseService,
    export_invoice,
    generate_invoice,
    get_invoice,
    issue_invoice,
    mark_invoice_paid,
    revert_invoice_to_draft,
    void_invoice,
)


router = APIRouter(
    prefix="/admin",
    tags=["admin-billing"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(require_admin)],
)


class InvoiceGenerateRequest(BaseModel):
    period_start: datetime
    period_end: datetime

    @model_validator(mode="after")
    def _check_window(self) -> "InvoiceGenerateRequest":
        if self.period_end <= self.period_start:
            raise ValueError("period_end must be after period_start")
        return self


class PeriodCloseRequest(BaseModel):
    # Evaluate "most recently ended period" as of this instant; defaults to now.
    as_of: datetime | None = None


@router.post(
    "/teams/{team_id}/invoices/generate",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[dict[str, Any]],
)
async def generate_team_invoice(
    team_id: str,
    payload: InvoiceGenerateRequest,
    request: Request,
    admin: AdminContext = Depends(require_admin),
    settings: Settings = Depends(get_app_settings),
    db: AsyncSession = Depends(get_db),
) -> dict:
    record = await generate_invoice(
        db,
        team_id=team_id,
        period_start=payload.period_start,
        period_end=payload.period_end,
        actor=admin.actor,
        request_id=admin.request_id,
        settings=settings,
    )
    return success_response(request=request, data=record.to_dict())


@router.get("/invoices/{invoice_id}", response_model=SuccessEnvelope[dict[str, Any]])
async def get_invoice_detail(invoice_id: str, request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    record = await get_invoice(db, invoice_id)
    return success_response(request=request, data=record.to_dict())


@router.get("/invoices/{invoice_id}/export", response_model=SuccessEnvelope[dict[str, Any]])
async def export_invoice_detail(invoice_id: str, request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    payload = await export_invoice(db, invoice_id)
    return success_response(request=request, data=payload)


@router.post("/invoices/{invoice_id}/mark-paid", response_model=SuccessEnvelope[dict[str, Any]])
async def mark_paid(
    invoice_id: str,
    request: Request,
    admin: AdminContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    record = await mark_invoice_paid(db, invoice_id, actor=admin.actor, request_id=admin.request_id)
    return success_response(request=request, data=record.to_dict())


@router.post("/invoices/{invoice_id}/issue", response_model=SuccessEnvelope[dict[str, Any]])
async def issue(
    invoice_id: str,
    request: Request,
    admin: AdminContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    record = await issue_invoice(db, invoice_id, actor=admin.actor, request_id=admin.request_id)
    return success_response(request=request, data=record.to_dict())


@router.post("/invoices/{invoice_id}/revert-to-draft", response_model=SuccessEnvelope[dict[str, Any]])
async def revert_to_draft(
    invoice_id: str,
    request: Request,
    admin: AdminContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    record = await revert_invoice_to_draft(db, invoice_id, actor=admin.actor, request_id=admin.request_id)
    return success_response(request=request, data=record.to_dict())


@router.post("/invoices/{invoice_id}/void", response_model=SuccessEnvelope[dict[str, Any]])
async def void(
    invoice_id: str,
    request: Request,
    admin: AdminContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    record = await void_invoice(db, invoice_id, actor=admin.actor, request_id=admin.request_id)
    return success_response(request=request, data=record.to_dict())


@router.post("/period-close/run", response_model=SuccessEnvelope[dict[str, Any]])
async def run_period_close(
    request: Request,
    payload: PeriodCloseRequest | None = None,
    database: Database = Depends(get_database),
    settings: Settings = Depends(get_app_settings),
) -> dict:
    # Same code path as the scheduled worker; safe to run while it is running.
    service = PeriodCloseService(database, settings=settings)
    result = await service.run_period_close(as_of=payload.as_of if payload is not None else None)
    return success_response(request=request, data=result.to_dict())
