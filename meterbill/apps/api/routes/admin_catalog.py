from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field, model_validator
from sqlalchemy.ext.asyncio import AsyncSession

from meterbill.apps.api.deps import get_db, require_admin
from meterbill.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from meterbill.apps.api.response import SuccessEnvelope, success_response
from meterbill.core.clock import isoformat
from meterbill.domain.enums import BillingPeriod, ContractStatus
from meterbill.domain.models import Contract, ContractOverride
from meterbill.services import catalog
from meterbill.services.catalog import BundleAppIn, ContractOverrideIn, MeterPolicyIn


router = APIRouter(
    prefix="/admin",
    tags=["admin-catalog"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(require_admin)],
)


class BundleCreateRequest(BaseModel):
    code: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=255)
    apps: list[BundleAppIn] = Field(default_factory=list)
    meter_policies: list[MeterPolicyIn] = Field(default_factory=list)


class BundleUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    status: str | None = None
    apps: list[BundleAppIn] | None = None
    meter_policies: list[MeterPolicyIn] | None = None


class ContractCreateRequest(BaseModel):
    billing_entity_id: str = Field(min_length=1)
    bundle_ids: list[str] = Field(min_length=1)
    starts_at: datetime
    ends_at: datetime | None = None
    billing_period: BillingPeriod = BillingPeriod.MONTHLY
    currency: str = Field(default="usd", min_length=3, max_length=3)
    terms_days: int = Field(default=30, ge=0)
    base_fee_minor: int = Field(default=0, ge=0)
    requires_review: bool = False

    @model_validator(mode="after")
    def _check_window(self) -> "ContractCreateRequest":
        if self.ends_at is not None and self.ends_at <= self.starts_at:
            raise ValueError("ends_at must be after starts_at")
        return self


class ContractStatusRequest(BaseModel):
    status: ContractStatus


def _contract_payload(contract: Contract, bundle_ids: list[str]) -> dict[str, Any]:
    return {
        "id": contract.id,
        "billing_entity_id": contract.billing_entity_id,
        "status": contract.status,
        "currency": contract.currency,
        "billing_period": contract.billing_period,
        "terms_days": contract.terms_days,
        "base_fee_minor": contract.base_fee_minor,
        "requires_review": contract.requires_review,
        "starts_at": isoformat(contract.starts_at),
        "ends_at": isoformat(contract.ends_at),
        "bundle_ids": bundle_ids,
    }


def _override_payload(row: ContractOverride) -> dict[str, Any]:
    return {
        "id": row.id,
        "contract_id": row.contract_id,
        "app_id": row.app_id,
        "meter_key": row.meter_key,
        "limit_type": row.limit_type,
        "included_amount": row.included_amount,
        "enforcement": row.enforcement,
        "overage_billing": row.overage_billing,
        "unit_price_minor": str(row.unit_price_minor) if row.unit_price_minor is not None else None,
        "overage_tiers": row.overage_tiers,
        "feature_flags": row.feature_flags,
        "notes": row.notes,
    }


@router.post("/bundles", status_code=status.HTTP_201_CREATED, response_model=SuccessEnvelope[dict[str, Any]])
async def create_bundle(
    payload: BundleCreateRequest, request: Request, db: AsyncSession = Depends(get_db)
) -> dict:
    detail = await catalog.create_bundle(
        db, code=payload.code, name=payload.name, apps=payload.apps, policies=payload.meter_policies
    )
    return success_response(request=request, data=detail.to_dict())


@router.get("/bundles/{bundle_id}", response_model=SuccessEnvelope[dict[str, Any]])
async def get_bundle(bundle_id: str, request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    detail = await catalog.get_bundle(db, bundle_id)
    return success_response(request=request, data=detail.to_dict())


@router.patch("/bundles/{bundle_id}", response_model=SuccessEnvelope[dict[str, Any]])
async def update_bundle(
    bundle_id: str, payload: BundleUpdateRequest, request: Request, db: AsyncSession = Depends(get_db)
) -> dict:
    detail = await catalog.update_bundle(
        db,
        bundle_id=bundle_id,
        name=payload.name,
        status=payload.status,
        apps=payload.apps,
        policies=payload.meter_policies,
    )
    return success_response(request=request, data=detail.to_dict())


@router.post("/contracts", status_code=status.HTTP_201_CREATED, response_model=SuccessEnvelope[dict[str, Any]])
async def create_contract(
    payload: ContractCreateRequest, request: Request, db: AsyncSession = Depends(get_db)
) -> dict:
    contract = await catalog.create_contract(
        db,
        billing_entity_id=payload.billing_entity_id,
        bundle_ids=payload.bundle_ids,
        starts_at=payload.starts_at,
        ends_at=payload.ends_at,
        billing_period=payload.billing_period,
        currency=payload.currency,
        terms_days=payload.terms_days,
        base_fee_minor=payload.base_fee_minor,
        requires_review=payload.requires_review,
    )
    bundle_ids = await catalog.contract_bundle_ids(db, contract.id)
    return success_response(request=request, data=_contract_payload(contract, bundle_ids))


@router.get("/contracts/{contract_id}", response_model=SuccessEnvelope[dict[str, Any]])
async def get_contract(contract_id: str, request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    contract = await catalog.get_contract(db, contract_id)
    bundle_ids = await catalog.contract_bundle_ids(db, contract_id)
    return success_response(request=request, data=_contract_payload(contract, bundle_ids))


@router.post("/contracts/{contract_id}/status", response_model=SuccessEnvelope[dict[str, Any]])
async def set_contract_status(
    contract_id: str, payload: ContractStatusRequest, request: Request, db: AsyncSession = Depends(get_db)
) -> dict:
    contract = await catalog.set_contract_status(db, contract_id=contract_id, status=payload.status)
    bundle_ids = await catalog.contract_bundle_ids(db, contract_id)
    return success_response(request=request, data=_contract_payload(contract, bundle_ids))


@router.get("/contracts/{contract_id}/overrides", response_model=SuccessEnvelope[list[dict[str, Any]]])
async def list_overrides(contract_id: str, request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    rows = await catalog.list_contract_overrides(db, contract_id)
    return success_response(request=request, data=[_override_payload(row) for row in rows])


@router.put("/contracts/{contract_id}/overrides", response_model=SuccessEnvelope[dict[str, Any]])
async def upsert_override(
    contract_id: str, payload: ContractOverrideIn, request: Request, db: AsyncSession = Depends(get_db)
) -> dict:
    row = await catalog.upsert_contract_override(db, contract_id=contract_id, override=payload)
    return success_response(request=request, data=_override_payload(row))
