from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
import logging
from typing import Any

from pydantic import BaseModel, Field, model_validator
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from meterbill.core.clock import ensure_utc, utc_now
from meterbill.core.errors import (
    ActiveContractExistsError,
    AppNotFoundError,
    BillingEntityNotFoundError,
    BundleCodeConflictError,
    BundleNotFoundError,
    ContractNotFoundError,
    InvalidContractStatusError,
)
from meterbill.domain.enums import (
    BillingPeriod,
    ContractStatus,
    Enforcement,
    LimitType,
    OverageBilling,
)
from meterbill.domain.models import (
    App,
    BillingEntity,
    Bundle,
    BundleApp,
    BundleMeterPolicy,
    Contract,
    ContractBundle,
    ContractOverride,
    new_id,
)
from meterbill.domain.policies import parse_tiers
from meterbill.persistence.claims import insert_or_conflict


logger = logging.getLogger(__name__)

# Allowed contract lifecycle moves: DRAFT -> ACTIVE <-> PAUSED -> ENDED.
_CONTRACT_TRANSITIONS: dict[ContractStatus, tuple[ContractStatus, ...]] = {
    ContractStatus.ACTIVE: (ContractStatus.DRAFT, ContractStatus.PAUSED),
    ContractStatus.PAUSED: (ContractStatus.ACTIVE,),
    ContractStatus.ENDED: (ContractStatus.ACTIVE, ContractStatus.PAUSED, ContractStatus.DRAFT),
}


class PriceTierIn(BaseModel):
    up_to: int | None = Field(default=None, gt=0)
    unit_price_minor: Decimal = Field(ge=0)


class MeterPolicyIn(BaseModel):
    app_id: str
    meter_key: str = Field(min_length=1)
    limit_type: LimitType = LimitType.NONE
    included_amount: int | None = Field(default=None, ge=0)
    enforcement: Enforcement = Enforcement.NONE
    overage_billing: OverageBilling = OverageBilling.NONE
    unit_price_minor: Decimal | None = Field(default=None, ge=0)
    overage_tiers: list[PriceTierIn] | None = None
    notes: str | None = None

    @model_validator(mode="after")
    def _check_caps(self) -> "MeterPolicyIn":
        if self.limit_type in (LimitType.INCLUDED, LimitType.HARD_CAP) and self.included_amount is None:
            raise ValueError("included_amount is required for INCLUDED and HARD_CAP limits")
        return self


class BundleAppIn(BaseModel):
    app_id: str
    default_feature_flags: dict[str, Any] = Field(default_factory=dict)


class ContractOverrideIn(BaseModel):
    app_id: str
    meter_key: str = Field(min_length=1)
    limit_type: LimitType | None = None
    included_amount: int | None = Field(default=None, ge=0)
    enforcement: Enforcement | None = None
    overage_billing: OverageBilling | None = None
    unit_price_minor: Decimal | None = Field(default=None, ge=0)
    overage_tiers: list[PriceTierIn] | None = None
    feature_flags: dict[str, Any] | None = None
    notes: str | None = None


@dataclass(frozen=True)
class BundleDetail:
    bundle: Bundle
    apps: list[BundleApp]
    policies: list[BundleMeterPolicy]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.bundle.id,
            "code": self.bundle.code,
            "name": self.bundle.name,
            "status": self.bundle.status,
            "apps": [
                {"app_id": link.app_id, "default_feature_flags": link.default_feature_flags or {}}
                for link in self.apps
            ],
            "meter_policies": [
                {
                    "app_id": policy.app_id,
                    "meter_key": policy.meter_key,
                    "limit_type": policy.limit_type,
                    "included_amount": policy.included_amount,
                    "enforcement": policy.enforcement,
                    "overage_billing": policy.overage_billing,
                    "unit_price_minor": str(policy.unit_price_minor) if policy.unit_price_minor is not None else None,
                    "overage_tiers": policy.overage_tiers,
                    "notes": policy.notes,
                }
                for policy in self.policies
            ],
        }


def _tiers_json(tiers: list[PriceTierIn] | None) -> list[dict[str, Any]] | None:
    if not tiers:
        return None
    raw = [{"up_to": tier.up_to, "unit_price_minor": str(tier.unit_price_minor)} for tier in tiers]
    # Round-trip through the parser so stored tiers are always ascending and well formed.
    return [tier.to_dict() for tier in parse_tiers(raw)]


async def _require_apps(session: AsyncSession, app_ids: set[str]) -> None:
    if not app_ids:
        return
    found = set((await session.execute(select(App.id).where(App.id.in_(app_ids)))).scalars().all())
    missing = sorted(app_ids - found)
    if missing:
        raise AppNotFoundError(missing[0])


def _stage_bundle_children(
    session: AsyncSession, bundle_id: str, apps: list[BundleAppIn], policies: list[MeterPolicyIn]
) -> None:
    for link in apps:
        session.add(
            BundleApp(
                id=new_id(),
                bundle_id=bundle_id,
                app_id=link.app_id,
                default_feature_flags=dict(link.default_feature_flags),
            )
        )
    for policy in policies:
        session.add(
            BundleMeterPolicy(
                id=new_id(),
                bundle_id=bundle_id,
                app_id=policy.app_id,
                meter_key=policy.meter_key,
                limit_type=policy.limit_type.value,
                included_amount=None if policy.limit_type == LimitType.UNLIMITED else policy.included_amount,
                enforcement=policy.enforcement.value,
                overage_billing=policy.overage_billing.value,
                unit_price_minor=policy.unit_price_minor,
                overage_tiers=_tiers_json(policy.overage_tiers),
                notes=policy.notes,
            )
        )


async def get_bundle(session: AsyncSession, bundle_id: str) -> BundleDetail:
    bundle = await session.get(Bundle, bundle_id)
    if bundle is None:
        raise BundleNotFoundError(bundle_id)
    apps = (
        await session.execute(select(BundleApp).where(BundleApp.bundle_id == bundle_id).order_by(BundleApp.app_id))
    ).scalars().all()
    policies = (
        await session.execute(
            select(BundleMeterPolicy)
            .where(BundleMeterPolicy.bundle_id == bundle_id)
            .order_by(BundleMeterPolicy.app_id, BundleMeterPolicy.meter_key)
        )
    ).scalars().all()
    return BundleDetail(bundle=bundle, apps=list(apps), policies=list(policies))


async def create_bundle(
    session: AsyncSession,
    *,
    code: str,
    name: str,
    apps: list[BundleAppIn],
    policies: list[MeterPolicyIn],
) -> BundleDetail:
    await _require_apps(session, {link.app_id for link in apps} | {policy.app_id for policy in policies})
    bundle_id = new_id()
    now = utc_now()
    inserted = await insert_or_conflict(
        session,
        Bundle,
        {"id": bundle_id, "code": code, "name": name, "status": "ACTIVE", "created_at": now, "updated_at": now},
    )
    if not inserted:
        await session.rollback()
        raise BundleCodeConflictError(code)
    _stage_bundle_children(session, bundle_id, apps, policies)
    await session.commit()
    logger.info("bundle_created bundle_id=%s code=%s", bundle_id, code)
    return await get_bundle(session, bundle_id)


async def update_bundle(
    session: AsyncSession,
    *,
    bundle_id: str,
    name: str | None = None,
    status: str | None = None,
    apps: list[BundleAppIn] | None = None,
    policies: list[MeterPolicyIn] | None = None,
) -> BundleDetail:
    """Patch bundle fields; provided app and policy lists replace the existing ones."""
    bundle = await session.get(Bundle, bundle_id)
    if bundle is None:
        raise BundleNotFoundError(bundle_id)
    await _require_apps(
        session, {link.app_id for link in apps or []} | {policy.app_id for policy in policies or []}
    )
    if name is not None:
        bundle.name = name
    if status is not None:
        bundle.status = status
    bundle.updated_at = utc_now()
    if apps is not None:
        await session.execute(delete(BundleApp).where(BundleApp.bundle_id == bundle_id))
    if policies is not None:
        await session.execute(delete(BundleMeterPolicy).where(BundleMeterPolicy.bundle_id == bundle_id))
    _stage_bundle_children(session, bundle_id, apps or [], policies or [])
    await session.commit()
    return await get_bundle(session, bundle_id)


async def create_contract(
    session: AsyncSession,
    *,
    billing_entity_id: str,
    bundle_ids: list[str],
    starts_at: datetime,
    ends_at: datetime | None = None,
    billing_period: BillingPeriod = BillingPeriod.MONTHLY,
    currency: str = "usd",
    terms_days: int = 30,
    base_fee_minor: int = 0,
    requires_review: bool = False,
) -> Contract:
    if await session.get(BillingEntity, billing_entity_id) is None:
        raise BillingEntityNotFoundError(billing_entity_id)
    for bundle_id in bundle_ids:
        if await session.get(Bundle, bundle_id) is None:
            raise BundleNotFoundError(bundle_id)
    now = utc_now()
    contract = Contract(
        id=new_id(),
        billing_entity_id=billing_entity_id,
        status=ContractStatus.DRAFT.value,
        currency=currency.lower(),
        billing_period=billing_period.value,
        terms_days=terms_days,
        base_fee_minor=base_fee_minor,
        requires_review=requires_review,
        starts_at=ensure_utc(starts_at),
        ends_at=ensure_utc(ends_at) if ends_at is not None else None,
        created_at=now,
        updated_at=now,
    )
    session.add(contract)
    for bundle_id in dict.fromkeys(bundle_ids):
        session.add(ContractBundle(id=new_id(), contract_id=contract.id, bundle_id=bundle_id))
    await session.commit()
    logger.info("contract_created contract_id=%s billing_entity_id=%s", contract.id, billing_entity_id)
    return contract


async def get_contract(session: AsyncSession, contract_id: str) -> Contract:
    contract = await session.get(Contract, contract_id)
    if contract is None:
        raise ContractNotFoundError(contract_id)
    return contract


async def contract_bundle_ids(session: AsyncSession, contract_id: str) -> list[str]:
    rows = await session.execute(
        select(ContractBundle.bundle_id).where(ContractBundle.contract_id == contract_id).order_by(ContractBundle.bundle_id)
    )
    return list(rows.scalars().all())


async def set_contract_status(session: AsyncSession, *, contract_id: str, status: ContractStatus) -> Contract:
    contract = await get_contract(session, contract_id)
    current = ContractStatus(contract.status)
    if current == status:
        return contract
    if current not in _CONTRACT_TRANSITIONS.get(status, ()):
        raise InvalidContractStatusError(contract_id, current.value, status.value)
    billing_entity_id = contract.billing_entity_id
    if status == ContractStatus.ACTIVE:
        other = (
            await session.execute(
                select(Contract.id).where(
                    Contract.billing_entity_id == billing_entity_id,
                    Contract.status == ContractStatus.ACTIVE.value,
                    Contract.id != contract_id,
                )
            )
        ).scalar_one_or_none()
        if other is not None:
            raise ActiveContractExistsError(billing_entity_id)
    contract.status = status.value
    contract.updated_at = utc_now()
    try:
        await session.commit()
    except IntegrityError as exc:
        # The partial unique index caught a concurrent activation.
        await session.rollback()
        raise ActiveContractExistsError(billing_entity_id) from exc
    logger.info("contract_status_changed contract_id=%s status=%s", contract_id, status.value)
    return contract


async def upsert_contract_override(
    session: AsyncSession, *, contract_id: str, override: ContractOverrideIn
) -> ContractOverride:
    await get_contract(session, contract_id)
    await _require_apps(session, {override.app_id})
    row = (
        await session.execute(
            select(ContractOverride).where(
                ContractOverride.contract_id == contract_id,
                ContractOverride.app_id == override.app_id,
                ContractOverride.meter_key == override.meter_key,
            )
        )
    ).scalar_one_or_none()
    if row is None:
        row = ContractOverride(
            id=new_id(), contract_id=contract_id, app_id=override.app_id, meter_key=override.meter_key
        )
        session.add(row)
    row.limit_type = override.limit_type.value if override.limit_type is not None else None
    row.included_amount = override.included_amount
    row.enforcement = override.enforcement.value if override.enforcement is not None else None
    row.overage_billing = override.overage_billing.value if override.overage_billing is not None else None
    row.unit_price_minor = override.unit_price_minor
    row.overage_tiers = _tiers_json(override.overage_tiers)
    row.feature_flags = override.feature_flags
    row.notes = override.notes
    await session.commit()
    return row


async def list_contract_overrides(session: AsyncSession, contract_id: str) -> list[ContractOverride]:
    await get_contract(session, contract_id)
    rows = await session.execute(
        select(ContractOverride)
        .where(ContractOverride.contract_id == contract_id)
        .order_by(ContractOverride.app_id, ContractOverride.meter_key)
    )
    return list(rows.scalars().all())
