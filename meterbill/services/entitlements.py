from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from meterbill.core.errors import TeamNotFoundError
from meterbill.domain.enums import Enforcement, LimitType, OverageBilling
from meterbill.domain.models import (
    BillingEntity,
    Bundle,
    BundleApp,
    BundleMeterPolicy,
    Contract,
    ContractBundle,
    ContractOverride,
    Team,
)
from meterbill.domain.policies import MeterPolicy, apply_override, merge_policies, parse_tiers, to_decimal


@dataclass(frozen=True)
class EntitlementSet:
    app_id: str
    team_id: str
    billing_mode: str
    billable: bool
    contract_id: str | None = None
    features: dict[str, Any] = field(default_factory=dict)
    meters: dict[str, MeterPolicy] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "app_id": self.app_id,
            "team_id": self.team_id,
            "billing_mode": self.billing_mode,
            "billable": self.billable,
            "contract_id": self.contract_id,
            "features": dict(self.features),
            "meters": {key: policy.to_dict() for key, policy in sorted(self.meters.items())},
        }


def _policy_from_row(row: BundleMeterPolicy, bundle_code: str) -> MeterPolicy:
    return MeterPolicy(
        limit_type=LimitType(row.limit_type),
        included_amount=row.included_amount,
        enforcement=Enforcement(row.enforcement),
        overage_billing=OverageBilling(row.overage_billing),
        unit_price_minor=to_decimal(row.unit_price_minor),
        overage_tiers=parse_tiers(row.overage_tiers),
        source=bundle_code,
    )


def _merge_features(flag_sets: list[dict[str, Any]]) -> dict[str, Any]:
    # Boolean flags are enabled if any bundle enables them; other values follow bundle code order.
    merged: dict[str, Any] = {}
    for flags in flag_sets:
        for key, value in (flags or {}).items():
            if isinstance(value, bool) and isinstance(merged.get(key), bool):
                merged[key] = merged[key] or value
            else:
                merged[key] = value
    return merged


async def active_contract_for_team(session: AsyncSession, team_id: str) -> Contract | None:
    billing_entity_id = (
        await session.execute(select(BillingEntity.id).where(BillingEntity.team_id == team_id))
    ).scalar_one_or_none()
    if billing_entity_id is None:
        return None
    return (
        await session.execute(
            select(Contract).where(Contract.billing_entity_id == billing_entity_id, Contract.status == "ACTIVE")
        )
    ).scalar_one_or_none()


async def resolve_entitlements(session: AsyncSession, *, app_id: str, team_id: str) -> EntitlementSet:
    """Effective features and meter policies for one (app, team) pair.

    Read-only and uncached: safe to call concurrently with itself or with any writer.
    """
    team = await session.get(Team, team_id)
    if team is None:
        raise TeamNotFoundError(team_id)
    contract = await active_contract_for_team(session, team_id)
    if contract is None:
        return EntitlementSet(app_id=app_id, team_id=team_id, billing_mode=team.billing_mode, billable=False)

    bundle_rows = (
        await session.execute(
            select(Bundle.id, Bundle.code)
            .join(ContractBundle, ContractBundle.bundle_id == Bundle.id)
            .where(ContractBundle.contract_id == contract.id)
            .order_by(Bundle.code)
        )
    ).all()
    bundle_codes = {bundle_id: code for bundle_id, code in bundle_rows}
    bundle_ids = list(bundle_codes)

    app_links = (
        await session.execute(
            select(BundleApp).where(BundleApp.bundle_id.in_(bundle_ids), BundleApp.app_id == app_id)
        )
    ).scalars().all()
    app_links = sorted(app_links, key=lambda link: bundle_codes[link.bundle_id])

    policy_rows = (
        await session.execute(
            select(BundleMeterPolicy).where(
                BundleMeterPolicy.bundle_id.in_(bundle_ids), BundleMeterPolicy.app_id == app_id
            )
        )
    ).scalars().all()
    variants: dict[str, list[MeterPolicy]] = defaultdict(list)
    for row in policy_rows:
        variants[row.meter_key].append(_policy_from_row(row, bundle_codes[row.bundle_id]))
    meters = {meter_key: merge_policies(candidates) for meter_key, candidates in variants.items()}
    features = _merge_features([link.default_feature_flags for link in app_links])

    overrides = (
        await session.execute(
            select(ContractOverride)
            .where(ContractOverride.contract_id == contract.id, ContractOverride.app_id == app_id)
            .order_by(ContractOverride.meter_key)
        )
    ).scalars().all()
    for override in overrides:
        meters[override.meter_key] = apply_override(
            meters.get(override.meter_key),
            {
                "limit_type": override.limit_type,
                "included_amount": override.included_amount,
                "enforcement": override.enforcement,
                "overage_billing": override.overage_billing,
                "unit_price_minor": override.unit_price_minor,
                "overage_tiers": override.overage_tiers,
            },
        )
        if override.feature_flags:
            features.update(override.feature_flags)

    return EntitlementSet(
        app_id=app_id,
        team_id=team_id,
        billing_mode=team.billing_mode,
        billable=bool(app_links or meters),
        contract_id=contract.id,
        features=features,
        meters=meters,
    )
