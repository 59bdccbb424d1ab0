from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from meterbill.core.config import Settings
from meterbill.domain.enums import ChargeType
from meterbill.domain.models import Contract
from meterbill.domain.policies import MeterPolicy
from meterbill.services.entitlements import resolve_entitlements
from meterbill.services.pricing import (
    CustomPricingProvider,
    CustomPricingRequest,
    compute_overage,
    price_custom,
)
from meterbill.services.usage.aggregation import usage_by_meter


@dataclass(frozen=True)
class DraftLine:
    charge_type: ChargeType
    description: str
    quantity: int
    unit_price_minor: Decimal
    amount_minor: int
    app_id: str | None = None
    meter_key: str | None = None
    flagged: bool = False
    flag_reason: str | None = None
    usage_summary: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class InvoiceDraft:
    lines: tuple[DraftLine, ...]

    @property
    def total_minor(self) -> int:
        # Exact integer sum; every line is already rounded once.
        return sum(line.amount_minor for line in self.lines)

    @property
    def requires_review(self) -> bool:
        return any(line.flagged for line in self.lines)


async def build_invoice_draft(
    session: AsyncSession,
    *,
    team_id: str,
    billing_entity_id: str,
    contract: Contract | None,
    period_start: datetime,
    period_end: datetime,
    settings: Settings,
    custom_pricing: CustomPricingProvider,
) -> InvoiceDraft:
    """Price one billing window: optional base fee plus one line per overage meter."""
    lines: list[DraftLine] = []
    if contract is not None and contract.base_fee_minor > 0:
        lines.append(
            DraftLine(
                charge_type=ChargeType.BASE_FEE,
                description=f"{contract.billing_period.lower()} base fee",
                quantity=1,
                unit_price_minor=Decimal(contract.base_fee_minor),
                amount_minor=int(contract.base_fee_minor),
            )
        )

    usage = await usage_by_meter(
        session, billing_entity_id=billing_entity_id, start=period_start, end=period_end
    )
    by_app: dict[str, dict[str, int]] = {}
    for (app_id, meter_key), quantity in usage.items():
        by_app.setdefault(app_id, {})[meter_key] = quantity

    for app_id in sorted(by_app):
        meters = by_app[app_id]
        entitlements = await resolve_entitlements(session, app_id=app_id, team_id=team_id)
        for meter_key in sorted(meters):
            policy = entitlements.meters.get(meter_key, MeterPolicy())
            charge = compute_overage(
                app_id=app_id,
                meter_key=meter_key,
                usage=meters[meter_key],
                policy=policy,
                hard_limit_overage_mode=settings.hard_limit_overage_mode,
                rounding=settings.overage_rounding,
            )
            if charge is None:
                continue
            if charge.charge_type == ChargeType.CUSTOM:
                charge = await price_custom(
                    charge,
                    CustomPricingRequest(
                        contract_id=contract.id if contract is not None else None,
                        team_id=team_id,
                        app_id=app_id,
                        meter_key=meter_key,
                        usage=charge.usage,
                        included=charge.included,
                        excess=charge.excess,
                        period_start=period_start,
                        period_end=period_end,
                    ),
                    custom_pricing,
                )
            lines.append(
                DraftLine(
                    charge_type=charge.charge_type,
                    description=charge.description,
                    quantity=charge.excess,
                    unit_price_minor=charge.unit_price_minor,
                    amount_minor=charge.amount_minor,
                    app_id=app_id,
                    meter_key=meter_key,
                    flagged=charge.flagged,
                    flag_reason=charge.flag_reason,
                    usage_summary=charge.usage_summary(),
                )
            )
    return InvoiceDraft(lines=tuple(lines))
