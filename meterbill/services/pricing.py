from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import ROUND_HALF_EVEN, ROUND_HALF_UP, Decimal
import logging
from typing import Any, Protocol

from meterbill.core.errors import CustomPricingError
from meterbill.domain.enums import ChargeType, Enforcement, LimitType, OverageBilling
from meterbill.domain.policies import MeterPolicy, PriceTier


logger = logging.getLogger(__name__)

ROUNDING_MODES = {"half_up": ROUND_HALF_UP, "half_even": ROUND_HALF_EVEN}

FLAG_HARD_LIMIT_EXCEEDED = "hard_limit_exceeded"
FLAG_MISSING_UNIT_PRICE = "missing_unit_price"
FLAG_MISSING_TIERS = "missing_overage_tiers"
FLAG_CUSTOM_PRICING_FAILED = "custom_pricing_failed"


@dataclass(frozen=True)
class TierCharge:
    lower: int
    up_to: int | None
    quantity: int
    unit_price_minor: Decimal
    # Exact, unrounded amount for audit trails.
    amount: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "lower": self.lower,
            "up_to": self.up_to,
            "quantity": self.quantity,
            "unit_price_minor": str(self.unit_price_minor),
            "amount": str(self.amount),
        }


@dataclass(frozen=True)
class MeterCharge:
    app_id: str
    meter_key: str
    charge_type: ChargeType
    usage: int
    included: int
    excess: int
    unit_price_minor: Decimal
    amount_minor: int
    exact_amount: Decimal
    overage_billing: OverageBilling
    flagged: bool = False
    flag_reason: str | None = None
    description: str = ""
    tiers: tuple[TierCharge, ...] = field(default_factory=tuple)

    def usage_summary(self) -> dict[str, Any]:
        summary: dict[str, Any] = {
            "usage": self.usage,
            "included": self.included,
            "excess": self.excess,
            "overage_billing": self.overage_billing.value,
            "exact_amount": str(self.exact_amount),
        }
        if self.tiers:
            summary["tiers"] = [tier.to_dict() for tier in self.tiers]
        return summary


@dataclass(frozen=True)
class CustomPricingRequest:
    contract_id: str | None
    team_id: str
    app_id: str
    meter_key: str
    usage: int
    included: int
    excess: int
    period_start: datetime
    period_end: datetime


@dataclass(frozen=True)
class CustomCharge:
    amount_minor: int
    description: str | None = None


class CustomPricingProvider(Protocol):
    async def price(self, request: CustomPricingRequest) -> CustomCharge: ...


class ManualReviewPricingProvider:
    """Default provider: CUSTOM overages always go to manual review."""

    async def price(self, request: CustomPricingRequest) -> CustomCharge:
        raise CustomPricingError(f"No custom pricing provider configured for meter {request.meter_key}")


def round_minor(amount: Decimal, rounding: str = "half_up") -> int:
    mode = ROUNDING_MODES.get(rounding)
    if mode is None:
        raise ValueError(f"unsupported rounding mode: {rounding}")
    return int(amount.quantize(Decimal(1), rounding=mode))


def tiered_amount(excess: int, tiers: tuple[PriceTier, ...]) -> tuple[Decimal, tuple[TierCharge, ...]]:
    """Graduated pricing over the excess quantity.

    Each tier's rate applies only to the quantity inside that tier. Quantity above the
    last bound is billed at the last tier's rate.
    """
    remaining = excess
    lower = 0
    total = Decimal(0)
    breakdown: list[TierCharge] = []
    for index, tier in enumerate(tiers):
        if remaining <= 0:
            break
        is_last = index == len(tiers) - 1
        if tier.up_to is None or is_last:
            take = remaining
        else:
            take = min(remaining, max(0, tier.up_to - lower))
        if take > 0:
            amount = Decimal(take) * tier.unit_price_minor
            breakdown.append(
                TierCharge(lower=lower, up_to=tier.up_to, quantity=take, unit_price_minor=tier.unit_price_minor, amount=amount)
            )
            total += amount
            remaining -= take
        if tier.up_to is not None:
            lower = max(lower, tier.up_to)
    return total, tuple(breakdown)


def _line(
    *,
    app_id: str,
    meter_key: str,
    usage: int,
    included: int,
    excess: int,
    policy: MeterPolicy,
    charge_type: ChargeType = ChargeType.OVERAGE,
    exact: Decimal = Decimal(0),
    unit_price: Decimal = Decimal(0),
    rounding: str = "half_up",
    flag_reason: str | None = None,
    tiers: tuple[TierCharge, ...] = (),
) -> MeterCharge:
    return MeterCharge(
        app_id=app_id,
        meter_key=meter_key,
        charge_type=charge_type,
        usage=usage,
        included=included,
        excess=excess,
        unit_price_minor=unit_price,
        amount_minor=round_minor(exact, rounding) if flag_reason is None else 0,
        exact_amount=exact if flag_reason is None else Decimal(0),
        overage_billing=policy.overage_billing,
        flagged=flag_reason is not None,
        flag_reason=flag_reason,
        description=f"{meter_key} overage ({app_id}): {excess} over {included} included",
        tiers=tiers,
    )


def compute_overage(
    *,
    app_id: str,
    meter_key: str,
    usage: int,
    policy: MeterPolicy,
    hard_limit_overage_mode: str = "flag",
    rounding: str = "half_up",
) -> MeterCharge | None:
    """Overage charge for one meter's period usage, or None when nothing is billable.

    CUSTOM overage billing returns an unpriced CUSTOM charge; the caller prices it via
    a ``CustomPricingProvider``.
    """
    if usage <= 0 or policy.limit_type == LimitType.UNLIMITED:
        return None
    if policy.limit_type == LimitType.NONE:
        # No cap configured: metered billing only when an overage mode is set.
        if policy.overage_billing == OverageBilling.NONE:
            return None
        included = 0
    else:
        included = max(0, policy.included_amount or 0)
    excess = usage - included
    if excess <= 0:
        return None

    common = {"app_id": app_id, "meter_key": meter_key, "usage": usage, "included": included, "excess": excess, "policy": policy}
    if policy.overage_billing == OverageBilling.NONE:
        if policy.enforcement == Enforcement.HARD and hard_limit_overage_mode == "flag":
            return _line(**common, flag_reason=FLAG_HARD_LIMIT_EXCEEDED)
        return None
    if policy.overage_billing == OverageBilling.PER_UNIT:
        if policy.unit_price_minor is None:
            return _line(**common, flag_reason=FLAG_MISSING_UNIT_PRICE)
        exact = Decimal(excess) * policy.unit_price_minor
        return _line(**common, exact=exact, unit_price=policy.unit_price_minor, rounding=rounding)
    if policy.overage_billing == OverageBilling.TIERED:
        if not policy.overage_tiers:
            return _line(**common, flag_reason=FLAG_MISSING_TIERS)
        exact, breakdown = tiered_amount(excess, policy.overage_tiers)
        # Blended rate is informational; the amount comes from the tier breakdown.
        blended = (exact / Decimal(excess)).quantize(Decimal("0.000001"))
        return _line(**common, exact=exact, unit_price=blended, rounding=rounding, tiers=breakdown)
    return _line(**common, charge_type=ChargeType.CUSTOM)


async def price_custom(
    charge: MeterCharge,
    request: CustomPricingRequest,
    provider: CustomPricingProvider,
) -> MeterCharge:
    # Failures become a flagged line so the invoice lands in DRAFT for review.
    try:
        result = await provider.price(request)
    except Exception as exc:  # noqa: BLE001 - any provider failure routes the invoice to manual review.
        logger.warning(
            "custom_pricing_failed app_id=%s meter_key=%s error=%s", request.app_id, request.meter_key, exc
        )
        return replace(
            charge,
            flagged=True,
            flag_reason=FLAG_CUSTOM_PRICING_FAILED,
            amount_minor=0,
            exact_amount=Decimal(0),
        )
    amount = int(result.amount_minor)
    return replace(
        charge,
        amount_minor=amount,
        exact_amount=Decimal(amount),
        description=result.description or charge.description,
    )
