"""Typed meter policies and the deterministic merge used by entitlement resolution."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from functools import reduce
from typing import Any, Iterable

from meterbill.domain.enums import (
    ENFORCEMENT_RANK,
    OVERAGE_RANK,
    Enforcement,
    LimitType,
    OverageBilling,
)


@dataclass(frozen=True)
class PriceTier:
    # Upper bound of the tier over the excess quantity; None is open-ended.
    up_to: int | None
    unit_price_minor: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {"up_to": self.up_to, "unit_price_minor": str(self.unit_price_minor)}


@dataclass(frozen=True)
class MeterPolicy:
    limit_type: LimitType = LimitType.NONE
    included_amount: int | None = None
    enforcement: Enforcement = Enforcement.NONE
    overage_billing: OverageBilling = OverageBilling.NONE
    unit_price_minor: Decimal | None = None
    overage_tiers: tuple[PriceTier, ...] = field(default_factory=tuple)
    # Bundle code (or "override") the winning fields came from.
    source: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "limit_type": self.limit_type.value,
            "included_amount": self.included_amount,
            "enforcement": self.enforcement.value,
            "overage_billing": self.overage_billing.value,
            "unit_price_minor": str(self.unit_price_minor) if self.unit_price_minor is not None else None,
            "overage_tiers": [tier.to_dict() for tier in self.overage_tiers] or None,
            "source": self.source,
        }


def to_decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"invalid decimal amount: {value!r}") from exc


def parse_tiers(raw: list[dict[str, Any]] | None) -> tuple[PriceTier, ...]:
    # Sort ascending by bound with the open-ended tier last.
    if not raw:
        return ()
    tiers = []
    for item in raw:
        up_to = item.get("up_to")
        price = to_decimal(item.get("unit_price_minor"))
        if price is None:
            raise ValueError("tier unit_price_minor is required")
        tiers.append(PriceTier(up_to=int(up_to) if up_to is not None else None, unit_price_minor=price))
    tiers.sort(key=lambda tier: (tier.up_to is None, tier.up_to or 0))
    return tuple(tiers)


def _rank(policy: MeterPolicy) -> tuple:
    # Total order: enforcement, then included cap, then overage richness, price, and source.
    return (
        ENFORCEMENT_RANK[policy.enforcement],
        policy.included_amount if policy.included_amount is not None else -1,
        OVERAGE_RANK[policy.overage_billing],
        policy.unit_price_minor if policy.unit_price_minor is not None else Decimal(-1),
        policy.source,
    )


def _stronger(current: MeterPolicy, candidate: MeterPolicy) -> MeterPolicy:
    return candidate if _rank(candidate) > _rank(current) else current


def merge_policies(variants: Iterable[MeterPolicy]) -> MeterPolicy:
    """Reduce every policy contributing to one meter into a single effective policy.

    The winner is the maximum under ``_rank``: HARD > SOFT > NONE enforcement, then the
    larger included amount, then deterministic tie-breaks, so the result does not depend
    on input order. Afterwards an UNLIMITED contribution lifts the cap regardless of
    which policy won.
    """
    ordered = sorted(variants, key=_rank)
    if not ordered:
        raise ValueError("merge_policies requires at least one policy")
    winner = reduce(_stronger, ordered)
    if any(policy.limit_type == LimitType.UNLIMITED for policy in ordered):
        winner = replace(winner, limit_type=LimitType.UNLIMITED, included_amount=None)
    return winner


def apply_override(base: MeterPolicy | None, override: dict[str, Any]) -> MeterPolicy:
    # Non-null override fields win field by field.
    policy = base or MeterPolicy()
    changes: dict[str, Any] = {}
    if override.get("limit_type") is not None:
        changes["limit_type"] = LimitType(override["limit_type"])
    if override.get("included_amount") is not None:
        changes["included_amount"] = int(override["included_amount"])
    if override.get("enforcement") is not None:
        changes["enforcement"] = Enforcement(override["enforcement"])
    if override.get("overage_billing") is not None:
        changes["overage_billing"] = OverageBilling(override["overage_billing"])
    if override.get("unit_price_minor") is not None:
        changes["unit_price_minor"] = to_decimal(override["unit_price_minor"])
    if override.get("overage_tiers"):
        changes["overage_tiers"] = parse_tiers(override["overage_tiers"])
    if not changes:
        return policy
    changes["source"] = "override"
    merged = replace(policy, **changes)
    if merged.limit_type == LimitType.UNLIMITED:
        merged = replace(merged, included_amount=None)
    return merged
