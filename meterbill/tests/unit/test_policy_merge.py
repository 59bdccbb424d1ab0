from __future__ import annotations

from decimal import Decimal
from itertools import permutations

import pytest

from meterbill.domain.enums import Enforcement, LimitType, OverageBilling
from meterbill.domain.policies import MeterPolicy, apply_override, merge_policies, parse_tiers


STARTER = MeterPolicy(
    limit_type=LimitType.INCLUDED,
    included_amount=50_000,
    enforcement=Enforcement.SOFT,
    overage_billing=OverageBilling.PER_UNIT,
    unit_price_minor=Decimal("0.002"),
    source="starter",
)
GROWTH = MeterPolicy(
    limit_type=LimitType.INCLUDED,
    included_amount=200_000,
    enforcement=Enforcement.SOFT,
    overage_billing=OverageBilling.PER_UNIT,
    unit_price_minor=Decimal("0.001"),
    source="growth",
)
CAPPED = MeterPolicy(
    limit_type=LimitType.HARD_CAP,
    included_amount=10_000,
    enforcement=Enforcement.HARD,
    source="capped",
)


def test_merge_is_independent_of_input_order() -> None:
    results = {merge_policies(list(order)) for order in permutations([STARTER, GROWTH, CAPPED])}

    assert len(results) == 1


def test_hard_enforcement_outranks_a_larger_allowance() -> None:
    merged = merge_policies([GROWTH, CAPPED])

    assert merged.enforcement == Enforcement.HARD
    assert merged.included_amount == 10_000
    assert merged.source == "capped"


def test_larger_allowance_wins_between_equal_enforcement() -> None:
    merged = merge_policies([STARTER, GROWTH])

    assert merged.included_amount == 200_000
    assert merged.source == "growth"


def test_unlimited_contribution_lifts_the_cap() -> None:
    unlimited = MeterPolicy(limit_type=LimitType.UNLIMITED, source="unlimited")

    merged = merge_policies([CAPPED, unlimited])

    assert merged.limit_type == LimitType.UNLIMITED
    assert merged.included_amount is None


def test_merge_requires_at_least_one_policy() -> None:
    with pytest.raises(ValueError):
        merge_policies([])


def test_override_wins_field_by_field() -> None:
    merged = apply_override(STARTER, {"included_amount": 75_000, "unit_price_minor": "0.0015", "enforcement": None})

    assert merged.included_amount == 75_000
    assert merged.unit_price_minor == Decimal("0.0015")
    assert merged.enforcement == Enforcement.SOFT
    assert merged.source == "override"


def test_empty_override_keeps_the_bundle_policy() -> None:
    assert apply_override(STARTER, {"limit_type": None, "overage_tiers": []}) is STARTER


def test_override_without_bundle_policy_starts_from_defaults() -> None:
    merged = apply_override(None, {"limit_type": "UNLIMITED", "included_amount": 5})

    assert merged.limit_type == LimitType.UNLIMITED
    assert merged.included_amount is None


def test_parse_tiers_orders_bounds_with_open_tier_last() -> None:
    tiers = parse_tiers(
        [
            {"up_to": None, "unit_price_minor": "0.5"},
            {"up_to": 1000, "unit_price_minor": "1"},
            {"up_to": 100, "unit_price_minor": "2"},
        ]
    )

    assert [tier.up_to for tier in tiers] == [100, 1000, None]
    assert tiers[0].unit_price_minor == Decimal(2)


def test_parse_tiers_requires_a_price() -> None:
    with pytest.raises(ValueError):
        parse_tiers([{"up_to": 10}])
