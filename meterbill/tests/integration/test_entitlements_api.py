from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from meterbill.services import catalog
from meterbill.services.catalog import ContractOverrideIn
from meterbill.tests.utils.billing import seed_active_contract, seed_app, seed_bundle, seed_team


STARTS_AT = datetime(2026, 1, 1, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_team_without_contract_is_not_billable(client, database) -> None:
    app = await seed_app(database)
    team = await seed_team(database, app_id=app.app_id)

    response = await client.get(f"/v1/apps/{app.app_id}/teams/{team.team_id}/entitlements", headers=app.headers())

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["billable"] is False
    assert data["contract_id"] is None
    assert data["meters"] == {}
    assert data["billing_mode"] == "ENTERPRISE_CONTRACT"


@pytest.mark.asyncio
async def test_bundles_merge_into_one_effective_policy(client, database) -> None:
    app = await seed_app(database)
    team = await seed_team(database, app_id=app.app_id)
    generous = await seed_bundle(
        database,
        app_id=app.app_id,
        code="generous",
        policies=[
            {
                "limit_type": "INCLUDED",
                "included_amount": 1_000_000,
                "enforcement": "SOFT",
                "overage_billing": "PER_UNIT",
                "unit_price_minor": "0.01",
            }
        ],
        features={"streaming": False, "tier": "pro"},
    )
    strict = await seed_bundle(
        database,
        app_id=app.app_id,
        code="strict",
        policies=[{"limit_type": "HARD_CAP", "included_amount": 5000, "enforcement": "HARD"}],
        features={"streaming": True},
    )
    contract_id = await seed_active_contract(
        database, billing_entity_id=team.billing_entity_id, bundle_ids=[generous, strict], starts_at=STARTS_AT
    )

    response = await client.get(f"/v1/apps/{app.app_id}/teams/{team.team_id}/entitlements", headers=app.headers())

    data = response.json()["data"]
    assert data["billable"] is True
    assert data["contract_id"] == contract_id
    assert data["features"] == {"streaming": True, "tier": "pro"}
    meter = data["meters"]["llm.tokens"]
    assert meter["enforcement"] == "HARD"
    assert meter["included_amount"] == 5000
    assert meter["source"] == "strict"


@pytest.mark.asyncio
async def test_contract_override_replaces_bundle_fields(client, database) -> None:
    app = await seed_app(database)
    team = await seed_team(database, app_id=app.app_id)
    bundle_id = await seed_bundle(
        database,
        app_id=app.app_id,
        policies=[
            {
                "limit_type": "INCLUDED",
                "included_amount": 1000,
                "enforcement": "SOFT",
                "overage_billing": "PER_UNIT",
                "unit_price_minor": "2",
            }
        ],
    )
    contract_id = await seed_active_contract(
        database, billing_entity_id=team.billing_entity_id, bundle_ids=[bundle_id], starts_at=STARTS_AT
    )
    async with database.session() as session:
        await catalog.upsert_contract_override(
            session,
            contract_id=contract_id,
            override=ContractOverrideIn(
                app_id=app.app_id,
                meter_key="llm.tokens",
                included_amount=2500,
                feature_flags={"priority_support": True},
            ),
        )

    response = await client.get(f"/v1/apps/{app.app_id}/teams/{team.team_id}/entitlements", headers=app.headers())

    data = response.json()["data"]
    meter = data["meters"]["llm.tokens"]
    assert meter["included_amount"] == 2500
    assert Decimal(meter["unit_price_minor"]) == Decimal(2)
    assert meter["source"] == "override"
    assert data["features"]["priority_support"] is True


@pytest.mark.asyncio
async def test_entitlements_reject_cross_app_tokens(client, database) -> None:
    app = await seed_app(database)
    other = await seed_app(database, name="other")
    team = await seed_team(database, app_id=app.app_id)

    response = await client.get(f"/v1/apps/{app.app_id}/teams/{team.team_id}/entitlements", headers=other.headers())

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_entitlements_for_unknown_team_are_not_found(client, database) -> None:
    app = await seed_app(database)

    response = await client.get(f"/v1/apps/{app.app_id}/teams/missing/entitlements", headers=app.headers())

    assert response.status_code == 404
    assert response.json()["error"]["message"] == "Team not found: missing"
