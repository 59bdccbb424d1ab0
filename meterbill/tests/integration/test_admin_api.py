from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from meterbill.apps.api.main import create_app


async def _create_app(client, admin_headers, name: str = "billing-demo") -> str:
    response = await client.post("/v1/admin/apps", json={"name": name}, headers=admin_headers)
    assert response.status_code == 201
    return response.json()["data"]["id"]


@pytest.mark.asyncio
async def test_admin_requires_api_key(client) -> None:
    response = await client.post("/v1/admin/apps", json={"name": "x"})

    assert response.status_code == 403
    assert response.json()["error"] == {"code": "AUTH_FORBIDDEN", "message": "Missing admin API key"}


@pytest.mark.asyncio
async def test_admin_rejects_wrong_api_key(client) -> None:
    response = await client.post("/v1/admin/apps", json={"name": "x"}, headers={"X-Admin-Api-Key": "nope"})

    assert response.status_code == 403
    assert response.json()["error"]["message"] == "Invalid admin API key"


@pytest.mark.asyncio
async def test_admin_is_closed_when_key_not_configured(database, settings) -> None:
    app = create_app(database=database, settings=settings.model_copy(update={"admin_api_key": None}))
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as unconfigured:
        response = await unconfigured.get("/v1/admin/apps/any", headers={"X-Admin-Api-Key": "anything"})

    assert response.status_code == 403
    assert response.json()["error"]["message"] == "Admin access is not configured"


@pytest.mark.asyncio
async def test_auth_is_checked_before_body_validation(client) -> None:
    response = await client.post("/v1/admin/apps", json={"unexpected": True})

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_validation_errors_use_the_error_envelope(client, admin_headers) -> None:
    response = await client.post("/v1/admin/apps", json={"name": ""}, headers=admin_headers)

    assert response.status_code == 400
    body = response.json()
    assert body["error"]["code"] == "VALIDATION_ERROR"
    assert body["error"]["details"]["issues"][0]["field"] == "body.name"
    assert body["meta"]["api_version"] == "v1"


@pytest.mark.asyncio
async def test_request_id_is_echoed(client, admin_headers) -> None:
    headers = {**admin_headers, "X-Request-Id": "req-123"}

    response = await client.get("/v1/admin/apps/missing", headers=headers)

    assert response.status_code == 404
    assert response.headers["X-Request-Id"] == "req-123"
    assert response.json()["meta"]["request_id"] == "req-123"
    assert response.json()["error"]["code"] == "APP_NOT_FOUND"


@pytest.mark.asyncio
async def test_secret_is_returned_once_and_can_be_revoked(client, admin_headers) -> None:
    app_id = await _create_app(client, admin_headers)

    created = await client.post(f"/v1/admin/apps/{app_id}/secrets", headers=admin_headers)
    kid = created.json()["data"]["kid"]
    revoked = await client.post(f"/v1/admin/apps/{app_id}/secrets/{kid}/revoke", headers=admin_headers)

    assert created.status_code == 201
    assert len(created.json()["data"]["secret"]) == 64
    assert revoked.json()["data"]["status"] == "REVOKED"
    assert "secret" not in revoked.json()["data"]


@pytest.mark.asyncio
async def test_user_provisioning_is_idempotent(client, admin_headers) -> None:
    app_id = await _create_app(client, admin_headers)
    body = {"external_ref": "ext-user-1", "email": "dev@example.com"}

    first = await client.post(f"/v1/admin/apps/{app_id}/users", json=body, headers=admin_headers)
    second = await client.post(f"/v1/admin/apps/{app_id}/users", json=body, headers=admin_headers)

    assert first.json()["data"]["created"] is True
    assert second.json()["data"]["created"] is False
    assert first.json()["data"]["user"]["id"] == second.json()["data"]["user"]["id"]
    personal = first.json()["data"]["personal_team"]
    assert personal == second.json()["data"]["personal_team"]
    assert personal["kind"] == "PERSONAL"
    assert personal["billing_entity_id"]

    lookup = await client.get(f"/v1/admin/apps/{app_id}/users/ext-user-1", headers=admin_headers)
    assert lookup.json()["data"]["email"] == "dev@example.com"


@pytest.mark.asyncio
async def test_team_membership_lifecycle(client, admin_headers) -> None:
    app_id = await _create_app(client, admin_headers)
    owner = await client.post(f"/v1/admin/apps/{app_id}/users", json={"external_ref": "owner"}, headers=admin_headers)
    member = await client.post(f"/v1/admin/apps/{app_id}/users", json={"external_ref": "member"}, headers=admin_headers)
    owner_id = owner.json()["data"]["user"]["id"]
    member_id = member.json()["data"]["user"]["id"]

    team = await client.post(
        f"/v1/admin/apps/{app_id}/teams",
        json={"name": "Acme", "owner_user_id": owner_id, "billing_mode": "ENTERPRISE_CONTRACT"},
        headers=admin_headers,
    )
    team_id = team.json()["data"]["id"]
    added = await client.post(
        f"/v1/admin/teams/{team_id}/members", json={"user_id": member_id, "role": "ADMIN"}, headers=admin_headers
    )
    duplicate = await client.post(f"/v1/admin/teams/{team_id}/members", json={"user_id": member_id}, headers=admin_headers)
    removed = await client.delete(f"/v1/admin/teams/{team_id}/members/{member_id}", headers=admin_headers)
    detail = await client.get(f"/v1/admin/teams/{team_id}", headers=admin_headers)

    assert team.status_code == 201
    assert team.json()["data"]["kind"] == "ENTERPRISE"
    assert team.json()["data"]["billing_entity_id"]
    assert added.status_code == 201
    assert added.json()["data"]["role"] == "ADMIN"
    assert duplicate.status_code == 409
    assert duplicate.json()["error"]["code"] == "TEAM_MEMBER_EXISTS"
    assert removed.json()["data"]["status"] == "REMOVED"
    assert [m["user_id"] for m in detail.json()["data"]["members"]] == [owner_id]
    assert detail.json()["data"]["members"][0]["role"] == "OWNER"


@pytest.mark.asyncio
async def test_bundle_and_contract_administration(client, admin_headers) -> None:
    app_id = await _create_app(client, admin_headers)
    team = await client.post(
        f"/v1/admin/apps/{app_id}/teams",
        json={"name": "Contracted", "billing_mode": "ENTERPRISE_CONTRACT"},
        headers=admin_headers,
    )
    billing_entity_id = team.json()["data"]["billing_entity_id"]
    bundle_body = {
        "code": "ai-pro",
        "name": "AI Pro",
        "apps": [{"app_id": app_id, "default_feature_flags": {"streaming": True}}],
        "meter_policies": [
            {
                "app_id": app_id,
                "meter_key": "llm.tokens",
                "limit_type": "INCLUDED",
                "included_amount": 100000,
                "enforcement": "SOFT",
                "overage_billing": "TIERED",
                "overage_tiers": [{"up_to": None, "unit_price_minor": "0.5"}, {"up_to": 1000, "unit_price_minor": "1"}],
            }
        ],
    }

    bundle = await client.post("/v1/admin/bundles", json=bundle_body, headers=admin_headers)
    conflict = await client.post("/v1/admin/bundles", json=bundle_body, headers=admin_headers)
    bundle_id = bundle.json()["data"]["id"]
    contract_body = {
        "billing_entity_id": billing_entity_id,
        "bundle_ids": [bundle_id],
        "starts_at": "2026-01-01T00:00:00Z",
        "base_fee_minor": 50000,
    }
    first = await client.post("/v1/admin/contracts", json=contract_body, headers=admin_headers)
    second = await client.post("/v1/admin/contracts", json=contract_body, headers=admin_headers)
    first_id = first.json()["data"]["id"]
    second_id = second.json()["data"]["id"]
    activated = await client.post(f"/v1/admin/contracts/{first_id}/status", json={"status": "ACTIVE"}, headers=admin_headers)
    blocked = await client.post(f"/v1/admin/contracts/{second_id}/status", json={"status": "ACTIVE"}, headers=admin_headers)

    assert bundle.status_code == 201
    tiers = bundle.json()["data"]["meter_policies"][0]["overage_tiers"]
    assert [tier["up_to"] for tier in tiers] == [1000, None]
    assert conflict.status_code == 409
    assert conflict.json()["error"]["code"] == "BUNDLE_CODE_CONFLICT"
    assert first.status_code == 201
    assert first.json()["data"]["status"] == "DRAFT"
    assert first.json()["data"]["bundle_ids"] == [bundle_id]
    assert activated.json()["data"]["status"] == "ACTIVE"
    assert blocked.status_code == 409
    assert blocked.json()["error"]["code"] == "ACTIVE_CONTRACT_EXISTS"


@pytest.mark.asyncio
async def test_contract_rejects_inverted_window(client, admin_headers) -> None:
    response = await client.post(
        "/v1/admin/contracts",
        json={
            "billing_entity_id": "be",
            "bundle_ids": ["b"],
            "starts_at": "2026-02-01T00:00:00Z",
            "ends_at": "2026-01-01T00:00:00Z",
        },
        headers=admin_headers,
    )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_contract_overrides_round_trip(client, admin_headers) -> None:
    app_id = await _create_app(client, admin_headers)
    team = await client.post(f"/v1/admin/apps/{app_id}/teams", json={"name": "T"}, headers=admin_headers)
    bundle = await client.post("/v1/admin/bundles", json={"code": "basic", "name": "Basic"}, headers=admin_headers)
    contract = await client.post(
        "/v1/admin/contracts",
        json={
            "billing_entity_id": team.json()["data"]["billing_entity_id"],
            "bundle_ids": [bundle.json()["data"]["id"]],
            "starts_at": "2026-01-01T00:00:00Z",
        },
        headers=admin_headers,
    )
    contract_id = contract.json()["data"]["id"]
    override = {"app_id": app_id, "meter_key": "llm.tokens", "limit_type": "UNLIMITED", "notes": "negotiated"}

    put = await client.put(f"/v1/admin/contracts/{contract_id}/overrides", json=override, headers=admin_headers)
    again = await client.put(
        f"/v1/admin/contracts/{contract_id}/overrides", json={**override, "notes": "renegotiated"}, headers=admin_headers
    )
    listed = await client.get(f"/v1/admin/contracts/{contract_id}/overrides", headers=admin_headers)

    assert put.status_code == 200
    assert again.json()["data"]["id"] == put.json()["data"]["id"]
    assert [row["notes"] for row in listed.json()["data"]] == ["renegotiated"]
    assert listed.json()["data"][0]["limit_type"] == "UNLIMITED"
