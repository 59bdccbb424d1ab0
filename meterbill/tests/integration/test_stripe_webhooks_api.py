from __future__ import annotations

from datetime import datetime, timezone
import hashlib
import hmac
import json
import time

import pytest
from sqlalchemy import select

from meterbill.domain.models import Invoice, TeamSubscription
from meterbill.tests.utils.billing import seed_active_contract, seed_app, seed_bundle, seed_team


def _signed(event: dict, *, secret: str) -> tuple[bytes, dict[str, str]]:
    payload = json.dumps(event)
    timestamp = int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return payload.encode(), {"Stripe-Signature": f"t={timestamp},v1={signature}", "Content-Type": "application/json"}


def _event(event_id: str, event_type: str, obj: dict) -> dict:
    return {"id": event_id, "type": event_type, "created": int(time.time()), "livemode": False, "data": {"object": obj}}


async def _post(client, event: dict, *, secret: str):
    payload, headers = _signed(event, secret=secret)
    return await client.post("/v1/stripe/webhook", content=payload, headers=headers)


async def _issued_invoice(client, database, admin_headers) -> str:
    app = await seed_app(database)
    team = await seed_team(database, app_id=app.app_id)
    bundle_id = await seed_bundle(database, app_id=app.app_id)
    await seed_active_contract(
        database,
        billing_entity_id=team.billing_entity_id,
        bundle_ids=[bundle_id],
        starts_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
        base_fee_minor=5000,
    )
    response = await client.post(
        f"/v1/admin/teams/{team.team_id}/invoices/generate",
        json={"period_start": "2026-03-01T00:00:00Z", "period_end": "2026-04-01T00:00:00Z"},
        headers=admin_headers,
    )
    assert response.json()["data"]["status"] == "ISSUED"
    return response.json()["data"]["id"]


@pytest.mark.asyncio
async def test_missing_signature_is_rejected(client) -> None:
    response = await client.post("/v1/stripe/webhook", content=json.dumps(_event("evt_1", "invoice.paid", {})))

    assert response.status_code == 400
    assert response.json()["error"] == {"code": "INVALID_SIGNATURE", "message": "Invalid webhook signature"}


@pytest.mark.asyncio
async def test_signature_from_wrong_secret_is_rejected(client) -> None:
    response = await _post(client, _event("evt_1", "invoice.paid", {}), secret="whsec_someone_else")

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_SIGNATURE"


@pytest.mark.asyncio
async def test_invoice_paid_settles_the_referenced_invoice(client, database, settings, admin_headers) -> None:
    invoice_id = await _issued_invoice(client, database, admin_headers)
    event = _event("evt_paid_1", "invoice.paid", {"id": "in_123", "metadata": {"invoice_id": invoice_id}})

    response = await _post(client, event, secret=settings.stripe_webhook_secret)

    assert response.status_code == 200
    assert response.json()["data"] == {"received": True, "duplicate": False}
    async with database.session() as session:
        invoice = await session.get(Invoice, invoice_id)
    assert invoice.status == "PAID"
    assert invoice.paid_at is not None
    assert invoice.external_ref == "in_123"


@pytest.mark.asyncio
async def test_redelivered_event_is_acknowledged_as_duplicate(client, database, settings, admin_headers) -> None:
    invoice_id = await _issued_invoice(client, database, admin_headers)
    event = _event("evt_paid_2", "invoice.paid", {"id": "in_456", "metadata": {"invoice_id": invoice_id}})

    first = await _post(client, event, secret=settings.stripe_webhook_secret)
    second = await _post(client, event, secret=settings.stripe_webhook_secret)

    assert first.json()["data"]["duplicate"] is False
    assert second.status_code == 200
    assert second.json()["data"] == {"received": True, "duplicate": True}


@pytest.mark.asyncio
async def test_subscription_lifecycle_is_mirrored(client, database, settings) -> None:
    app = await seed_app(database)
    team = await seed_team(database, app_id=app.app_id)
    subscription = {
        "id": "sub_1",
        "customer": "cus_1",
        "status": "active",
        "metadata": {"team_id": team.team_id, "plan_code": "pro"},
        "items": {"data": [{"quantity": 3, "price": {"id": "price_1"}}]},
    }

    secret = settings.stripe_webhook_secret

    created = await _post(client, _event("evt_sub_1", "customer.subscription.created", subscription), secret=secret)
    deleted = await _post(client, _event("evt_sub_2", "customer.subscription.deleted", {"id": "sub_1"}), secret=secret)

    assert created.status_code == 200
    assert deleted.status_code == 200
    async with database.session() as session:
        row = (
            await session.execute(select(TeamSubscription).where(TeamSubscription.stripe_subscription_id == "sub_1"))
        ).scalar_one()
    assert row.team_id == team.team_id
    assert row.plan_code == "pro"
    assert row.seats_quantity == 3
    assert row.status == "CANCELED"


@pytest.mark.asyncio
async def test_subscription_for_unknown_team_is_ignored(client, database, settings) -> None:
    event = _event("evt_sub_3", "customer.subscription.created", {"id": "sub_2", "metadata": {"team_id": "ghost"}})

    response = await _post(client, event, secret=settings.stripe_webhook_secret)

    assert response.status_code == 200
    async with database.session() as session:
        rows = (await session.execute(select(TeamSubscription))).scalars().all()
    assert rows == []


@pytest.mark.asyncio
async def test_unrecognized_event_type_is_acknowledged(client, settings) -> None:
    event = _event("evt_other", "charge.refunded", {"id": "ch_1"})

    response = await _post(client, event, secret=settings.stripe_webhook_secret)

    assert response.status_code == 200
    assert response.json()["data"] == {"received": True, "duplicate": False}
