from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from meterbill.domain.models import UsageEvent
from meterbill.services import identity
from meterbill.tests.utils.auth import bearer, mint_client_token
from meterbill.tests.utils.billing import event_json, seed_app, seed_team, token_event


OCCURRED_AT = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


async def _count_events(database) -> int:
    async with database.session() as session:
        return int((await session.execute(select(func.count(UsageEvent.id)))).scalar_one())


@pytest.mark.asyncio
async def test_ingest_accepts_then_counts_duplicates(client, database) -> None:
    app = await seed_app(database)
    team = await seed_team(database, app_id=app.app_id)
    events = [
        event_json(token_event(occurred_at=OCCURRED_AT, tokens=100, team_id=team.team_id, idempotency_key="evt-1")),
        event_json(token_event(occurred_at=OCCURRED_AT, tokens=50, team_id=team.team_id, idempotency_key="evt-2")),
    ]

    first = await client.post(f"/v1/apps/{app.app_id}/usage/events", json=events, headers=app.headers())
    second = await client.post(f"/v1/apps/{app.app_id}/usage/events", json=events, headers=app.headers())

    assert first.status_code == 200
    assert first.json()["data"] == {"accepted": 2, "duplicates": 0}
    assert first.headers["X-Request-Id"]
    assert second.json()["data"] == {"accepted": 0, "duplicates": 2}
    assert await _count_events(database) == 2


@pytest.mark.asyncio
async def test_ingest_rejects_whole_batch_on_invalid_payload(client, database) -> None:
    app = await seed_app(database)
    team = await seed_team(database, app_id=app.app_id)
    good = event_json(token_event(occurred_at=OCCURRED_AT, tokens=10, team_id=team.team_id))
    bad = event_json(token_event(occurred_at=OCCURRED_AT, tokens=10, team_id=team.team_id))
    del bad["payload"]["model"]

    response = await client.post(f"/v1/apps/{app.app_id}/usage/events", json=[good, bad], headers=app.headers())

    assert response.status_code == 400
    error = response.json()["error"]
    assert error["code"] == "USAGE_EVENT_INVALID"
    assert {"field": "events[1].payload.model", "message": "Field required"} in error["details"]["issues"]
    assert await _count_events(database) == 0


@pytest.mark.asyncio
async def test_ingest_rejects_unknown_event_type(client, database) -> None:
    app = await seed_app(database)
    team = await seed_team(database, app_id=app.app_id)
    event = event_json(token_event(occurred_at=OCCURRED_AT, tokens=10, team_id=team.team_id))
    event["event_type"] = "video.frames.v1"

    response = await client.post(f"/v1/apps/{app.app_id}/usage/events", json=[event], headers=app.headers())

    assert response.status_code == 400
    assert response.json()["error"]["details"]["issues"][0]["field"] == "events[0].event_type"


@pytest.mark.asyncio
async def test_ingest_rejects_oversized_batch(client, database) -> None:
    app = await seed_app(database)
    team = await seed_team(database, app_id=app.app_id)
    events = [
        event_json(token_event(occurred_at=OCCURRED_AT, tokens=1, team_id=team.team_id)) for _ in range(1001)
    ]

    response = await client.post(f"/v1/apps/{app.app_id}/usage/events", json=events, headers=app.headers())

    assert response.status_code == 400
    error = response.json()["error"]
    assert error["code"] == "BATCH_TOO_LARGE"
    assert error["details"] == {"size": 1001, "max_batch_size": 1000}
    assert await _count_events(database) == 0


@pytest.mark.asyncio
async def test_empty_batch_is_a_validation_error(client, database) -> None:
    app = await seed_app(database)

    response = await client.post(f"/v1/apps/{app.app_id}/usage/events", json=[], headers=app.headers())

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_ingest_attributes_user_events_to_personal_team(client, database) -> None:
    app = await seed_app(database)
    async with database.session() as session:
        provisioned = await identity.provision_user(session, app_id=app.app_id, external_ref="user-42")
        personal_team_id = provisioned.personal_team.id
    event = event_json(token_event(occurred_at=OCCURRED_AT, tokens=7, user_id="user-42"))

    response = await client.post(f"/v1/apps/{app.app_id}/usage/events", json=[event], headers=app.headers())

    assert response.status_code == 200
    async with database.session() as session:
        stored = (await session.execute(select(UsageEvent))).scalar_one()
    assert stored.team_id == personal_team_id
    assert stored.user_id == provisioned.user.id
    assert stored.quantity == 7
    assert stored.meter_key == "llm.tokens"


@pytest.mark.asyncio
async def test_ingest_for_unknown_team_is_not_found(client, database) -> None:
    app = await seed_app(database)
    event = event_json(token_event(occurred_at=OCCURRED_AT, tokens=7, team_id="missing-team"))

    response = await client.post(f"/v1/apps/{app.app_id}/usage/events", json=[event], headers=app.headers())

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "TEAM_NOT_FOUND"


@pytest.mark.asyncio
async def test_ingest_requires_bearer_token(client, database) -> None:
    app = await seed_app(database)

    response = await client.post(f"/v1/apps/{app.app_id}/usage/events", json=[{}])

    assert response.status_code == 401
    assert response.json()["error"] == {"code": "AUTH_UNAUTHORIZED", "message": "Missing Authorization header"}
    assert response.headers["WWW-Authenticate"] == "Bearer"


@pytest.mark.asyncio
async def test_token_for_another_app_is_forbidden(client, database) -> None:
    app = await seed_app(database)
    other = await seed_app(database, name="other-app")
    team = await seed_team(database, app_id=app.app_id)
    event = event_json(token_event(occurred_at=OCCURRED_AT, tokens=1, team_id=team.team_id))

    response = await client.post(f"/v1/apps/{app.app_id}/usage/events", json=[event], headers=other.headers())

    assert response.status_code == 403
    assert response.json()["error"]["message"] == "JWT appId does not match route appId"


@pytest.mark.asyncio
async def test_replayed_token_is_rejected(client, database) -> None:
    app = await seed_app(database)
    team = await seed_team(database, app_id=app.app_id)
    headers = bearer(mint_client_token(app_id=app.app_id, kid=app.kid, secret=app.secret, jti=uuid4().hex))
    event = event_json(token_event(occurred_at=OCCURRED_AT, tokens=1, team_id=team.team_id))

    first = await client.post(f"/v1/apps/{app.app_id}/usage/events", json=[event], headers=headers)
    replay = await client.post(f"/v1/apps/{app.app_id}/usage/events", json=[event], headers=headers)

    assert first.status_code == 200
    assert replay.status_code == 401
    assert replay.json()["error"]["message"] == "JWT has already been used"


@pytest.mark.asyncio
async def test_revoked_signing_key_is_rejected(client, database) -> None:
    app = await seed_app(database)
    async with database.session() as session:
        await identity.revoke_app_secret(session, app_id=app.app_id, kid=app.kid)

    response = await client.post(f"/v1/apps/{app.app_id}/usage/events", json=[{}], headers=app.headers())

    assert response.status_code == 401
    assert response.json()["error"]["message"] == "Unknown or revoked signing key"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"audience": "someone-else"}, "Invalid JWT audience"),
        ({"issuer": "app:not-this-one"}, "Invalid JWT issuer"),
        ({"expires_in_s": -3600}, "JWT expired"),
    ],
)
async def test_invalid_token_claims_are_rejected(client, database, overrides, message) -> None:
    app = await seed_app(database)
    token = mint_client_token(app_id=app.app_id, kid=app.kid, secret=app.secret, **overrides)

    response = await client.post(f"/v1/apps/{app.app_id}/usage/events", json=[{}], headers=bearer(token))

    assert response.status_code == 401
    assert response.json()["error"]["message"] == message


@pytest.mark.asyncio
async def test_token_signed_with_wrong_secret_is_rejected(client, database) -> None:
    app = await seed_app(database)
    token = mint_client_token(app_id=app.app_id, kid=app.kid, secret="f" * 64)

    response = await client.post(f"/v1/apps/{app.app_id}/usage/events", json=[{}], headers=bearer(token))

    assert response.status_code == 401
    assert response.json()["error"]["message"] == "Invalid JWT signature"
