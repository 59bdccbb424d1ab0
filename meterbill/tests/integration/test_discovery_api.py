from __future__ import annotations

import pytest


@pytest.mark.asyncio
async def test_health_checks_the_database(client) -> None:
    response = await client.get("/v1/health")

    assert response.status_code == 200
    assert response.json()["data"] == {"status": "ok", "database": "ok"}
    assert response.json()["meta"]["api_version"] == "v1"


@pytest.mark.asyncio
async def test_capabilities_advertise_batch_limit_and_meters(client) -> None:
    response = await client.get("/v1/meta/capabilities")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["api_version"] == "v1"
    assert data["usage_ingestion"]["maxBatchSize"] == 1000
    event_types = {item["event_type"] for item in data["usage_ingestion"]["supportedEventTypes"]}
    assert "llm.tokens.v1" in event_types
    assert "llm.tokens" in data["meters"]
    assert "max_batch_size" not in data["usage_ingestion"]


@pytest.mark.asyncio
async def test_schemas_are_listed_and_fetched_by_type(client) -> None:
    listed = await client.get("/v1/schemas/usage-events")
    fetched = await client.get("/v1/schemas/usage-events/llm.tokens.v1")

    assert listed.status_code == 200
    assert "llm.tokens.v1" in [entry["event_type"] for entry in listed.json()["data"]]
    schema = fetched.json()["data"]
    assert schema["meter_key"] == "llm.tokens"
    assert schema["version"] == 1
    assert "model" in schema["json_schema"]["required"]


@pytest.mark.asyncio
async def test_unknown_schema_is_not_found(client) -> None:
    response = await client.get("/v1/schemas/usage-events/video.minutes.v1")

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "EVENT_TYPE_NOT_FOUND"
