from __future__ import annotations

import pytest

from meterbill.services.usage.schema_registry import (
    LlmTokensV1,
    StorageSampleV1,
    UsageEventSchemaRegistry,
    default_registry,
    meter_name_for,
)


def test_tokens_event_validates_and_sums_quantity() -> None:
    result, issues = default_registry.validate_payload(
        "llm.tokens.v1",
        {"provider": "openai", "model": "gpt-4o", "input_tokens": 120, "output_tokens": 30, "trace": "abc"},
    )

    assert issues == []
    assert result is not None
    assert result.quantity == 150
    assert result.entry.meter_key == "llm.tokens"
    assert result.provider == "openai"
    assert result.model == "gpt-4o"
    # Unknown keys are kept on the payload.
    assert result.payload.model_dump()["trace"] == "abc"


def test_missing_and_negative_fields_are_itemized() -> None:
    result, issues = default_registry.validate_payload(
        "llm.tokens.v1", {"provider": "openai", "input_tokens": -1, "output_tokens": 2}
    )

    assert result is None
    fields = {issue.field for issue in issues}
    assert "payload.model" in fields
    assert "payload.input_tokens" in fields


def test_unknown_event_type_is_rejected() -> None:
    result, issues = default_registry.validate_payload("video.frames.v1", {})

    assert result is None
    assert issues[0].field == "event_type"
    assert "Unknown event type" in issues[0].message


def test_deprecated_event_type_is_listed_but_not_accepted() -> None:
    registry = UsageEventSchemaRegistry()
    registry.register("storage.sample.v1", StorageSampleV1, quantity=lambda p: p.bytes_used, description="old")
    registry.register(
        "storage.sample.v2",
        StorageSampleV1,
        quantity=lambda p: p.bytes_used,
        description="new",
    )
    registry.register(
        "llm.tokens.v1",
        LlmTokensV1,
        quantity=lambda p: p.input_tokens,
        description="tokens",
        status="deprecated",
    )

    assert registry.supported_event_types() == ["storage.sample.v1", "storage.sample.v2"]
    assert registry.meters() == ["storage.sample", "llm.tokens"]
    result, issues = registry.validate_payload(
        "llm.tokens.v1", {"provider": "p", "model": "m", "input_tokens": 1, "output_tokens": 1}
    )
    assert result is None
    assert "deprecated" in issues[0].message


@pytest.mark.parametrize("event_type", ["llm.tokens", "LLM.tokens.v1", "llm..tokens.v1", "llm.tokens.vx"])
def test_register_rejects_malformed_event_types(event_type: str) -> None:
    registry = UsageEventSchemaRegistry()
    with pytest.raises(ValueError):
        registry.register(event_type, StorageSampleV1, quantity=lambda p: 0, description="bad")


def test_register_rejects_duplicates() -> None:
    registry = UsageEventSchemaRegistry()
    registry.register("storage.sample.v1", StorageSampleV1, quantity=lambda p: p.bytes_used, description="x")
    with pytest.raises(ValueError):
        registry.register("storage.sample.v1", StorageSampleV1, quantity=lambda p: p.bytes_used, description="x")


def test_json_schema_marks_optional_fields() -> None:
    entry = default_registry.get_schema("llm.tokens.v1")
    assert entry is not None

    schema = entry.to_json_schema()

    assert schema["title"] == "llm.tokens.v1"
    assert schema["properties"]["input_tokens"] == {"type": "integer"}
    assert schema["properties"]["provider"] == {"type": "string"}
    assert "cached_tokens" not in schema["required"]
    assert set(schema["required"]) == {"provider", "model", "input_tokens", "output_tokens"}
    assert entry.version == 1


def test_meter_name_drops_version_segment() -> None:
    assert meter_name_for("bandwidth.sample.v3") == "bandwidth.sample"
