"""Versioned catalog of accepted usage event shapes.

Each entry pairs an event type (``<domain>.<name>.v<N>``) with a pydantic model that
validates inbound payloads and doubles as the source for the published structural
description. The registry is static configuration assembled at import time.
"""

from __future__ import annotations

from dataclasses import dataclass
import re
import types
from typing import Any, Callable, Literal, Union, get_args, get_origin

from pydantic import BaseModel, ConfigDict, Field, ValidationError


EVENT_TYPE_PATTERN = re.compile(r"^[a-z][a-z0-9]*(\.[a-z][a-z0-9]*)*\.v\d+$")
JSON_SCHEMA_DIALECT = "https://json-schema.org/draft/2020-12/schema"

SchemaStatus = Literal["active", "deprecated"]
FieldKind = Literal["string", "integer", "number", "unknown"]


class UsagePayload(BaseModel):
    # Extra keys are preserved for downstream consumers.
    model_config = ConfigDict(extra="allow")


class LlmTokensV1(UsagePayload):
    provider: str = Field(min_length=1)
    model: str = Field(min_length=1)
    input_tokens: int = Field(ge=0)
    output_tokens: int = Field(ge=0)
    cached_tokens: int | None = Field(default=None, ge=0)


class LlmImageV1(UsagePayload):
    provider: str = Field(min_length=1)
    model: str = Field(min_length=1)
    width: int = Field(gt=0)
    height: int = Field(gt=0)
    count: int = Field(gt=0)


class StorageSampleV1(UsagePayload):
    bytes_used: int = Field(ge=0)


class BandwidthSampleV1(UsagePayload):
    bytes_in: int = Field(ge=0)
    bytes_out: int = Field(ge=0)
    bytes_out_internal: int | None = Field(default=None, ge=0)


@dataclass(frozen=True)
class FieldShape:
    name: str
    kind: FieldKind
    optional: bool


@dataclass(frozen=True)
class SchemaEntry:
    event_type: str
    version: int
    status: SchemaStatus
    description: str
    payload_model: type[UsagePayload]
    quantity: Callable[[UsagePayload], int]

    @property
    def meter_key(self) -> str:
        return meter_name_for(self.event_type)

    def fields(self) -> list[FieldShape]:
        return [
            FieldShape(name=name, kind=_field_kind(info.annotation), optional=not info.is_required())
            for name, info in self.payload_model.model_fields.items()
        ]

    def to_json_schema(self) -> dict[str, Any]:
        # Minimal draft 2020-12 rendering; additional properties stay allowed.
        fields = self.fields()
        return {
            "$schema": JSON_SCHEMA_DIALECT,
            "title": self.event_type,
            "description": self.description,
            "type": "object",
            "properties": {
                shape.name: ({"type": shape.kind} if shape.kind != "unknown" else {})
                for shape in fields
            },
            "required": [shape.name for shape in fields if not shape.optional],
            "additionalProperties": True,
        }


@dataclass(frozen=True)
class PayloadIssue:
    field: str
    message: str


@dataclass(frozen=True)
class ValidatedPayload:
    entry: SchemaEntry
    payload: UsagePayload

    @property
    def quantity(self) -> int:
        return self.entry.quantity(self.payload)

    @property
    def provider(self) -> str | None:
        return getattr(self.payload, "provider", None)

    @property
    def model(self) -> str | None:
        return getattr(self.payload, "model", None)


def meter_name_for(event_type: str) -> str:
    # Drop the trailing version segment: "llm.tokens.v1" -> "llm.tokens".
    return ".".join(event_type.split(".")[:-1])


def _version_of(event_type: str) -> int:
    return int(event_type.rsplit(".v", 1)[1])


def _field_kind(annotation: Any) -> FieldKind:
    # Unwrap Optional[X] before classifying the primitive type.
    origin = get_origin(annotation)
    if origin in (Union, types.UnionType):
        members = [arg for arg in get_args(annotation) if arg is not type(None)]
        if len(members) != 1:
            return "unknown"
        annotation = members[0]
    if annotation is bool:
        return "unknown"
    if annotation is str:
        return "string"
    if annotation is int:
        return "integer"
    if annotation is float:
        return "number"
    return "unknown"


class UsageEventSchemaRegistry:
    def __init__(self) -> None:
        self._entries: dict[str, SchemaEntry] = {}

    def register(
        self,
        event_type: str,
        payload_model: type[UsagePayload],
        *,
        quantity: Callable[[Any], int],
        description: str,
        status: SchemaStatus = "active",
    ) -> SchemaEntry:
        if not EVENT_TYPE_PATTERN.match(event_type):
            raise ValueError(f"invalid event type: {event_type}")
        if event_type in self._entries:
            raise ValueError(f"event type already registered: {event_type}")
        entry = SchemaEntry(
            event_type=event_type,
            version=_version_of(event_type),
            status=status,
            description=description,
            payload_model=payload_model,
            quantity=quantity,
        )
        self._entries[event_type] = entry
        return entry

    def get_all_schemas(self) -> list[SchemaEntry]:
        return list(self._entries.values())

    def get_schema(self, event_type: str) -> SchemaEntry | None:
        return self._entries.get(event_type)

    def supported_event_types(self) -> list[str]:
        return [entry.event_type for entry in self._entries.values() if entry.status == "active"]

    def meters(self) -> list[str]:
        # Distinct meter keys in registration order.
        return list(dict.fromkeys(entry.meter_key for entry in self._entries.values()))

    def validate_payload(
        self, event_type: str, payload: dict[str, Any]
    ) -> tuple[ValidatedPayload | None, list[PayloadIssue]]:
        entry = self._entries.get(event_type)
        if entry is None:
            return None, [PayloadIssue(field="event_type", message=f"Unknown event type: {event_type}")]
        if entry.status == "deprecated":
            return None, [PayloadIssue(field="event_type", message=f"Event type is deprecated: {event_type}")]
        try:
            parsed = entry.payload_model.model_validate(payload)
        except ValidationError as exc:
            issues = [
                PayloadIssue(
                    field=".".join(["payload", *(str(part) for part in error["loc"])]),
                    message=error["msg"],
                )
                for error in exc.errors()
            ]
            return None, issues
        return ValidatedPayload(entry=entry, payload=parsed), []


def _build_default_registry() -> UsageEventSchemaRegistry:
    registry = UsageEventSchemaRegistry()
    registry.register(
        "llm.tokens.v1",
        LlmTokensV1,
        quantity=lambda p: p.input_tokens + p.output_tokens,
        description="LLM token consumption for one completion call.",
    )
    registry.register(
        "llm.image.v1",
        LlmImageV1,
        quantity=lambda p: p.count,
        description="Generated images for one image-generation call.",
    )
    registry.register(
        "storage.sample.v1",
        StorageSampleV1,
        quantity=lambda p: p.bytes_used,
        description="Point-in-time storage sample in bytes.",
    )
    registry.register(
        "bandwidth.sample.v1",
        BandwidthSampleV1,
        quantity=lambda p: p.bytes_in + p.bytes_out,
        description="Bandwidth sample; internal egress is reported but not billed.",
    )
    return registry


default_registry = _build_default_registry()


def get_all_schemas() -> list[SchemaEntry]:
    return default_registry.get_all_schemas()


def get_schema(event_type: str) -> SchemaEntry | None:
    return default_registry.get_schema(event_type)
