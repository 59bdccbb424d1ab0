from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from pydantic import BaseModel, ConfigDict, Field

from meterbill.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from meterbill.apps.api.response import API_VERSION, SuccessEnvelope, success_response
from meterbill.core.errors import EventTypeNotFoundError
from meterbill.services.usage.ingestion import MAX_BATCH_SIZE
from meterbill.services.usage.schema_registry import SchemaEntry, default_registry


router = APIRouter(tags=["discovery"], responses=DEFAULT_ERROR_RESPONSES)


class EventTypeSummary(BaseModel):
    event_type: str
    version: int
    status: str


class UsageIngestionCapabilities(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    max_batch_size: int = Field(alias="maxBatchSize")
    supported_event_types: list[EventTypeSummary] = Field(alias="supportedEventTypes")


class CapabilitiesResponse(BaseModel):
    usage_ingestion: UsageIngestionCapabilities
    meters: list[str]
    api_version: str


class UsageEventSchemaResponse(BaseModel):
    event_type: str
    version: int
    status: str
    meter_key: str
    description: str
    json_schema: dict[str, Any]


def _schema_payload(entry: SchemaEntry) -> UsageEventSchemaResponse:
    return UsageEventSchemaResponse(
        event_type=entry.event_type,
        version=entry.version,
        status=entry.status,
        meter_key=entry.meter_key,
        description=entry.description,
        json_schema=entry.to_json_schema(),
    )


@router.get("/meta/capabilities", response_model=SuccessEnvelope[CapabilitiesResponse])
async def capabilities(request: Request) -> dict:
    # Let clients size batches and discover meters before sending usage.
    entries = default_registry.get_all_schemas()
    payload = CapabilitiesResponse(
        usage_ingestion=UsageIngestionCapabilities(
            max_batch_size=MAX_BATCH_SIZE,
            supported_event_types=[
                EventTypeSummary(event_type=entry.event_type, version=entry.version, status=entry.status)
                for entry in entries
            ],
        ),
        meters=default_registry.meters(),
        api_version=API_VERSION,
    )
    return success_response(request=request, data=payload.model_dump(by_alias=True))


@router.get("/schemas/usage-events", response_model=SuccessEnvelope[list[UsageEventSchemaResponse]])
async def list_usage_event_schemas(request: Request) -> dict:
    data = [_schema_payload(entry).model_dump() for entry in default_registry.get_all_schemas()]
    return success_response(request=request, data=data)


@router.get("/schemas/usage-events/{event_type}", response_model=SuccessEnvelope[UsageEventSchemaResponse])
async def get_usage_event_schema(event_type: str, request: Request) -> dict:
    entry = default_registry.get_schema(event_type)
    if entry is None:
        raise EventTypeNotFoundError(event_type)
    return success_response(request=request, data=_schema_payload(entry).model_dump())
