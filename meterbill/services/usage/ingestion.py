from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any

from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from meterbill.core.clock import ensure_utc
from meterbill.core.errors import (
    AppNotFoundError,
    BatchTooLargeError,
    BillingEntityNotFoundError,
    PersonalTeamNotFoundError,
    TeamNotFoundError,
    UsageEventRejectedError,
)
from meterbill.domain.models import App, BillingEntity, Team, UsageEvent, User
from meterbill.persistence.claims import insert_or_conflict
from meterbill.services.usage.schema_registry import UsageEventSchemaRegistry, ValidatedPayload, default_registry


logger = logging.getLogger(__name__)

# Shared with capability discovery so clients can size batches up front.
MAX_BATCH_SIZE = 1000


class UsageEventIn(BaseModel):
    idempotency_key: str = Field(min_length=1, max_length=255)
    event_type: str = Field(min_length=1)
    timestamp: datetime
    payload: dict[str, Any]
    source: str = Field(min_length=1, max_length=128)
    # Either team_id or user_id (external ref, resolved to the personal team).
    team_id: str | None = None
    user_id: str | None = None
    cost_minor: int | None = Field(default=None, ge=0)


@dataclass(frozen=True)
class IngestResult:
    accepted: int
    duplicates: int


@dataclass(frozen=True)
class _Attribution:
    team_id: str
    billing_entity_id: str
    user_id: str | None


async def _personal_team_for(session: AsyncSession, app_id: str, user_ref: str) -> tuple[Team, str]:
    # Resolve by external ref first, then by internal user id.
    user = (
        await session.execute(select(User).where(User.app_id == app_id, User.external_ref == user_ref))
    ).scalar_one_or_none()
    if user is None:
        user = (
            await session.execute(select(User).where(User.app_id == app_id, User.id == user_ref))
        ).scalar_one_or_none()
    if user is None:
        raise PersonalTeamNotFoundError(user_ref)
    team = (
        await session.execute(
            select(Team).where(Team.owner_user_id == user.id, Team.kind == "PERSONAL", Team.app_id == app_id)
        )
    ).scalar_one_or_none()
    if team is None:
        raise PersonalTeamNotFoundError(user_ref)
    return team, user.id


async def _attribute(
    session: AsyncSession,
    app_id: str,
    event: UsageEventIn,
    cache: dict[tuple[str, str], _Attribution],
) -> _Attribution:
    cache_key = ("team", event.team_id) if event.team_id else ("user", event.user_id or "")
    cached = cache.get(cache_key)
    if cached is not None:
        return cached
    user_id: str | None = None
    if event.team_id:
        team = await session.get(Team, event.team_id)
        if team is None or team.app_id != app_id:
            raise TeamNotFoundError(event.team_id)
    else:
        team, user_id = await _personal_team_for(session, app_id, event.user_id or "")
    billing_entity = (
        await session.execute(select(BillingEntity).where(BillingEntity.team_id == team.id))
    ).scalar_one_or_none()
    if billing_entity is None:
        raise BillingEntityNotFoundError(team.id)
    attribution = _Attribution(team_id=team.id, billing_entity_id=billing_entity.id, user_id=user_id)
    cache[cache_key] = attribution
    return attribution


def _validate_batch(
    events: list[UsageEventIn], registry: UsageEventSchemaRegistry
) -> list[ValidatedPayload]:
    # Validate every event before any write so a bad batch leaves no partial state.
    validated: list[ValidatedPayload] = []
    issues: list[dict[str, Any]] = []
    for index, event in enumerate(events):
        if not event.team_id and not event.user_id:
            issues.append({"field": f"events[{index}]", "message": "Either team_id or user_id is required"})
        result, payload_issues = registry.validate_payload(event.event_type, event.payload)
        for issue in payload_issues:
            issues.append({"field": f"events[{index}].{issue.field}", "message": issue.message})
        if result is not None:
            validated.append(result)
    if issues:
        raise UsageEventRejectedError(issues)
    return validated


async def ingest_events(
    session: AsyncSession,
    *,
    app_id: str,
    events: list[UsageEventIn],
    registry: UsageEventSchemaRegistry = default_registry,
) -> IngestResult:
    if len(events) > MAX_BATCH_SIZE:
        raise BatchTooLargeError(len(events), MAX_BATCH_SIZE)
    if await session.get(App, app_id) is None:
        raise AppNotFoundError(app_id)
    validated = _validate_batch(events, registry)

    accepted = 0
    duplicates = 0
    cache: dict[tuple[str, str], _Attribution] = {}
    for event, checked in zip(events, validated):
        attribution = await _attribute(session, app_id, event, cache)
        inserted = await insert_or_conflict(
            session,
            UsageEvent,
            {
                "app_id": app_id,
                "team_id": attribution.team_id,
                "billing_entity_id": attribution.billing_entity_id,
                "user_id": attribution.user_id,
                "event_type": event.event_type,
                "meter_key": checked.entry.meter_key,
                "quantity": checked.quantity,
                "cost_minor": event.cost_minor,
                "provider": checked.provider,
                "model": checked.model,
                "payload": checked.payload.model_dump(mode="json"),
                "source": event.source,
                "idempotency_key": event.idempotency_key,
                "occurred_at": ensure_utc(event.timestamp),
            },
        )
        if inserted:
            accepted += 1
        else:
            duplicates += 1
    await session.commit()
    if duplicates:
        logger.info("usage_ingest_duplicates app_id=%s duplicates=%s", app_id, duplicates)
    return IngestResult(accepted=accepted, duplicates=duplicates)
