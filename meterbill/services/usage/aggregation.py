from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Literal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from meterbill.core.clock import ensure_utc
from meterbill.core.errors import BillingEntityNotFoundError, TeamNotFoundError
from meterbill.domain.models import BillingEntity, Team, UsageEvent


GroupBy = Literal["app", "meter", "provider", "model"]

_UNKNOWN = "unknown"
_GROUP_COLUMNS = {
    "app": UsageEvent.app_id,
    "meter": UsageEvent.meter_key,
    "provider": UsageEvent.provider,
    "model": UsageEvent.model,
}


@dataclass(frozen=True)
class UsageGroup:
    key: str
    quantity: int
    event_count: int


@dataclass(frozen=True)
class CogsGroup:
    app_id: str
    meter_key: str
    cost_minor: int
    event_count: int


async def _billing_entity_id_for(session: AsyncSession, team_id: str, app_id: str | None) -> str:
    team = await session.get(Team, team_id)
    # Another app's team is reported as missing rather than forbidden.
    if team is None or (app_id is not None and team.app_id != app_id):
        raise TeamNotFoundError(team_id)
    billing_entity_id = (
        await session.execute(select(BillingEntity.id).where(BillingEntity.team_id == team_id))
    ).scalar_one_or_none()
    if billing_entity_id is None:
        raise BillingEntityNotFoundError(team_id)
    return billing_entity_id


def _window_filters(billing_entity_id: str, start: datetime, end: datetime) -> list:
    # Half-open window so adjacent periods never count an event twice.
    return [
        UsageEvent.billing_entity_id == billing_entity_id,
        UsageEvent.occurred_at >= ensure_utc(start),
        UsageEvent.occurred_at < ensure_utc(end),
    ]


async def aggregate_usage(
    session: AsyncSession,
    *,
    team_id: str,
    start: datetime,
    end: datetime,
    group_by: GroupBy,
    app_id: str | None = None,
) -> list[UsageGroup]:
    billing_entity_id = await _billing_entity_id_for(session, team_id, app_id)
    if ensure_utc(start) > ensure_utc(end):
        return []
    column = _GROUP_COLUMNS[group_by]
    stmt = (
        select(
            column.label("group_key"),
            func.coalesce(func.sum(UsageEvent.quantity), 0),
            func.count(UsageEvent.id),
        )
        .where(*_window_filters(billing_entity_id, start, end))
        .group_by(column)
    )
    rows = (await session.execute(stmt)).all()
    # Null provider/model rows fold into a single "unknown" bucket.
    totals: dict[str, tuple[int, int]] = {}
    for group_key, quantity, event_count in rows:
        key = group_key or _UNKNOWN
        prev_quantity, prev_count = totals.get(key, (0, 0))
        totals[key] = (prev_quantity + int(quantity), prev_count + int(event_count))
    return [
        UsageGroup(key=key, quantity=quantity, event_count=count)
        for key, (quantity, count) in sorted(totals.items())
    ]


async def aggregate_cogs(
    session: AsyncSession,
    *,
    team_id: str,
    start: datetime,
    end: datetime,
    app_id: str | None = None,
) -> list[CogsGroup]:
    billing_entity_id = await _billing_entity_id_for(session, team_id, app_id)
    if ensure_utc(start) > ensure_utc(end):
        return []
    stmt = (
        select(
            UsageEvent.app_id,
            UsageEvent.meter_key,
            func.coalesce(func.sum(UsageEvent.cost_minor), 0),
            func.count(UsageEvent.id),
        )
        .where(*_window_filters(billing_entity_id, start, end))
        .group_by(UsageEvent.app_id, UsageEvent.meter_key)
        .order_by(UsageEvent.app_id, UsageEvent.meter_key)
    )
    rows = (await session.execute(stmt)).all()
    return [
        CogsGroup(app_id=app_id, meter_key=meter_key, cost_minor=int(cost), event_count=int(count))
        for app_id, meter_key, cost, count in rows
    ]


async def usage_by_meter(
    session: AsyncSession,
    *,
    billing_entity_id: str,
    start: datetime,
    end: datetime,
) -> dict[tuple[str, str], int]:
    # Billable totals keyed by (app_id, meter_key) for invoice generation.
    stmt = (
        select(
            UsageEvent.app_id,
            UsageEvent.meter_key,
            func.coalesce(func.sum(UsageEvent.quantity), 0),
        )
        .where(*_window_filters(billing_entity_id, start, end))
        .group_by(UsageEvent.app_id, UsageEvent.meter_key)
    )
    rows = (await session.execute(stmt)).all()
    return {(app_id, meter_key): int(quantity) for app_id, meter_key, quantity in rows}
