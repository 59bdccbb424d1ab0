"""Single-statement claim primitives.

Every "exactly one actor wins" decision in the service (webhook dedup, period-close
claims, usage idempotency keys, token replay guards) goes through one of these helpers
so the check and the write are one atomic database statement.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import and_, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import DeclarativeBase

from meterbill.domain.models import PeriodCloseClaim


def _insert_for(session: AsyncSession, model: type[DeclarativeBase]):
    # Pick the dialect-specific INSERT that supports ON CONFLICT DO NOTHING.
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(model)
    if dialect == "sqlite":
        return sqlite_insert(model)
    raise NotImplementedError(f"insert_or_conflict unsupported for dialect {dialect}")


async def insert_or_conflict(
    session: AsyncSession,
    model: type[DeclarativeBase],
    values: dict[str, Any],
) -> bool:
    """Insert one row unless any unique constraint conflicts.

    Returns True when this call inserted the row (the caller owns the action) and
    False when a conflicting row already existed. The caller controls the commit.
    """
    stmt = _insert_for(session, model).values(**values).on_conflict_do_nothing()
    result = await session.execute(stmt)
    return result.rowcount == 1


async def take_over_stale_claim(
    session: AsyncSession,
    *,
    contract_id: str,
    period_start: datetime,
    period_end: datetime,
    owner: str,
    stale_before: datetime,
    now: datetime,
) -> bool:
    # Conditional UPDATE so only one worker can adopt an abandoned CLAIMED row.
    stmt = (
        update(PeriodCloseClaim)
        .where(
            and_(
                PeriodCloseClaim.contract_id == contract_id,
                PeriodCloseClaim.period_start == period_start,
                PeriodCloseClaim.period_end == period_end,
                PeriodCloseClaim.status == "CLAIMED",
                PeriodCloseClaim.claimed_at < stale_before,
            )
        )
        .values(owner=owner, claimed_at=now)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1
