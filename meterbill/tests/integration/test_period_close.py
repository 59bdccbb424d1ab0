from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from meterbill.domain.models import Contract, Invoice, PeriodCloseClaim, new_id
from meterbill.services.billing.period_close import (
    SKIP_ALREADY_CLOSED,
    SKIP_ALREADY_INVOICED,
    SKIP_CLAIMED_ELSEWHERE,
    SKIP_NOTHING_BILLABLE,
    PeriodCloseService,
)
from meterbill.tests.utils.billing import seed_active_contract, seed_app, seed_bundle, seed_team, seed_usage, token_event
from meterbill.workers.period_close_worker import run_period_close


def _utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


# Mid-April: March is the most recently ended monthly period.
AS_OF = _utc(2026, 4, 10, 1)
MARCH_START = _utc(2026, 3, 1)
MARCH_END = _utc(2026, 4, 1)
PER_UNIT_POLICY = {
    "limit_type": "INCLUDED",
    "included_amount": 1000,
    "enforcement": "SOFT",
    "overage_billing": "PER_UNIT",
    "unit_price_minor": "3",
}


async def _contract_with_usage(database, *, tokens: int = 1500, policy=PER_UNIT_POLICY, requires_review=False) -> str:
    app = await seed_app(database)
    team = await seed_team(database, app_id=app.app_id)
    bundle_id = await seed_bundle(database, app_id=app.app_id, policies=[policy])
    contract_id = await seed_active_contract(
        database,
        billing_entity_id=team.billing_entity_id,
        bundle_ids=[bundle_id],
        starts_at=_utc(2026, 1, 1),
        requires_review=requires_review,
    )
    if tokens:
        await seed_usage(
            database,
            app_id=app.app_id,
            events=[token_event(occurred_at=_utc(2026, 3, 12), tokens=tokens, team_id=team.team_id)],
        )
    return contract_id


async def _invoices_for(database, contract_id: str) -> list[Invoice]:
    async with database.session() as session:
        rows = await session.execute(select(Invoice).where(Invoice.contract_id == contract_id))
        return list(rows.scalars().all())


async def _insert_claim(database, contract_id: str, *, owner: str, claimed_at: datetime) -> None:
    async with database.session() as session:
        session.add(
            PeriodCloseClaim(
                id=new_id(),
                contract_id=contract_id,
                period_start=MARCH_START,
                period_end=MARCH_END,
                status="CLAIMED",
                owner=owner,
                claimed_at=claimed_at,
            )
        )
        await session.commit()


@pytest.mark.asyncio
async def test_period_close_invoices_the_ended_period_once(database, settings) -> None:
    contract_id = await _contract_with_usage(database)
    service = PeriodCloseService(database, settings=settings)

    first = await service.run_period_close(as_of=AS_OF)
    rerun = await service.run_period_close(as_of=AS_OF)

    assert first.processed == 1 and first.failed == 0
    [outcome] = first.outcomes
    assert outcome.period_start == MARCH_START
    assert outcome.period_end == MARCH_END
    assert rerun.processed == 0 and rerun.skipped == 1
    assert rerun.outcomes[0].reason == SKIP_ALREADY_INVOICED
    assert rerun.outcomes[0].invoice_id == outcome.invoice_id
    [invoice] = await _invoices_for(database, contract_id)
    assert invoice.id == outcome.invoice_id
    assert invoice.total_minor == 1500
    assert invoice.status == "ISSUED"
    async with database.session() as session:
        claim = (await session.execute(select(PeriodCloseClaim))).scalar_one()
    assert claim.status == "RESOLVED"
    assert claim.invoice_id == invoice.id


@pytest.mark.asyncio
async def test_contract_with_no_ended_period_is_ignored(database, settings) -> None:
    await _contract_with_usage(database)

    result = await PeriodCloseService(database, settings=settings).run_period_close(as_of=_utc(2026, 1, 20))

    assert result.outcomes == []
    assert result.processed == result.skipped == result.failed == 0


@pytest.mark.asyncio
async def test_fresh_claim_held_elsewhere_is_skipped(database, settings) -> None:
    contract_id = await _contract_with_usage(database)
    await _insert_claim(database, contract_id, owner="other-worker", claimed_at=datetime.now(timezone.utc))

    result = await PeriodCloseService(database, settings=settings).run_period_close(as_of=AS_OF)

    assert result.skipped == 1
    assert result.outcomes[0].reason == SKIP_CLAIMED_ELSEWHERE
    assert await _invoices_for(database, contract_id) == []


@pytest.mark.asyncio
async def test_stale_claim_is_taken_over(database, settings) -> None:
    contract_id = await _contract_with_usage(database)
    stale = datetime.now(timezone.utc) - timedelta(seconds=settings.period_close_claim_stale_after_s + 60)
    await _insert_claim(database, contract_id, owner="crashed-worker", claimed_at=stale)

    result = await PeriodCloseService(database, settings=settings).run_period_close(as_of=AS_OF)

    assert result.processed == 1
    assert len(await _invoices_for(database, contract_id)) == 1
    async with database.session() as session:
        claim = (await session.execute(select(PeriodCloseClaim))).scalar_one()
    assert claim.owner == result.run_id
    assert claim.status == "RESOLVED"


@pytest.mark.asyncio
async def test_one_failing_contract_does_not_stop_the_run(database, settings) -> None:
    healthy_id = await _contract_with_usage(database)
    broken_id = new_id()
    async with database.session() as session:
        # Points at a billing entity that does not exist, so pricing blows up.
        session.add(
            Contract(
                id=broken_id,
                billing_entity_id="missing-billing-entity",
                status="ACTIVE",
                currency="usd",
                billing_period="MONTHLY",
                terms_days=30,
                base_fee_minor=0,
                requires_review=False,
                starts_at=_utc(2026, 1, 1),
            )
        )
        await session.commit()

    result = await PeriodCloseService(database, settings=settings).run_period_close(as_of=AS_OF)

    assert result.processed == 1
    assert result.failed == 1
    assert result.errors[0]["contract_id"] == broken_id
    assert len(await _invoices_for(database, healthy_id)) == 1
    async with database.session() as session:
        broken_claims = (
            await session.execute(
                select(func.count(PeriodCloseClaim.id)).where(PeriodCloseClaim.contract_id == broken_id)
            )
        ).scalar_one()
    # The failed contract's claim is released so the next run retries it.
    assert broken_claims == 0


@pytest.mark.asyncio
async def test_review_contract_closes_into_draft(database, settings) -> None:
    contract_id = await _contract_with_usage(database, requires_review=True)

    await PeriodCloseService(database, settings=settings).run_period_close(as_of=AS_OF)

    [invoice] = await _invoices_for(database, contract_id)
    assert invoice.status == "DRAFT"
    assert invoice.requires_review is True
    assert invoice.issued_at is None


@pytest.mark.asyncio
async def test_hard_cap_overrun_closes_into_draft(database, settings) -> None:
    policy = {"limit_type": "HARD_CAP", "included_amount": 1000, "enforcement": "HARD"}
    contract_id = await _contract_with_usage(database, policy=policy)

    await PeriodCloseService(database, settings=settings).run_period_close(as_of=AS_OF)

    [invoice] = await _invoices_for(database, contract_id)
    assert invoice.status == "DRAFT"
    assert invoice.total_minor == 0


@pytest.mark.asyncio
async def test_period_without_billable_lines_closes_without_invoice(database, settings) -> None:
    contract_id = await _contract_with_usage(database, tokens=500)
    service = PeriodCloseService(database, settings=settings)

    first = await service.run_period_close(as_of=AS_OF)
    rerun = await service.run_period_close(as_of=AS_OF)

    assert first.outcomes[0].reason == SKIP_NOTHING_BILLABLE
    assert rerun.outcomes[0].reason == SKIP_ALREADY_CLOSED
    assert await _invoices_for(database, contract_id) == []


@pytest.mark.asyncio
async def test_period_close_can_be_triggered_by_admin(client, database, admin_headers) -> None:
    await _contract_with_usage(database)

    response = await client.post(
        "/v1/admin/period-close/run", json={"as_of": "2026-04-10T01:00:00Z"}, headers=admin_headers
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["processed"] == 1
    assert data["as_of"] == "2026-04-10T01:00:00Z"
    assert data["outcomes"][0]["period_start"] == "2026-03-01T00:00:00Z"
    assert len(data["invoices"]) == 1


@pytest.mark.asyncio
async def test_worker_job_runs_the_same_close(database, settings) -> None:
    await _contract_with_usage(database)
    ctx = {"period_close_service": PeriodCloseService(database, settings=settings)}

    summary = await run_period_close(ctx, as_of="2026-04-10T01:00:00+00:00")

    assert summary["processed"] == 1
    assert summary["failed"] == 0
