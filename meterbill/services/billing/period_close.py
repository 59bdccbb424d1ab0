"""Scheduled period close: one invoice per contract per ended billing period.

Every contract is processed independently. Ownership of a (contract, period) pair is
decided by a single-statement claim. The invoice with its line items and ledger
entries commits in the same transaction as the claim resolution, so a crash either
leaves no invoice (the claim goes stale and is taken over later) or a complete
invoice whose existence marks the period closed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
from typing import Any, Literal
from uuid import uuid4

from sqlalchemy import and_, delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from meterbill.core.clock import ensure_utc, isoformat, utc_now
from meterbill.core.config import Settings, get_settings
from meterbill.domain.enums import ClaimStatus, ContractStatus
from meterbill.domain.models import BillingEntity, Contract, Invoice, PeriodCloseClaim
from meterbill.persistence.claims import insert_or_conflict, take_over_stale_claim
from meterbill.persistence.db import Database
from meterbill.services.billing.invoices import (
    live_invoice_for_contract_period,
    load_invoice_lines,
    persist_invoice,
)
from meterbill.services.billing.ledger import contract_fallback_app_id, write_invoice_entries
from meterbill.services.billing.line_items import build_invoice_draft
from meterbill.services.billing.periods import BillingWindow, latest_closed_period
from meterbill.services.pricing import CustomPricingProvider, ManualReviewPricingProvider


logger = logging.getLogger(__name__)

Outcome = Literal["processed", "skipped", "failed"]

SKIP_ALREADY_INVOICED = "already_invoiced"
# Resolved earlier without an invoice (nothing was billable).
SKIP_ALREADY_CLOSED = "already_closed"
SKIP_CLAIMED_ELSEWHERE = "claimed_elsewhere"
SKIP_NOTHING_BILLABLE = "nothing_billable"
SKIP_CLAIM_LOST = "claim_lost"


@dataclass(frozen=True)
class ContractCloseOutcome:
    contract_id: str
    period_start: datetime
    period_end: datetime
    outcome: Outcome
    invoice_id: str | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "contract_id": self.contract_id,
            "period_start": isoformat(self.period_start),
            "period_end": isoformat(self.period_end),
            "outcome": self.outcome,
            "invoice_id": self.invoice_id,
            "reason": self.reason,
        }


@dataclass
class PeriodCloseRunResult:
    run_id: str
    as_of: datetime
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    invoices: list[str] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)
    outcomes: list[ContractCloseOutcome] = field(default_factory=list)

    def record(self, outcome: ContractCloseOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome.outcome == "processed":
            self.processed += 1
            if outcome.invoice_id:
                self.invoices.append(outcome.invoice_id)
        elif outcome.outcome == "skipped":
            self.skipped += 1
        else:
            self.failed += 1
            self.errors.append({"contract_id": outcome.contract_id, "error": outcome.reason or "unknown"})

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "as_of": isoformat(self.as_of),
            "processed": self.processed,
            "skipped": self.skipped,
            "failed": self.failed,
            "invoices": list(self.invoices),
            "errors": list(self.errors),
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
        }


def _claim_key(contract_id: str, window: BillingWindow) -> list:
    return [
        PeriodCloseClaim.contract_id == contract_id,
        PeriodCloseClaim.period_start == window.start,
        PeriodCloseClaim.period_end == window.end,
    ]


class PeriodCloseService:
    def __init__(
        self,
        database: Database,
        *,
        settings: Settings | None = None,
        custom_pricing: CustomPricingProvider | None = None,
    ) -> None:
        self._database = database
        self._settings = settings or get_settings()
        self._custom_pricing = custom_pricing or ManualReviewPricingProvider()

    async def run_period_close(self, as_of: datetime | None = None) -> PeriodCloseRunResult:
        as_of = ensure_utc(as_of) if as_of is not None else utc_now()
        result = PeriodCloseRunResult(run_id=uuid4().hex, as_of=as_of)
        async with self._database.session() as session:
            contracts = (
                await session.execute(
                    select(Contract.id, Contract.starts_at, Contract.ends_at, Contract.billing_period)
                    .where(Contract.status == ContractStatus.ACTIVE.value)
                    .order_by(Contract.id)
                )
            ).all()

        for contract_id, starts_at, ends_at, billing_period in contracts:
            window = latest_closed_period(
                starts_at=starts_at, ends_at=ends_at, billing_period=billing_period, as_of=as_of
            )
            if window is None:
                continue
            try:
                outcome = await self.close_contract_period(contract_id, window, owner=result.run_id)
            except Exception as exc:  # noqa: BLE001 - one failing contract must not abort the run.
                logger.exception(
                    "period_close_contract_failed contract_id=%s period_start=%s", contract_id, window.start
                )
                await self._release_claim(contract_id, window, owner=result.run_id)
                outcome = ContractCloseOutcome(
                    contract_id=contract_id,
                    period_start=window.start,
                    period_end=window.end,
                    outcome="failed",
                    reason=str(exc) or exc.__class__.__name__,
                )
            result.record(outcome)

        logger.info(
            "period_close_run_complete run_id=%s processed=%s skipped=%s failed=%s",
            result.run_id,
            result.processed,
            result.skipped,
            result.failed,
        )
        return result

    async def close_contract_period(
        self, contract_id: str, window: BillingWindow, *, owner: str
    ) -> ContractCloseOutcome:
        def skipped(reason: str, invoice_id: str | None = None) -> ContractCloseOutcome:
            logger.info("period_close_skipped contract_id=%s reason=%s", contract_id, reason)
            return ContractCloseOutcome(
                contract_id=contract_id,
                period_start=window.start,
                period_end=window.end,
                outcome="skipped",
                invoice_id=invoice_id,
                reason=reason,
            )

        async with self._database.session() as session:
            # Closed status is derived from the invoice first; a lost claim row and
            # missing ledger entries from a partial run are repaired.
            existing = await live_invoice_for_contract_period(
                session, contract_id=contract_id, period_start=window.start, period_end=window.end
            )
            if existing is not None:
                await self._repair_claim(session, contract_id, window, owner=owner, invoice_id=existing.id)
                await self._book_invoice(session, existing)
                await session.commit()
                return skipped(SKIP_ALREADY_INVOICED, existing.id)
            if not await self._acquire_claim(session, contract_id, window, owner=owner):
                claim_status = (
                    await session.execute(select(PeriodCloseClaim.status).where(*_claim_key(contract_id, window)))
                ).scalar_one_or_none()
                await session.commit()
                if claim_status == ClaimStatus.RESOLVED.value:
                    return skipped(SKIP_ALREADY_CLOSED)
                return skipped(SKIP_CLAIMED_ELSEWHERE)
            await session.commit()

        async with self._database.session() as session:
            contract = await session.get(Contract, contract_id)
            billing_entity = await session.get(BillingEntity, contract.billing_entity_id)
            draft = await build_invoice_draft(
                session,
                team_id=billing_entity.team_id,
                billing_entity_id=billing_entity.id,
                contract=contract,
                period_start=window.start,
                period_end=window.end,
                settings=self._settings,
                custom_pricing=self._custom_pricing,
            )
            invoice_id: str | None = None
            if draft.lines:
                invoice = persist_invoice(
                    session,
                    draft=draft,
                    team_id=billing_entity.team_id,
                    billing_entity_id=billing_entity.id,
                    contract=contract,
                    period_start=window.start,
                    period_end=window.end,
                )
                invoice_id = invoice.id
                await session.flush()
                await self._book_invoice(session, invoice)
            if not await self._resolve_claim(session, contract_id, window, owner=owner, invoice_id=invoice_id):
                await session.rollback()
                return skipped(SKIP_CLAIM_LOST)
            await session.commit()

        if invoice_id is None:
            return skipped(SKIP_NOTHING_BILLABLE)
        logger.info(
            "period_close_invoiced contract_id=%s invoice_id=%s total_minor=%s",
            contract_id,
            invoice_id,
            draft.total_minor,
        )
        return ContractCloseOutcome(
            contract_id=contract_id,
            period_start=window.start,
            period_end=window.end,
            outcome="processed",
            invoice_id=invoice_id,
        )

    async def _book_invoice(self, session: AsyncSession, invoice: Invoice) -> int:
        lines = await load_invoice_lines(session, invoice.id)
        fallback_app_id = await contract_fallback_app_id(session, invoice.contract_id)
        return await write_invoice_entries(session, invoice=invoice, lines=lines, fallback_app_id=fallback_app_id)

    async def _acquire_claim(
        self, session: AsyncSession, contract_id: str, window: BillingWindow, *, owner: str
    ) -> bool:
        now = utc_now()
        claimed = await insert_or_conflict(
            session,
            PeriodCloseClaim,
            {
                "contract_id": contract_id,
                "period_start": window.start,
                "period_end": window.end,
                "status": ClaimStatus.CLAIMED.value,
                "owner": owner,
                "claimed_at": now,
            },
        )
        if claimed:
            return True
        stale_before = now - timedelta(seconds=max(1, int(self._settings.period_close_claim_stale_after_s)))
        taken_over = await take_over_stale_claim(
            session,
            contract_id=contract_id,
            period_start=window.start,
            period_end=window.end,
            owner=owner,
            stale_before=stale_before,
            now=now,
        )
        if taken_over:
            logger.warning("period_close_stale_claim_taken_over contract_id=%s owner=%s", contract_id, owner)
        return taken_over

    async def _resolve_claim(
        self,
        session: AsyncSession,
        contract_id: str,
        window: BillingWindow,
        *,
        owner: str,
        invoice_id: str | None,
    ) -> bool:
        # Conditional on still owning the claim so a taken-over run cannot double-resolve.
        result = await session.execute(
            update(PeriodCloseClaim)
            .where(
                and_(
                    *_claim_key(contract_id, window),
                    PeriodCloseClaim.owner == owner,
                    PeriodCloseClaim.status == ClaimStatus.CLAIMED.value,
                )
            )
            .values(status=ClaimStatus.RESOLVED.value, resolved_at=utc_now(), invoice_id=invoice_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _repair_claim(
        self,
        session: AsyncSession,
        contract_id: str,
        window: BillingWindow,
        *,
        owner: str,
        invoice_id: str,
    ) -> None:
        now = utc_now()
        inserted = await insert_or_conflict(
            session,
            PeriodCloseClaim,
            {
                "contract_id": contract_id,
                "period_start": window.start,
                "period_end": window.end,
                "status": ClaimStatus.RESOLVED.value,
                "owner": owner,
                "claimed_at": now,
                "resolved_at": now,
                "invoice_id": invoice_id,
            },
        )
        if inserted:
            return
        await session.execute(
            update(PeriodCloseClaim)
            .where(and_(*_claim_key(contract_id, window), PeriodCloseClaim.status == ClaimStatus.CLAIMED.value))
            .values(status=ClaimStatus.RESOLVED.value, resolved_at=now, invoice_id=invoice_id)
            .execution_options(synchronize_session=False)
        )

    async def _release_claim(self, contract_id: str, window: BillingWindow, *, owner: str) -> None:
        # Drop our unresolved claim so the next poll retries immediately.
        async with self._database.session() as session:
            await session.execute(
                delete(PeriodCloseClaim).where(
                    and_(
                        *_claim_key(contract_id, window),
                        PeriodCloseClaim.owner == owner,
                        PeriodCloseClaim.status == ClaimStatus.CLAIMED.value,
                    )
                )
            )
            await session.commit()
