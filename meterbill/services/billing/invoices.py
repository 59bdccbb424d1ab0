from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from meterbill.core.clock import ensure_utc, isoformat, utc_now
from meterbill.core.config import Settings, get_settings
from meterbill.core.errors import (
    BillingEntityNotFoundError,
    InvalidInvoiceStatusError,
    InvoiceNotFoundError,
    TeamNotFoundError,
)
from meterbill.domain.enums import InvoiceStatus, LedgerEntryType
from meterbill.domain.models import BillingEntity, Contract, Invoice, InvoiceLineItem, Team, new_id
from meterbill.services.audit import record_audit
from meterbill.services.billing.ledger import settle_invoice_entries
from meterbill.services.billing.line_items import InvoiceDraft, build_invoice_draft
from meterbill.services.entitlements import active_contract_for_team
from meterbill.services.pricing import CustomPricingProvider, ManualReviewPricingProvider


logger = logging.getLogger(__name__)

EXPORT_FORMAT = "invoice.v1"
DEFAULT_TERMS_DAYS = 30

# Allowed source states per target state: DRAFT <-> ISSUED -> PAID | VOID.
_TRANSITIONS: dict[InvoiceStatus, tuple[InvoiceStatus, ...]] = {
    InvoiceStatus.ISSUED: (InvoiceStatus.DRAFT,),
    InvoiceStatus.DRAFT: (InvoiceStatus.ISSUED,),
    InvoiceStatus.PAID: (InvoiceStatus.DRAFT, InvoiceStatus.ISSUED),
    InvoiceStatus.VOID: (InvoiceStatus.DRAFT, InvoiceStatus.ISSUED),
}


@dataclass(frozen=True)
class InvoiceRecord:
    invoice: Invoice
    lines: list[InvoiceLineItem]

    def to_dict(self) -> dict[str, Any]:
        invoice = self.invoice
        return {
            "id": invoice.id,
            "billing_entity_id": invoice.billing_entity_id,
            "team_id": invoice.team_id,
            "contract_id": invoice.contract_id,
            "period_start": isoformat(invoice.period_start),
            "period_end": isoformat(invoice.period_end),
            "status": invoice.status,
            "currency": invoice.currency,
            "subtotal_minor": invoice.subtotal_minor,
            "total_minor": invoice.total_minor,
            "requires_review": invoice.requires_review,
            "external_ref": invoice.external_ref,
            "issued_at": isoformat(invoice.issued_at),
            "due_at": isoformat(invoice.due_at),
            "paid_at": isoformat(invoice.paid_at),
            "voided_at": isoformat(invoice.voided_at),
            "created_at": isoformat(invoice.created_at),
            "line_items": [
                {
                    "id": line.id,
                    "position": line.position,
                    "app_id": line.app_id,
                    "meter_key": line.meter_key,
                    "charge_type": line.charge_type,
                    "description": line.description,
                    "quantity": line.quantity,
                    "unit_price_minor": line.unit_price_minor,
                    "amount_minor": line.amount_minor,
                    "flagged": line.flagged,
                    "flag_reason": line.flag_reason,
                    "usage_summary": line.usage_summary,
                }
                for line in self.lines
            ],
        }


async def load_invoice_lines(session: AsyncSession, invoice_id: str) -> list[InvoiceLineItem]:
    rows = await session.execute(
        select(InvoiceLineItem).where(InvoiceLineItem.invoice_id == invoice_id).order_by(InvoiceLineItem.position)
    )
    return list(rows.scalars().all())


async def live_invoice_for_contract_period(
    session: AsyncSession, *, contract_id: str, period_start: datetime, period_end: datetime
) -> Invoice | None:
    return (
        await session.execute(
            select(Invoice).where(
                Invoice.contract_id == contract_id,
                Invoice.period_start == ensure_utc(period_start),
                Invoice.period_end == ensure_utc(period_end),
                Invoice.status != InvoiceStatus.VOID.value,
            )
        )
    ).scalar_one_or_none()


def persist_invoice(
    session: AsyncSession,
    *,
    draft: InvoiceDraft,
    team_id: str,
    billing_entity_id: str,
    contract: Contract | None,
    period_start: datetime,
    period_end: datetime,
) -> Invoice:
    """Stage an invoice and its line items; the caller owns the transaction."""
    now = utc_now()
    requires_review = draft.requires_review or bool(contract is not None and contract.requires_review)
    terms_days = contract.terms_days if contract is not None else DEFAULT_TERMS_DAYS
    invoice = Invoice(
        id=new_id(),
        billing_entity_id=billing_entity_id,
        team_id=team_id,
        contract_id=contract.id if contract is not None else None,
        period_start=ensure_utc(period_start),
        period_end=ensure_utc(period_end),
        status=InvoiceStatus.DRAFT.value if requires_review else InvoiceStatus.ISSUED.value,
        currency=contract.currency if contract is not None else "usd",
        subtotal_minor=draft.total_minor,
        total_minor=draft.total_minor,
        requires_review=requires_review,
        issued_at=None if requires_review else now,
        due_at=None if requires_review else now + timedelta(days=terms_days),
        created_at=now,
        updated_at=now,
    )
    session.add(invoice)
    for position, line in enumerate(draft.lines):
        session.add(
            InvoiceLineItem(
                invoice_id=invoice.id,
                position=position,
                app_id=line.app_id,
                meter_key=line.meter_key,
                charge_type=line.charge_type.value,
                description=line.description,
                quantity=line.quantity,
                unit_price_minor=str(line.unit_price_minor),
                amount_minor=line.amount_minor,
                flagged=line.flagged,
                flag_reason=line.flag_reason,
                usage_summary=line.usage_summary,
            )
        )
    return invoice


async def generate_invoice(
    session: AsyncSession,
    *,
    team_id: str,
    period_start: datetime,
    period_end: datetime,
    actor: str = "system",
    request_id: str | None = None,
    settings: Settings | None = None,
    custom_pricing: CustomPricingProvider | None = None,
) -> InvoiceRecord:
    """Ad hoc invoice for an arbitrary window; returns the live invoice if one already exists."""
    settings = settings or get_settings()
    if await session.get(Team, team_id) is None:
        raise TeamNotFoundError(team_id)
    billing_entity = (
        await session.execute(select(BillingEntity).where(BillingEntity.team_id == team_id))
    ).scalar_one_or_none()
    if billing_entity is None:
        raise BillingEntityNotFoundError(team_id)
    billing_entity_id = billing_entity.id
    period_start = ensure_utc(period_start)
    period_end = ensure_utc(period_end)

    existing = await _live_invoice_for_window(session, billing_entity_id, period_start, period_end)
    if existing is not None:
        return InvoiceRecord(invoice=existing, lines=await load_invoice_lines(session, existing.id))

    contract = await active_contract_for_team(session, team_id)
    draft = await build_invoice_draft(
        session,
        team_id=team_id,
        billing_entity_id=billing_entity_id,
        contract=contract,
        period_start=period_start,
        period_end=period_end,
        settings=settings,
        custom_pricing=custom_pricing or ManualReviewPricingProvider(),
    )
    invoice = persist_invoice(
        session,
        draft=draft,
        team_id=team_id,
        billing_entity_id=billing_entity_id,
        contract=contract,
        period_start=period_start,
        period_end=period_end,
    )
    await session.flush()
    record_audit(
        session,
        action="invoice.generate",
        entity_type="invoice",
        entity_id=invoice.id,
        actor=actor,
        request_id=request_id,
        metadata={"team_id": team_id, "total_minor": invoice.total_minor, "status": invoice.status},
    )
    try:
        await session.commit()
    except IntegrityError:
        # A concurrent generate for the same window won one of the unique indexes.
        await session.rollback()
        existing = await _live_invoice_for_window(session, billing_entity_id, period_start, period_end)
        if existing is None:
            raise
        return InvoiceRecord(invoice=existing, lines=await load_invoice_lines(session, existing.id))
    logger.info(
        "invoice_generated invoice_id=%s team_id=%s total_minor=%s status=%s",
        invoice.id,
        team_id,
        invoice.total_minor,
        invoice.status,
    )
    return InvoiceRecord(invoice=invoice, lines=await load_invoice_lines(session, invoice.id))


async def _live_invoice_for_window(
    session: AsyncSession, billing_entity_id: str, period_start: datetime, period_end: datetime
) -> Invoice | None:
    return (
        await session.execute(
            select(Invoice)
            .where(
                Invoice.billing_entity_id == billing_entity_id,
                Invoice.period_start == period_start,
                Invoice.period_end == period_end,
                Invoice.status != InvoiceStatus.VOID.value,
            )
            .order_by(Invoice.created_at)
            .limit(1)
        )
    ).scalar_one_or_none()


async def get_invoice(session: AsyncSession, invoice_id: str) -> InvoiceRecord:
    invoice = await session.get(Invoice, invoice_id)
    if invoice is None:
        raise InvoiceNotFoundError(invoice_id)
    return InvoiceRecord(invoice=invoice, lines=await load_invoice_lines(session, invoice_id))


async def export_invoice(session: AsyncSession, invoice_id: str) -> dict[str, Any]:
    # Versioned rendering for downstream accounting systems.
    record = await get_invoice(session, invoice_id)
    payload = record.to_dict()
    return {
        "format": EXPORT_FORMAT,
        "exported_at": isoformat(utc_now()),
        "invoice": payload,
        "totals": {
            "currency": record.invoice.currency,
            "line_count": len(record.lines),
            "total_minor": record.invoice.total_minor,
            "flagged_lines": sum(1 for line in record.lines if line.flagged),
        },
    }


async def transition_invoice(
    session: AsyncSession,
    *,
    invoice_id: str,
    target: InvoiceStatus,
    actor: str,
    request_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> InvoiceRecord:
    """Move an invoice to ``target`` with a conditional UPDATE on the allowed source states."""
    invoice = await session.get(Invoice, invoice_id)
    if invoice is None:
        raise InvoiceNotFoundError(invoice_id)
    from_status = invoice.status
    now = utc_now()
    values: dict[str, Any] = {"status": target.value, "updated_at": now}
    if target == InvoiceStatus.PAID:
        values["paid_at"] = now
    elif target == InvoiceStatus.VOID:
        values["voided_at"] = now
    elif target == InvoiceStatus.ISSUED:
        terms_days = DEFAULT_TERMS_DAYS
        if invoice.contract_id:
            contract = await session.get(Contract, invoice.contract_id)
            if contract is not None:
                terms_days = contract.terms_days
        values["issued_at"] = now
        values["due_at"] = now + timedelta(days=terms_days)
    elif target == InvoiceStatus.DRAFT:
        values["issued_at"] = None
        values["due_at"] = None

    allowed = [status.value for status in _TRANSITIONS[target]]
    result = await session.execute(
        update(Invoice)
        .where(Invoice.id == invoice_id, Invoice.status.in_(allowed))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await session.rollback()
        raise InvalidInvoiceStatusError(invoice_id, from_status, target.value)
    if target == InvoiceStatus.PAID:
        await settle_invoice_entries(
            session, invoice=invoice, entry_type=LedgerEntryType.INVOICE_PAYMENT, reason="payment"
        )
    elif target == InvoiceStatus.VOID:
        await settle_invoice_entries(session, invoice=invoice, entry_type=LedgerEntryType.ADJUSTMENT, reason="void")
    record_audit(
        session,
        action=f"invoice.{target.value.lower()}",
        entity_type="invoice",
        entity_id=invoice_id,
        actor=actor,
        request_id=request_id,
        metadata={"from_status": from_status, "to_status": target.value, **(metadata or {})},
    )
    await session.commit()
    await session.refresh(invoice)
    logger.info("invoice_transition invoice_id=%s status=%s actor=%s", invoice_id, target.value, actor)
    return InvoiceRecord(invoice=invoice, lines=await load_invoice_lines(session, invoice_id))


async def mark_invoice_paid(
    session: AsyncSession, invoice_id: str, *, actor: str, request_id: str | None = None
) -> InvoiceRecord:
    return await transition_invoice(
        session, invoice_id=invoice_id, target=InvoiceStatus.PAID, actor=actor, request_id=request_id
    )


async def issue_invoice(
    session: AsyncSession, invoice_id: str, *, actor: str, request_id: str | None = None
) -> InvoiceRecord:
    return await transition_invoice(
        session, invoice_id=invoice_id, target=InvoiceStatus.ISSUED, actor=actor, request_id=request_id
    )


async def revert_invoice_to_draft(
    session: AsyncSession, invoice_id: str, *, actor: str, request_id: str | None = None
) -> InvoiceRecord:
    return await transition_invoice(
        session, invoice_id=invoice_id, target=InvoiceStatus.DRAFT, actor=actor, request_id=request_id
    )


async def void_invoice(
    session: AsyncSession, invoice_id: str, *, actor: str, request_id: str | None = None
) -> InvoiceRecord:
    return await transition_invoice(
        session, invoice_id=invoice_id, target=InvoiceStatus.VOID, actor=actor, request_id=request_id
    )
