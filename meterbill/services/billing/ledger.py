"""Receivables ledger.

Every entry carries an idempotency key with a unique index, so writers can replay
after a partial failure and only the missing entries land. Entries are staged in
the caller's transaction.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from meterbill.core.clock import ensure_utc, isoformat, utc_now
from meterbill.core.errors import BillingEntityNotFoundError, TeamNotFoundError
from meterbill.domain.enums import ChargeType, LedgerAccountType, LedgerEntryType, LedgerReferenceType
from meterbill.domain.models import (
    BillingEntity,
    BundleMeterPolicy,
    ContractBundle,
    Invoice,
    InvoiceLineItem,
    LedgerAccount,
    LedgerEntry,
    Team,
)
from meterbill.persistence.claims import insert_or_conflict


logger = logging.getLogger(__name__)

# Owner for entries whose line has no app and whose contract has no bundle policy.
SYSTEM_APP_ID = "system"
DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100

_CHARGE_TYPES = (LedgerEntryType.SUBSCRIPTION_CHARGE.value, LedgerEntryType.USAGE_CHARGE.value)


@dataclass(frozen=True)
class LedgerPage:
    entries: list[LedgerEntry]
    total: int


def entry_to_dict(entry: LedgerEntry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "app_id": entry.app_id,
        "billing_entity_id": entry.billing_entity_id,
        "ledger_account_id": entry.ledger_account_id,
        "occurred_at": isoformat(entry.occurred_at),
        "entry_type": entry.entry_type,
        "amount_minor": entry.amount_minor,
        "currency": entry.currency,
        "reference_type": entry.reference_type,
        "reference_id": entry.reference_id,
        "idempotency_key": entry.idempotency_key,
        "metadata": entry.metadata_json or {},
    }


def _account_filters(app_id: str, billing_entity_id: str, account_type: LedgerAccountType) -> list:
    return [
        LedgerAccount.app_id == app_id,
        LedgerAccount.billing_entity_id == billing_entity_id,
        LedgerAccount.account_type == account_type.value,
    ]


async def get_or_create_account(
    session: AsyncSession,
    *,
    app_id: str,
    billing_entity_id: str,
    account_type: LedgerAccountType,
) -> str:
    filters = _account_filters(app_id, billing_entity_id, account_type)
    account_id = (await session.execute(select(LedgerAccount.id).where(*filters))).scalar_one_or_none()
    if account_id is not None:
        return account_id
    # A concurrent creator may win the unique key; either way the row exists afterwards.
    await insert_or_conflict(
        session,
        LedgerAccount,
        {"app_id": app_id, "billing_entity_id": billing_entity_id, "account_type": account_type.value},
    )
    return (await session.execute(select(LedgerAccount.id).where(*filters))).scalar_one()


async def record_entry(
    session: AsyncSession,
    *,
    app_id: str,
    billing_entity_id: str,
    account_type: LedgerAccountType,
    entry_type: LedgerEntryType,
    amount_minor: int,
    currency: str,
    reference_type: LedgerReferenceType,
    reference_id: str | None,
    idempotency_key: str,
    metadata: dict[str, Any] | None = None,
    occurred_at: datetime | None = None,
) -> bool:
    """Stage one entry; returns False when ``idempotency_key`` was already recorded."""
    account_id = await get_or_create_account(
        session, app_id=app_id, billing_entity_id=billing_entity_id, account_type=account_type
    )
    inserted = await insert_or_conflict(
        session,
        LedgerEntry,
        {
            "app_id": app_id,
            "billing_entity_id": billing_entity_id,
            "ledger_account_id": account_id,
            "occurred_at": ensure_utc(occurred_at) if occurred_at is not None else utc_now(),
            "entry_type": entry_type.value,
            "amount_minor": amount_minor,
            "currency": currency,
            "reference_type": reference_type.value,
            "reference_id": reference_id,
            "idempotency_key": idempotency_key,
            "metadata_json": metadata or {},
        },
    )
    if not inserted:
        logger.debug("ledger_entry_duplicate idempotency_key=%s", idempotency_key)
    return inserted


async def contract_fallback_app_id(session: AsyncSession, contract_id: str) -> str:
    # First bundle policy's app, for lines such as the base fee that carry no app.
    app_id = (
        await session.execute(
            select(BundleMeterPolicy.app_id)
            .join(ContractBundle, ContractBundle.bundle_id == BundleMeterPolicy.bundle_id)
            .where(ContractBundle.contract_id == contract_id)
            .order_by(ContractBundle.id, BundleMeterPolicy.app_id, BundleMeterPolicy.meter_key)
            .limit(1)
        )
    ).scalar_one_or_none()
    return app_id or SYSTEM_APP_ID


def period_close_entry_key(contract_id: str, invoice_id: str, position: int) -> str:
    return f"period-close:{contract_id}:{invoice_id}:{position}"


async def write_invoice_entries(
    session: AsyncSession,
    *,
    invoice: Invoice,
    lines: Sequence[InvoiceLineItem],
    fallback_app_id: str,
) -> int:
    """Book each line of a contract invoice as a receivable.

    One entry per line, keyed by the line position, so replaying after a partial
    run writes only what is missing. Returns the number of entries written.
    """
    written = 0
    for line in lines:
        is_base_fee = line.charge_type == ChargeType.BASE_FEE.value
        inserted = await record_entry(
            session,
            app_id=line.app_id or fallback_app_id,
            billing_entity_id=invoice.billing_entity_id,
            account_type=LedgerAccountType.ACCOUNTS_RECEIVABLE,
            entry_type=LedgerEntryType.SUBSCRIPTION_CHARGE if is_base_fee else LedgerEntryType.USAGE_CHARGE,
            amount_minor=line.amount_minor,
            currency=invoice.currency,
            reference_type=LedgerReferenceType.INVOICE,
            reference_id=invoice.id,
            idempotency_key=period_close_entry_key(invoice.contract_id or "adhoc", invoice.id, line.position),
            metadata={
                "invoice_id": invoice.id,
                "contract_id": invoice.contract_id,
                "charge_type": line.charge_type,
                "description": line.description,
            },
        )
        written += int(inserted)
    if written:
        logger.info("ledger_invoice_booked invoice_id=%s entries=%s", invoice.id, written)
    return written


async def settle_invoice_entries(
    session: AsyncSession,
    *,
    invoice: Invoice,
    entry_type: LedgerEntryType,
    reason: str,
) -> int:
    """Offset every charge booked for ``invoice`` in the account it was booked to.

    Used when an invoice is paid (INVOICE_PAYMENT) or voided (ADJUSTMENT). Invoices
    that were never booked write nothing.
    """
    charges = (
        await session.execute(
            select(LedgerEntry)
            .where(
                LedgerEntry.reference_type == LedgerReferenceType.INVOICE.value,
                LedgerEntry.reference_id == invoice.id,
                LedgerEntry.entry_type.in_(_CHARGE_TYPES),
                LedgerEntry.amount_minor != 0,
            )
            .order_by(LedgerEntry.idempotency_key)
        )
    ).scalars().all()
    written = 0
    for charge in charges:
        inserted = await record_entry(
            session,
            app_id=charge.app_id,
            billing_entity_id=charge.billing_entity_id,
            account_type=LedgerAccountType.ACCOUNTS_RECEIVABLE,
            entry_type=entry_type,
            amount_minor=-charge.amount_minor,
            currency=charge.currency,
            reference_type=LedgerReferenceType.MANUAL,
            reference_id=invoice.id,
            idempotency_key=f"invoice-{reason}:{charge.id}",
            metadata={"invoice_id": invoice.id, "action": reason, "settles": charge.idempotency_key},
        )
        written += int(inserted)
    if written:
        logger.info("ledger_invoice_settled invoice_id=%s reason=%s entries=%s", invoice.id, reason, written)
    return written


async def resolve_billing_entity_id(session: AsyncSession, *, team_id: str, app_id: str) -> str:
    team = await session.get(Team, team_id)
    if team is None or team.app_id != app_id:
        raise TeamNotFoundError(team_id)
    billing_entity_id = (
        await session.execute(select(BillingEntity.id).where(BillingEntity.team_id == team_id))
    ).scalar_one_or_none()
    if billing_entity_id is None:
        raise BillingEntityNotFoundError(team_id)
    return billing_entity_id


async def list_entries(
    session: AsyncSession,
    *,
    app_id: str,
    billing_entity_id: str,
    start: datetime | None = None,
    end: datetime | None = None,
    entry_type: LedgerEntryType | None = None,
    limit: int = DEFAULT_PAGE_SIZE,
    offset: int = 0,
) -> LedgerPage:
    """Newest-first page of entries; ``start``/``end`` bound a half-open window."""
    filters = [LedgerEntry.app_id == app_id, LedgerEntry.billing_entity_id == billing_entity_id]
    if start is not None:
        filters.append(LedgerEntry.occurred_at >= ensure_utc(start))
    if end is not None:
        filters.append(LedgerEntry.occurred_at < ensure_utc(end))
    if entry_type is not None:
        filters.append(LedgerEntry.entry_type == entry_type.value)
    total = (await session.execute(select(func.count(LedgerEntry.id)).where(*filters))).scalar_one()
    rows = await session.execute(
        select(LedgerEntry)
        .where(*filters)
        .order_by(LedgerEntry.occurred_at.desc(), LedgerEntry.idempotency_key.desc())
        .limit(min(max(1, limit), MAX_PAGE_SIZE))
        .offset(max(0, offset))
    )
    return LedgerPage(entries=list(rows.scalars().all()), total=int(total))


async def get_balance(
    session: AsyncSession,
    *,
    app_id: str,
    billing_entity_id: str,
    account_type: LedgerAccountType = LedgerAccountType.ACCOUNTS_RECEIVABLE,
) -> int:
    # A missing account has a zero balance.
    total = (
        await session.execute(
            select(func.coalesce(func.sum(LedgerEntry.amount_minor), 0))
            .join(LedgerAccount, LedgerAccount.id == LedgerEntry.ledger_account_id)
            .where(*_account_filters(app_id, billing_entity_id, account_type))
        )
    ).scalar_one()
    return int(total)
