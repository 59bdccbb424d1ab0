from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from meterbill.core.clock import utc_now
from meterbill.domain.enums import InvoiceStatus, LedgerEntryType, SubscriptionStatus
from meterbill.domain.models import Invoice, Team, TeamSubscription, new_id
from meterbill.services.audit import record_audit
from meterbill.services.billing.ledger import settle_invoice_entries


logger = logging.getLogger(__name__)

PAYMENT_ACTOR = "stripe"

# Processor subscription states mapped onto ours; unknown states keep the raw value.
_SUBSCRIPTION_STATUS = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "incomplete_expired": SubscriptionStatus.CANCELED,
    "unpaid": SubscriptionStatus.UNPAID,
}


def _from_epoch(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _metadata(obj: dict[str, Any]) -> dict[str, Any]:
    metadata = obj.get("metadata")
    return metadata if isinstance(metadata, dict) else {}


def _subscription_fields(obj: dict[str, Any]) -> dict[str, Any]:
    items = (obj.get("items") or {}).get("data") or []
    first_item = items[0] if items else {}
    price = first_item.get("price") or {}
    raw_status = str(obj.get("status") or "active")
    status = _SUBSCRIPTION_STATUS.get(raw_status)
    return {
        "status": status.value if status is not None else raw_status.upper(),
        "plan_code": _metadata(obj).get("plan_code") or price.get("lookup_key") or price.get("id"),
        "seats_quantity": int(first_item.get("quantity") or 1),
        # Newer API versions report periods on the subscription item.
        "current_period_start": _from_epoch(obj.get("current_period_start") or first_item.get("current_period_start")),
        "current_period_end": _from_epoch(obj.get("current_period_end") or first_item.get("current_period_end")),
    }


async def _find_subscription(session: AsyncSession, stripe_subscription_id: str) -> TeamSubscription | None:
    return (
        await session.execute(
            select(TeamSubscription).where(TeamSubscription.stripe_subscription_id == stripe_subscription_id)
        )
    ).scalar_one_or_none()


async def _upsert_subscription(
    session: AsyncSession,
    *,
    stripe_subscription_id: str,
    team_id: str | None,
    customer_id: str | None,
    fields: dict[str, Any],
) -> TeamSubscription | None:
    subscription = await _find_subscription(session, stripe_subscription_id)
    if subscription is None:
        if not team_id or await session.get(Team, team_id) is None:
            logger.warning(
                "stripe_subscription_unmapped subscription_id=%s team_id=%s", stripe_subscription_id, team_id
            )
            return None
        subscription = TeamSubscription(
            id=new_id(),
            team_id=team_id,
            stripe_subscription_id=stripe_subscription_id,
        )
        session.add(subscription)
    subscription.stripe_customer_id = customer_id or subscription.stripe_customer_id
    for key, value in fields.items():
        if value is not None:
            setattr(subscription, key, value)
    subscription.updated_at = utc_now()
    return subscription


async def handle_checkout_completed(session: AsyncSession, obj: dict[str, Any]) -> bool:
    # Only subscription checkouts carry billing state; one-off payments are acknowledged.
    if obj.get("mode") != "subscription" or not obj.get("subscription"):
        return False
    metadata = _metadata(obj)
    team_id = metadata.get("team_id") or obj.get("client_reference_id")
    subscription = await _upsert_subscription(
        session,
        stripe_subscription_id=str(obj["subscription"]),
        team_id=team_id,
        customer_id=obj.get("customer"),
        fields={"status": SubscriptionStatus.ACTIVE.value, "plan_code": metadata.get("plan_code")},
    )
    return subscription is not None


async def handle_subscription_changed(session: AsyncSession, obj: dict[str, Any]) -> bool:
    subscription = await _upsert_subscription(
        session,
        stripe_subscription_id=str(obj.get("id")),
        team_id=_metadata(obj).get("team_id"),
        customer_id=obj.get("customer"),
        fields=_subscription_fields(obj),
    )
    return subscription is not None


async def handle_subscription_deleted(session: AsyncSession, obj: dict[str, Any]) -> bool:
    subscription = await _find_subscription(session, str(obj.get("id")))
    if subscription is None:
        logger.warning("stripe_subscription_delete_unknown subscription_id=%s", obj.get("id"))
        return False
    subscription.status = SubscriptionStatus.CANCELED.value
    subscription.updated_at = utc_now()
    return True


async def _set_subscription_status(
    session: AsyncSession, stripe_subscription_id: str | None, status: SubscriptionStatus
) -> bool:
    if not stripe_subscription_id:
        return False
    subscription = await _find_subscription(session, stripe_subscription_id)
    if subscription is None:
        return False
    subscription.status = status.value
    subscription.updated_at = utc_now()
    return True


async def handle_invoice_paid(session: AsyncSession, obj: dict[str, Any], *, event_id: str) -> bool:
    """Settle our invoice referenced by metadata or external ref; PAID/VOID are left alone."""
    external_ref = obj.get("id")
    invoice_id = _metadata(obj).get("invoice_id")
    clauses = []
    if invoice_id:
        clauses.append(Invoice.id == invoice_id)
    if external_ref:
        clauses.append(Invoice.external_ref == external_ref)
    settled = False
    if clauses:
        invoice = (await session.execute(select(Invoice).where(or_(*clauses)).limit(1))).scalar_one_or_none()
        if invoice is not None:
            target_id = invoice.id
            now = utc_now()
            result = await session.execute(
                update(Invoice)
                .where(
                    Invoice.id == target_id,
                    Invoice.status.in_([InvoiceStatus.DRAFT.value, InvoiceStatus.ISSUED.value]),
                )
                .values(
                    status=InvoiceStatus.PAID.value,
                    paid_at=now,
                    updated_at=now,
                    external_ref=invoice.external_ref or external_ref,
                )
                .execution_options(synchronize_session=False)
            )
            settled = result.rowcount == 1
            if settled:
                await settle_invoice_entries(
                    session, invoice=invoice, entry_type=LedgerEntryType.INVOICE_PAYMENT, reason="payment"
                )
                record_audit(
                    session,
                    action="invoice.paid",
                    entity_type="invoice",
                    entity_id=target_id,
                    actor=PAYMENT_ACTOR,
                    metadata={"event_id": event_id, "external_ref": external_ref},
                )
            else:
                logger.info("stripe_invoice_already_settled invoice_id=%s", target_id)
    subscription_updated = await _set_subscription_status(
        session, obj.get("subscription"), SubscriptionStatus.ACTIVE
    )
    return settled or subscription_updated


async def handle_invoice_payment_failed(session: AsyncSession, obj: dict[str, Any]) -> bool:
    updated = await _set_subscription_status(session, obj.get("subscription"), SubscriptionStatus.PAST_DUE)
    logger.warning(
        "stripe_invoice_payment_failed external_ref=%s subscription_id=%s", obj.get("id"), obj.get("subscription")
    )
    return updated


async def handle_payment_intent(session: AsyncSession, obj: dict[str, Any], *, event_type: str) -> bool:
    # Payment intents carry no billing state of their own here; acknowledged and logged.
    logger.info("stripe_payment_intent event_type=%s intent_id=%s", event_type, obj.get("id"))
    return True
