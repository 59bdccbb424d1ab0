"""Payment-processor webhook reconciliation.

Ordering matters: the signature is verified over the raw bytes before anything is
parsed, the event id is recorded (insert-or-conflict, committed on its own) before any
side effect, and only then is the event routed. A crash after the dedup commit drops
that delivery instead of applying it twice.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError
import stripe

from meterbill.core.clock import utc_now
from meterbill.core.config import Settings, get_settings
from meterbill.core.errors import PaymentSignatureError
from meterbill.domain.models import StripeWebhookEvent
from meterbill.persistence.claims import insert_or_conflict
from meterbill.persistence.db import Database
from meterbill.services.payments import handlers


logger = logging.getLogger(__name__)

RECOGNIZED_EVENT_TYPES = (
    "checkout.session.completed",
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
    "invoice.paid",
    "invoice.payment_failed",
    "payment_intent.succeeded",
    "payment_intent.failed",
)


class PaymentEventData(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    object_: dict[str, Any] = Field(alias="object")


class PaymentEvent(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    created: int | None = None
    livemode: bool = False
    data: PaymentEventData


class PaymentEventReconciler:
    def __init__(self, database: Database, *, settings: Settings | None = None) -> None:
        self._database = database
        self._settings = settings or get_settings()

    def verify_signature(self, raw_payload: bytes, signature_header: str | None) -> PaymentEvent:
        """Verify the processor signature over the exact bytes received and parse the event.

        Every failure mode raises the same PaymentSignatureError; reasons are logged only.
        """
        secret = self._settings.stripe_webhook_secret
        if not secret:
            logger.error("stripe_webhook_secret_not_configured")
            raise PaymentSignatureError()
        if not signature_header:
            logger.warning("stripe_webhook_signature_missing")
            raise PaymentSignatureError()
        try:
            stripe.Webhook.construct_event(
                payload=raw_payload,
                sig_header=signature_header,
                secret=secret,
                tolerance=self._settings.stripe_webhook_tolerance_s,
            )
        except (ValueError, stripe.SignatureVerificationError) as exc:
            logger.warning("stripe_webhook_signature_invalid error=%s", exc.__class__.__name__)
            raise PaymentSignatureError() from exc
        try:
            return PaymentEvent.model_validate_json(raw_payload)
        except ValidationError as exc:
            logger.warning("stripe_webhook_payload_invalid errors=%s", exc.error_count())
            raise PaymentSignatureError() from exc

    async def check_and_record_event(self, event_id: str, event_type: str) -> bool:
        """Record the event id; True means it was already seen (duplicate)."""
        async with self._database.session() as session:
            inserted = await insert_or_conflict(
                session,
                StripeWebhookEvent,
                {"event_id": event_id, "event_type": event_type, "received_at": utc_now()},
            )
            await session.commit()
        if not inserted:
            logger.info("stripe_webhook_duplicate event_id=%s event_type=%s", event_id, event_type)
        return not inserted

    async def route_event(self, event: PaymentEvent) -> bool:
        """Apply the event's state transition; False for unrecognized or no-op events."""
        if event.type not in RECOGNIZED_EVENT_TYPES:
            logger.info("stripe_webhook_unhandled event_id=%s event_type=%s", event.id, event.type)
            return False
        obj = event.data.object_
        async with self._database.session() as session:
            if event.type == "checkout.session.completed":
                handled = await handlers.handle_checkout_completed(session, obj)
            elif event.type in ("customer.subscription.created", "customer.subscription.updated"):
                handled = await handlers.handle_subscription_changed(session, obj)
            elif event.type == "customer.subscription.deleted":
                handled = await handlers.handle_subscription_deleted(session, obj)
            elif event.type == "invoice.paid":
                handled = await handlers.handle_invoice_paid(session, obj, event_id=event.id)
            elif event.type == "invoice.payment_failed":
                handled = await handlers.handle_invoice_payment_failed(session, obj)
            else:
                handled = await handlers.handle_payment_intent(session, obj, event_type=event.type)
            await session.commit()
        logger.info("stripe_webhook_routed event_id=%s event_type=%s handled=%s", event.id, event.type, handled)
        return handled
