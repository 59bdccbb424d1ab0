from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel

from meterbill.apps.api.deps import get_app_settings, get_database
from meterbill.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from meterbill.apps.api.response import SuccessEnvelope, get_request_id, success_response
from meterbill.core.config import Settings
from meterbill.persistence.db import Database
from meterbill.services.payments.webhooks import PaymentEventReconciler


logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"], responses=DEFAULT_ERROR_RESPONSES)


class WebhookAck(BaseModel):
    received: bool
    duplicate: bool = False


@router.post("/stripe/webhook", response_model=SuccessEnvelope[WebhookAck])
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
    database: Database = Depends(get_database),
    settings: Settings = Depends(get_app_settings),
) -> dict:
    # Signature is checked over the exact received bytes before any parsing.
    raw_payload = await request.body()
    reconciler = PaymentEventReconciler(database, settings=settings)
    event = reconciler.verify_signature(raw_payload, stripe_signature)
    request_id = get_request_id(request)
    if await reconciler.check_and_record_event(event.id, event.type):
        return success_response(request=request, data=WebhookAck(received=True, duplicate=True).model_dump())
    handled = await reconciler.route_event(event)
    logger.info(
        "stripe_webhook_processed event_id=%s event_type=%s handled=%s request_id=%s",
        event.id,
        event.type,
        handled,
        request_id,
    )
    return success_response(request=request, data=WebhookAck(received=True).model_dump())
