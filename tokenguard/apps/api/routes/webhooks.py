from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Header, Request, status
from pydantic import BaseModel

from tokenguard.apps.api.deps import get_services
from tokenguard.apps.api.errors import http_error
from tokenguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tokenguard.apps.api.response import SuccessEnvelope, success_response
from tokenguard.services.container import Services
from tokenguard.services.payment_provider import verify_stripe_event
from tokenguard.services.webhooks import RESULT_FAILED, RESULT_IN_PROGRESS


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"], responses=DEFAULT_ERROR_RESPONSES)


class WebhookAck(BaseModel):
    received: bool
    event_id: str
    status: str


@router.post("/stripe", response_model=SuccessEnvelope[WebhookAck])
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
    services: Services = Depends(get_services),
) -> dict:
    """Receive a Stripe event.

    Duplicates and ignored types are acknowledged with 200. Failures and
    events still being processed by another delivery answer with a non-2xx
    status so Stripe retries them.
    """
    body = await request.body()
    event = verify_stripe_event(body, stripe_signature, secret=services.settings.stripe_webhook_secret)
    outcome = await services.webhooks.handle(event)
    if outcome.status == RESULT_FAILED:
        raise http_error(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "WEBHOOK_PROCESSING_FAILED",
            "Webhook processing failed",
            event_id=outcome.event_id,
        )
    if outcome.status == RESULT_IN_PROGRESS:
        raise http_error(
            status.HTTP_409_CONFLICT,
            "WEBHOOK_IN_PROGRESS",
            "Event is being processed by another delivery",
            event_id=outcome.event_id,
        )
    payload = WebhookAck(received=True, event_id=outcome.event_id, status=outcome.status)
    return success_response(request=request, data=payload)
