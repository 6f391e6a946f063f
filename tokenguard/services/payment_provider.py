from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any, Mapping, Protocol

import stripe

from tokenguard.core.config import Settings, get_settings
from tokenguard.core.errors import PaymentProviderError, WebhookPayloadError, WebhookSignatureError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderSubscription:
    id: str
    customer_id: str | None
    status: str
    price_id: str | None
    current_period_end: datetime | None
    cancel_at_period_end: bool
    metadata: dict[str, str]


class PaymentProvider(Protocol):
    async def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription | None: ...


def _timestamp(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def subscription_price_id(payload: Mapping[str, Any]) -> str | None:
    # First subscription item price; falls back to the legacy top-level plan.
    items = ((payload.get("items") or {}).get("data")) or []
    for item in items:
        price = item.get("price") or {}
        if price.get("id"):
            return str(price["id"])
    plan = payload.get("plan") or {}
    if plan.get("id"):
        return str(plan["id"])
    return None


def subscription_from_payload(payload: Mapping[str, Any]) -> ProviderSubscription:
    subscription_id = payload.get("id")
    if not subscription_id:
        raise WebhookPayloadError("Subscription payload is missing an id")
    period_end = payload.get("current_period_end")
    if period_end is None:
        # Newer API versions carry the period on the subscription item.
        items = ((payload.get("items") or {}).get("data")) or []
        if items:
            period_end = items[0].get("current_period_end")
    metadata = payload.get("metadata") or {}
    return ProviderSubscription(
        id=str(subscription_id),
        customer_id=payload.get("customer"),
        status=str(payload.get("status") or ""),
        price_id=subscription_price_id(payload),
        current_period_end=_timestamp(period_end),
        cancel_at_period_end=bool(payload.get("cancel_at_period_end")),
        metadata={str(k): str(v) for k, v in metadata.items() if v is not None},
    )


class StripePaymentProvider:
    def __init__(self, *, settings: Settings | None = None, client: Any | None = None) -> None:
        self._settings = settings or get_settings()
        self._client = client or stripe
        if self._settings.stripe_api_key and client is None:
            stripe.api_key = self._settings.stripe_api_key

    async def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription | None:
        # The Stripe SDK is synchronous; keep it off the event loop.
        if not self._settings.stripe_api_key:
            logger.warning("stripe_lookup_skipped subscription_id=%s reason=no_api_key", subscription_id)
            return None
        try:
            payload = await asyncio.to_thread(self._client.Subscription.retrieve, subscription_id)
        except stripe.StripeError as exc:
            raise PaymentProviderError(f"Subscription lookup failed for {subscription_id}") from exc
        return subscription_from_payload(payload)


def verify_stripe_event(payload: bytes, signature: str | None, *, secret: str | None) -> dict[str, Any]:
    """Verify a Stripe webhook signature and return the event as a dict."""
    if not secret:
        raise WebhookSignatureError("Webhook secret is not configured")
    if not signature:
        raise WebhookSignatureError("Missing Stripe-Signature header")
    try:
        stripe.Webhook.construct_event(payload=payload, sig_header=signature, secret=secret)
    except stripe.SignatureVerificationError as exc:
        raise WebhookSignatureError("Invalid webhook signature") from exc
    except ValueError as exc:
        raise WebhookPayloadError("Webhook payload is not valid JSON") from exc
    # Hand handlers plain JSON rather than SDK objects.
    return json.loads(payload)
