from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Awaitable, Callable, Mapping

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tokenguard.core.config import Settings, get_settings
from tokenguard.core.errors import WebhookPayloadError
from tokenguard.domain.models import Subscription, TokenTransaction, User, WebhookEvent
from tokenguard.domain.pricing import get_package, get_tier, tier_for_price
from tokenguard.domain.state import (
    STATUS_ACTIVE,
    STATUS_CANCELED,
    STATUS_EXPIRED,
    STATUS_PAST_DUE,
    TIER_FREE,
    TX_EXPIRATION,
    TX_PURCHASE,
    WEBHOOK_FAILED,
    WEBHOOK_PROCESSED,
    WEBHOOK_PROCESSING,
)
from tokenguard.persistence.repos.users import UserMutation, apply_user_mutation
from tokenguard.services.audit import record_event
from tokenguard.services.ledger import CreditRequest, TokenLedger
from tokenguard.services.notifications import (
    EVENT_WEBHOOK_FAILED,
    LoggingNotificationSink,
    NotificationSink,
    notify_safely,
)
from tokenguard.services.payment_provider import (
    PaymentProvider,
    ProviderSubscription,
    subscription_from_payload,
)


logger = logging.getLogger(__name__)

RESULT_PROCESSED = "processed"
RESULT_DUPLICATE = "duplicate"
RESULT_IGNORED = "ignored"
RESULT_FAILED = "failed"
RESULT_IN_PROGRESS = "in_progress"

AUDIT_WEBHOOK_FAILED = "webhook.failed"
AUDIT_SUBSCRIPTION_CHANGED = "subscription.changed"
AUDIT_SUBSCRIPTION_DOWNGRADED = "subscription.downgraded"

PURCHASE_METADATA_TYPE = "token_purchase"

# Provider subscription statuses folded onto the account states we track.
_SUBSCRIPTION_STATUS_MAP: Mapping[str, str] = {
    "active": STATUS_ACTIVE,
    "trialing": STATUS_ACTIVE,
    "past_due": STATUS_PAST_DUE,
    "unpaid": STATUS_PAST_DUE,
    "incomplete": STATUS_PAST_DUE,
    "canceled": STATUS_CANCELED,
    "incomplete_expired": STATUS_EXPIRED,
}

_CLAIMED = "claimed"
_MAX_ERROR_LENGTH = 1000


@dataclass(frozen=True)
class WebhookOutcome:
    event_id: str
    event_type: str
    status: str
    # True when the provider should redeliver the event.
    retryable: bool = False
    detail: str | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _event_time(event: Mapping[str, Any], fallback: datetime) -> datetime:
    created = event.get("created")
    if created in (None, ""):
        return fallback
    return datetime.fromtimestamp(int(created), tz=timezone.utc)


def _event_object(event: Mapping[str, Any]) -> dict[str, Any]:
    data = event.get("data") or {}
    obj = data.get("object")
    if not isinstance(obj, dict):
        raise WebhookPayloadError("Webhook event is missing data.object")
    return obj


def map_subscription_status(provider_status: str | None) -> str:
    return _SUBSCRIPTION_STATUS_MAP.get(provider_status or "", STATUS_PAST_DUE)


def _is_stale(record: Subscription | None, event_time: datetime) -> bool:
    # Out-of-order delivery: an event older than the last applied one changes nothing.
    return record is not None and record.last_event_at is not None and record.last_event_at > event_time


class WebhookReconciler:
    """Apply payment-provider events to users, subscriptions and the ledger.

    Each event id is claimed once in ``webhook_events`` before any handler
    runs. Processed events are acknowledged as duplicates; failed events and
    processing claims older than the lease may be claimed again by a
    redelivery. Every user-facing change goes through the per-user
    compare-and-set so it serializes with debits.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: TokenLedger,
        provider: PaymentProvider | None = None,
        settings: Settings | None = None,
        notifier: NotificationSink | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._ledger = ledger
        self._provider = provider
        self._settings = settings or get_settings()
        self._notifier = notifier or LoggingNotificationSink()
        self._time_provider = time_provider or _utc_now
        self._handlers: dict[str, Callable[[dict[str, Any], datetime], Awaitable[str]]] = {
            "customer.subscription.created": self._on_subscription_changed,
            "customer.subscription.updated": self._on_subscription_changed,
            "customer.subscription.deleted": self._on_subscription_deleted,
            "payment_intent.succeeded": self._on_payment_intent_succeeded,
            "checkout.session.completed": self._on_checkout_completed,
            "invoice.payment_failed": self._on_invoice_payment_failed,
            "invoice.payment_succeeded": self._on_invoice_payment_succeeded,
        }

    async def handle(self, event: Mapping[str, Any]) -> WebhookOutcome:
        event_id = event.get("id")
        event_type = event.get("type")
        if not event_id or not event_type:
            raise WebhookPayloadError("Webhook event requires an id and a type")
        event_id = str(event_id)
        event_type = str(event_type)
        now = self._time_provider()

        claim = await self._claim(event_id, event_type, now)
        if claim == RESULT_DUPLICATE:
            logger.info("webhook_duplicate event_id=%s type=%s", event_id, event_type)
            return WebhookOutcome(event_id=event_id, event_type=event_type, status=RESULT_DUPLICATE)
        if claim == RESULT_IN_PROGRESS:
            logger.info("webhook_in_progress event_id=%s type=%s", event_id, event_type)
            return WebhookOutcome(
                event_id=event_id, event_type=event_type, status=RESULT_IN_PROGRESS, retryable=True
            )

        handler = self._handlers.get(event_type)
        try:
            if handler is None:
                logger.info("webhook_unhandled event_id=%s type=%s", event_id, event_type)
                status = RESULT_IGNORED
            else:
                status = await handler(_event_object(event), _event_time(event, now))
        except Exception as exc:  # noqa: BLE001 - recorded as failed so the provider redelivers
            logger.exception("webhook_failed event_id=%s type=%s", event_id, event_type)
            await self._mark_failed(event_id, event_type, exc, now)
            return WebhookOutcome(
                event_id=event_id,
                event_type=event_type,
                status=RESULT_FAILED,
                retryable=True,
                detail=f"{type(exc).__name__}: {exc}",
            )

        await self._mark_processed(event_id, now)
        logger.info("webhook_processed event_id=%s type=%s status=%s", event_id, event_type, status)
        return WebhookOutcome(event_id=event_id, event_type=event_type, status=status)

    async def _claim(self, event_id: str, event_type: str, now: datetime) -> str:
        async with self._session_factory() as session:
            session.add(
                WebhookEvent(
                    id=event_id,
                    type=event_type,
                    status=WEBHOOK_PROCESSING,
                    locked_at=now,
                    received_at=now,
                )
            )
            try:
                await session.commit()
                return _CLAIMED
            except IntegrityError:
                await session.rollback()

        lease_cutoff = now - timedelta(seconds=self._settings.webhook_lease_seconds)
        async with self._session_factory() as session:
            record = await session.get(WebhookEvent, event_id)
            if record is None:
                # Collected between the insert attempt and this read; let the provider retry.
                return RESULT_IN_PROGRESS
            if record.status == WEBHOOK_PROCESSED:
                return RESULT_DUPLICATE
            # Conditional flip so only one redelivery wins a failed or stale claim.
            result = await session.execute(
                update(WebhookEvent)
                .where(
                    WebhookEvent.id == event_id,
                    or_(
                        WebhookEvent.status == WEBHOOK_FAILED,
                        and_(
                            WebhookEvent.status == WEBHOOK_PROCESSING,
                            or_(WebhookEvent.locked_at.is_(None), WebhookEvent.locked_at <= lease_cutoff),
                        ),
                    ),
                )
                .values(status=WEBHOOK_PROCESSING, locked_at=now, error_message=None)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if (result.rowcount or 0) == 1:
            logger.info("webhook_reclaimed event_id=%s previous_status=%s", event_id, record.status)
            return _CLAIMED
        return RESULT_IN_PROGRESS

    async def _mark_processed(self, event_id: str, now: datetime) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(WebhookEvent)
                .where(WebhookEvent.id == event_id)
                .values(status=WEBHOOK_PROCESSED, processed=True, processed_at=now, locked_at=None)
            )
            await session.commit()

    async def _mark_failed(self, event_id: str, event_type: str, exc: Exception, now: datetime) -> None:
        message = f"{type(exc).__name__}: {exc}"[:_MAX_ERROR_LENGTH]
        try:
            async with self._session_factory() as session:
                await session.execute(
                    update(WebhookEvent)
                    .where(WebhookEvent.id == event_id)
                    .values(
                        status=WEBHOOK_FAILED,
                        error_message=message,
                        retry_count=WebhookEvent.retry_count + 1,
                        locked_at=None,
                    )
                )
                await session.commit()
        except SQLAlchemyError:
            # The processing claim stays in place and is reclaimed after the lease.
            logger.exception("webhook_mark_failed_error event_id=%s", event_id)
        await record_event(
            session_factory=self._session_factory,
            occurred_at=now,
            user_id=None,
            event_type=AUDIT_WEBHOOK_FAILED,
            outcome="failed",
            metadata={"event_id": event_id, "type": event_type},
            error_code=type(exc).__name__,
        )
        await notify_safely(
            self._notifier,
            EVENT_WEBHOOK_FAILED,
            {"event_id": event_id, "type": event_type, "error": message},
        )

    async def garbage_collect(self, retention_days: int | None = None) -> int:
        # Drop settled records past the redelivery window; live claims are kept.
        days = self._settings.webhook_retention_days if retention_days is None else retention_days
        cutoff = self._time_provider() - timedelta(days=days)
        async with self._session_factory() as session:
            result = await session.execute(
                delete(WebhookEvent).where(
                    WebhookEvent.received_at < cutoff,
                    WebhookEvent.status != WEBHOOK_PROCESSING,
                )
            )
            await session.commit()
        deleted = int(result.rowcount or 0)
        logger.info("webhook_gc deleted=%s cutoff=%s", deleted, cutoff.isoformat())
        return deleted

    async def _resolve_user_id(
        self,
        *,
        user_id: str | None,
        customer_id: str | None,
        subscription_id: str | None = None,
    ) -> str | None:
        async with self._session_factory() as session:
            if user_id:
                found = (
                    await session.execute(select(User.id).where(User.id == user_id))
                ).scalar_one_or_none()
                if found is not None:
                    return found
            if subscription_id:
                found = (
                    await session.execute(
                        select(Subscription.user_id).where(Subscription.id == subscription_id)
                    )
                ).scalar_one_or_none()
                if found is not None:
                    return found
            if customer_id:
                return (
                    await session.execute(
                        select(User.id).where(User.stripe_customer_id == customer_id).limit(1)
                    )
                ).scalar_one_or_none()
        return None

    async def _resolve_tier(self, subscription: ProviderSubscription) -> tuple[str | None, ProviderSubscription]:
        tier_id = tier_for_price(subscription.price_id)
        if tier_id is not None or self._provider is None:
            return tier_id, subscription
        # Unknown price in the payload; ask the provider for the current item.
        remote = await self._provider.retrieve_subscription(subscription.id)
        if remote is None:
            return None, subscription
        return tier_for_price(remote.price_id), remote

    async def _on_subscription_changed(self, obj: dict[str, Any], event_time: datetime) -> str:
        subscription = subscription_from_payload(obj)
        status = map_subscription_status(subscription.status)
        if status in (STATUS_CANCELED, STATUS_EXPIRED):
            return await self._downgrade(subscription, status=status, event_time=event_time)

        tier_id, subscription = await self._resolve_tier(subscription)
        if tier_id is None:
            logger.warning(
                "webhook_unknown_price subscription_id=%s price_id=%s", subscription.id, subscription.price_id
            )
            return RESULT_IGNORED
        user_id = await self._resolve_user_id(
            user_id=subscription.metadata.get("user_id"),
            customer_id=subscription.customer_id,
            subscription_id=subscription.id,
        )
        if user_id is None:
            raise WebhookPayloadError(f"No user for subscription {subscription.id}")

        async def _mutate(user: User, session: AsyncSession) -> UserMutation | None:
            record = await session.get(Subscription, subscription.id, populate_existing=True)
            if _is_stale(record, event_time):
                return None
            rows: list[Any] = []
            if record is None:
                record = Subscription(id=subscription.id, user_id=user.id)
                rows.append(record)
            record.tier = tier_id
            record.status = status
            record.price_id = subscription.price_id
            record.current_period_end = subscription.current_period_end
            record.cancel_at_period_end = subscription.cancel_at_period_end
            record.last_event_at = event_time
            return UserMutation(
                values={
                    "tier": tier_id,
                    "subscription_status": status,
                    "stripe_customer_id": subscription.customer_id or user.stripe_customer_id,
                },
                rows=rows,
                result=user.tier,
            )

        outcome = await apply_user_mutation(
            self._session_factory, user_id, _mutate, max_attempts=self._settings.cas_max_attempts
        )
        if not outcome.applied:
            logger.info("webhook_subscription_stale subscription_id=%s user_id=%s", subscription.id, user_id)
            return RESULT_IGNORED
        previous_tier = outcome.result
        if previous_tier != tier_id:
            await record_event(
                session_factory=self._session_factory,
                occurred_at=event_time,
                user_id=user_id,
                event_type=AUDIT_SUBSCRIPTION_CHANGED,
                outcome=status,
                metadata={"subscription_id": subscription.id, "from_tier": previous_tier, "to_tier": tier_id},
            )
        logger.info(
            "subscription_applied user_id=%s subscription_id=%s tier=%s status=%s",
            user_id,
            subscription.id,
            tier_id,
            status,
        )
        return RESULT_PROCESSED

    async def _on_subscription_deleted(self, obj: dict[str, Any], event_time: datetime) -> str:
        subscription = subscription_from_payload(obj)
        return await self._downgrade(subscription, status=STATUS_CANCELED, event_time=event_time)

    async def _downgrade(self, subscription: ProviderSubscription, *, status: str, event_time: datetime) -> str:
        """Move the owner to the free tier and cap the balance at its allotment.

        Tokens above the cap are removed with an ``expiration`` entry in the
        same transaction that changes the tier and the subscription row.
        """
        user_id = await self._resolve_user_id(
            user_id=subscription.metadata.get("user_id"),
            customer_id=subscription.customer_id,
            subscription_id=subscription.id,
        )
        if user_id is None:
            raise WebhookPayloadError(f"No user for subscription {subscription.id}")
        cap = get_tier(TIER_FREE).monthly_tokens
        now = self._time_provider()

        async def _mutate(user: User, session: AsyncSession) -> UserMutation | None:
            record = await session.get(Subscription, subscription.id, populate_existing=True)
            if _is_stale(record, event_time):
                return None
            rows: list[Any] = []
            if record is None:
                record = Subscription(id=subscription.id, user_id=user.id, tier=user.tier)
                rows.append(record)
            record.status = STATUS_CANCELED
            record.cancel_at_period_end = False
            record.last_event_at = event_time
            values: dict[str, Any] = {
                "tier": TIER_FREE,
                "subscription_status": status,
                "last_token_update_at": now,
            }
            entries: list[TokenTransaction] = []
            balance_before = int(user.token_balance)
            removed = max(0, balance_before - cap)
            if removed:
                values["token_balance"] = cap
                entries.append(
                    TokenTransaction(
                        user_id=user.id,
                        type=TX_EXPIRATION,
                        delta=-removed,
                        balance_before=balance_before,
                        balance_after=cap,
                        description=f"Balance capped at {cap} tokens on downgrade to free",
                        extra={"reason": "downgrade", "subscription_id": subscription.id},
                        created_at=now,
                    )
                )
            return UserMutation(values=values, entries=entries, rows=rows, result=(user.tier, removed))

        outcome = await apply_user_mutation(
            self._session_factory, user_id, _mutate, max_attempts=self._settings.cas_max_attempts
        )
        if not outcome.applied:
            logger.info("webhook_subscription_stale subscription_id=%s user_id=%s", subscription.id, user_id)
            return RESULT_IGNORED
        previous_tier, removed = outcome.result
        await record_event(
            session_factory=self._session_factory,
            occurred_at=event_time,
            user_id=user_id,
            event_type=AUDIT_SUBSCRIPTION_DOWNGRADED,
            outcome=status,
            metadata={
                "subscription_id": subscription.id,
                "from_tier": previous_tier,
                "tokens_removed": removed,
            },
        )
        logger.info(
            "subscription_downgraded user_id=%s subscription_id=%s tokens_removed=%s",
            user_id,
            subscription.id,
            removed,
        )
        return RESULT_PROCESSED

    async def _credit_purchase(
        self,
        *,
        reference: str,
        metadata: Mapping[str, Any],
        customer_id: str | None,
        amount_cents: int | None,
    ) -> str:
        package_id = metadata.get("package_id")
        if not package_id:
            raise WebhookPayloadError(f"Token purchase {reference} has no package_id")
        package = get_package(str(package_id))
        user_id = await self._resolve_user_id(user_id=metadata.get("user_id"), customer_id=customer_id)
        if user_id is None:
            raise WebhookPayloadError(f"No user for token purchase {reference}")
        result = await self._ledger.credit(
            user_id,
            CreditRequest(
                type=TX_PURCHASE,
                tokens=package.tokens,
                cost_cents=amount_cents if amount_cents is not None else package.price_cents,
                package_id=package.id,
                external_reference=reference,
                description=f"Purchased {package.tokens} tokens ({package.id})",
                metadata={"payment_reference": reference},
            ),
        )
        if not result.ok:
            raise WebhookPayloadError(f"Token purchase {reference} was not credited: {result.reason}")
        if result.duplicate:
            logger.info("token_purchase_duplicate reference=%s user_id=%s", reference, user_id)
        return RESULT_PROCESSED

    async def _on_payment_intent_succeeded(self, obj: dict[str, Any], event_time: datetime) -> str:
        metadata = obj.get("metadata") or {}
        if metadata.get("type") != PURCHASE_METADATA_TYPE:
            return RESULT_IGNORED
        reference = obj.get("id")
        if not reference:
            raise WebhookPayloadError("Payment intent is missing an id")
        return await self._credit_purchase(
            reference=str(reference),
            metadata=metadata,
            customer_id=obj.get("customer"),
            amount_cents=obj.get("amount_received", obj.get("amount")),
        )

    async def _on_checkout_completed(self, obj: dict[str, Any], event_time: datetime) -> str:
        metadata = obj.get("metadata") or {}
        if obj.get("mode") != "payment" or metadata.get("type") != PURCHASE_METADATA_TYPE:
            return RESULT_IGNORED
        # Key on the payment intent so a matching payment_intent event dedupes against this one.
        reference = obj.get("payment_intent") or obj.get("id")
        if not reference:
            raise WebhookPayloadError("Checkout session is missing an id")
        return await self._credit_purchase(
            reference=str(reference),
            metadata=metadata,
            customer_id=obj.get("customer"),
            amount_cents=obj.get("amount_total"),
        )

    async def _set_subscription_status(
        self, obj: dict[str, Any], event_time: datetime, *, status: str, only_from: str | None = None
    ) -> str:
        subscription_id = obj.get("subscription")
        user_id = await self._resolve_user_id(
            user_id=(obj.get("metadata") or {}).get("user_id"),
            customer_id=obj.get("customer"),
            subscription_id=subscription_id,
        )
        if user_id is None:
            logger.warning("webhook_invoice_no_user subscription_id=%s", subscription_id)
            return RESULT_IGNORED

        async def _mutate(user: User, session: AsyncSession) -> UserMutation | None:
            record = None
            if subscription_id:
                record = await session.get(Subscription, subscription_id, populate_existing=True)
            if _is_stale(record, event_time):
                return None
            if only_from is not None and user.subscription_status != only_from:
                return None
            if record is not None:
                record.status = status
                record.last_event_at = event_time
            return UserMutation(values={"subscription_status": status})

        outcome = await apply_user_mutation(
            self._session_factory, user_id, _mutate, max_attempts=self._settings.cas_max_attempts
        )
        if not outcome.applied:
            return RESULT_IGNORED
        logger.info(
            "subscription_status_changed user_id=%s subscription_id=%s status=%s",
            user_id,
            subscription_id,
            status,
        )
        return RESULT_PROCESSED

    async def _on_invoice_payment_failed(self, obj: dict[str, Any], event_time: datetime) -> str:
        # Past due keeps access; the account is not suspended for a failed charge.
        return await self._set_subscription_status(obj, event_time, status=STATUS_PAST_DUE)

    async def _on_invoice_payment_succeeded(self, obj: dict[str, Any], event_time: datetime) -> str:
        return await self._set_subscription_status(
            obj, event_time, status=STATUS_ACTIVE, only_from=STATUS_PAST_DUE
        )
