from __future__ import annotations

from datetime import datetime, timedelta
import hashlib
import hmac
import json
import time
from typing import Any
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tokenguard.domain.models import TokenTransaction, User
from tokenguard.services.payment_provider import ProviderSubscription
from tokenguard.services.rollover import next_month_start


WEBHOOK_SECRET = "whsec_test_secret"


class FixedClock:
    # Deterministic time source shared by services and counter stores.
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def timestamp(self) -> float:
        return self.now.timestamp()

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now


class FakePaymentProvider:
    def __init__(self) -> None:
        self.subscriptions: dict[str, ProviderSubscription] = {}
        self.calls: list[str] = []

    async def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription | None:
        self.calls.append(subscription_id)
        return self.subscriptions.get(subscription_id)


async def create_user(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    now: datetime,
    user_id: str | None = None,
    tier: str = "free",
    balance: int = 0,
    monthly_used: int = 0,
    is_active: bool = True,
    subscription_status: str | None = None,
    stripe_customer_id: str | None = None,
    reset_date: datetime | None = None,
) -> str:
    """Seed a user whose balance is backed by a matching opening ledger entry."""
    user_id = user_id or f"u-{uuid4().hex[:12]}"
    async with session_factory() as session:
        session.add(
            User(
                id=user_id,
                email=f"{user_id}@example.com",
                tier=tier,
                subscription_status=subscription_status or ("none" if tier == "free" else "active"),
                stripe_customer_id=stripe_customer_id,
                token_balance=balance,
                monthly_tokens_used=monthly_used,
                monthly_reset_date=reset_date or next_month_start(now),
                is_active=is_active,
            )
        )
        await session.flush()
        if balance:
            session.add(
                TokenTransaction(
                    user_id=user_id,
                    type="bonus",
                    delta=balance,
                    balance_before=0,
                    balance_after=balance,
                    description="opening balance",
                    created_at=now,
                )
            )
        await session.commit()
    return user_id


async def get_user(session_factory: async_sessionmaker[AsyncSession], user_id: str) -> User:
    async with session_factory() as session:
        return (await session.execute(select(User).where(User.id == user_id))).scalar_one()


async def list_transactions(
    session_factory: async_sessionmaker[AsyncSession], user_id: str
) -> list[TokenTransaction]:
    async with session_factory() as session:
        rows = await session.execute(
            select(TokenTransaction)
            .where(TokenTransaction.user_id == user_id)
            .order_by(TokenTransaction.created_at.asc(), TokenTransaction.balance_after.asc())
        )
        return list(rows.scalars().all())


def stripe_event(event_type: str, obj: dict[str, Any], *, event_id: str | None = None, created: datetime | None = None) -> dict[str, Any]:
    event: dict[str, Any] = {
        "id": event_id or f"evt_{uuid4().hex[:16]}",
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }
    if created is not None:
        event["created"] = int(created.timestamp())
    return event


def subscription_object(
    *,
    subscription_id: str,
    customer: str,
    price_id: str,
    status: str = "active",
    user_id: str | None = None,
) -> dict[str, Any]:
    return {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "cancel_at_period_end": False,
        "current_period_end": 1_780_000_000,
        "items": {"data": [{"price": {"id": price_id}}]},
        "metadata": {"user_id": user_id} if user_id else {},
    }


def stripe_signature_header(payload: bytes, secret: str, *, timestamp: int | None = None) -> str:
    # Same scheme Stripe uses: HMAC-SHA256 over "<timestamp>.<payload>".
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.".encode("utf-8") + payload
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def encode_event(event: dict[str, Any]) -> bytes:
    return json.dumps(event).encode("utf-8")
