from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from tokenguard.persistence.types import JSONType, UTCDateTime


def _new_id() -> str:
    return uuid4().hex


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        Index("ix_users_tier_active", "tier", "is_active"),
        Index("ix_users_monthly_reset_date", "monthly_reset_date"),
        CheckConstraint("token_balance >= 0", name="ck_users_token_balance_non_negative"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    # Tier ids map to the static pricing catalog; never persisted as limits.
    tier: Mapped[str] = mapped_column(String, default="free", nullable=False)
    subscription_status: Mapped[str] = mapped_column(String, default="none", nullable=False)
    stripe_customer_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    # Balance equals the sum of all ledger deltas for this user; never negative.
    token_balance: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    lifetime_tokens_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    lifetime_tokens_purchased: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Monthly usage resets at monthly_reset_date, always the first of a month in UTC.
    monthly_tokens_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    monthly_reset_date: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    # Suspended users keep their balance but cannot consume.
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    suspension_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    suspended_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_purchase_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_token_update_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    # Bumped on every balance/state write; guards the per-user compare-and-set.
    balance_version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), onupdate=func.now()
    )


class TokenTransaction(Base):
    __tablename__ = "token_transactions"
    __table_args__ = (
        Index("ix_token_transactions_user_created", "user_id", "created_at"),
        Index("ix_token_transactions_expiry_scan", "is_expired", "expires_at"),
        CheckConstraint("balance_after = balance_before + delta", name="ck_token_transactions_delta"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    type: Mapped[str] = mapped_column(String, nullable=False)
    # Signed token delta; balance_after = balance_before + delta.
    delta: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_before: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    # Money is always integer minor units.
    cost_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    package_id: Mapped[str | None] = mapped_column(String, nullable=True)
    model: Mapped[str | None] = mapped_column(String, nullable=True)
    complexity: Mapped[str | None] = mapped_column(String, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Unique provider reference makes webhook-driven credits idempotent.
    external_reference: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    # Only mutable column: false -> true once the lot has been expired.
    is_expired: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    extra: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now())


class Subscription(Base):
    __tablename__ = "subscriptions"

    # Provider subscription id.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    tier: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False)
    price_id: Mapped[str | None] = mapped_column(String, nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Provider event timestamp of the last applied change; older events are ignored.
    last_event_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), onupdate=func.now()
    )


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    # Provider event id; the primary key enforces at-most-once application.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    type: Mapped[str] = mapped_column(String, index=True)
    status: Mapped[str] = mapped_column(String, default="processing", nullable=False)
    processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Claim lease start; a stale processing claim may be reclaimed by redelivery.
    locked_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    received_at: Mapped[datetime] = mapped_column(UTCDateTime(), index=True)


class AuditEvent(Base):
    __tablename__ = "audit_events"
    __table_args__ = (
        Index("ix_audit_events_user_type_occurred", "user_id", "event_type", "occurred_at"),
    )

    # Monotonic numeric id for efficient pagination and ordering.
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime(), index=True)
    # Null for system-wide events such as audit reports.
    user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Metadata is sanitized before write.
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now())
