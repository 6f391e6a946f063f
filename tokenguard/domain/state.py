from __future__ import annotations

from typing import Literal


TierId = Literal["free", "starter", "pro", "team", "business", "enterprise"]

TIER_FREE = "free"
TIER_STARTER = "starter"
TIER_PRO = "pro"
TIER_TEAM = "team"
TIER_BUSINESS = "business"
TIER_ENTERPRISE = "enterprise"

SubscriptionStatus = Literal["active", "past_due", "canceled", "expired", "none"]

STATUS_ACTIVE = "active"
STATUS_PAST_DUE = "past_due"
STATUS_CANCELED = "canceled"
STATUS_EXPIRED = "expired"
STATUS_NONE = "none"

TransactionType = Literal["usage", "purchase", "bonus", "rollover", "refund", "expiration"]

TX_USAGE = "usage"
TX_PURCHASE = "purchase"
TX_BONUS = "bonus"
TX_ROLLOVER = "rollover"
TX_REFUND = "refund"
TX_EXPIRATION = "expiration"

# Transaction types that add tokens through credit().
CREDIT_TYPES = frozenset({TX_PURCHASE, TX_BONUS, TX_ROLLOVER, TX_REFUND})

Complexity = Literal["simple", "standard", "complex", "custom"]

WebhookStatus = Literal["processing", "processed", "failed"]

WEBHOOK_PROCESSING = "processing"
WEBHOOK_PROCESSED = "processed"
WEBHOOK_FAILED = "failed"

# Typed decline reasons surfaced to callers as values, not exceptions.
DeclineReason = Literal[
    "INSUFFICIENT_TOKENS",
    "MONTHLY_LIMIT_EXCEEDED",
    "ACCOUNT_SUSPENDED",
    "USER_NOT_FOUND",
    "INVALID_TIER",
    "RATE_LIMITED",
    "COST_LIMIT_EXCEEDED",
]

INSUFFICIENT_TOKENS = "INSUFFICIENT_TOKENS"
MONTHLY_LIMIT_EXCEEDED = "MONTHLY_LIMIT_EXCEEDED"
ACCOUNT_SUSPENDED = "ACCOUNT_SUSPENDED"
USER_NOT_FOUND = "USER_NOT_FOUND"
INVALID_TIER = "INVALID_TIER"
RATE_LIMITED = "RATE_LIMITED"
COST_LIMIT_EXCEEDED = "COST_LIMIT_EXCEEDED"

CostStatus = Literal["healthy", "warning", "critical"]

COST_HEALTHY = "healthy"
COST_WARNING = "warning"
COST_CRITICAL = "critical"
