from __future__ import annotations


class TokenGuardError(Exception):
    """Base error for tokenguard."""


class DatabaseError(TokenGuardError):
    """Database layer failure."""


class ConcurrencyConflict(DatabaseError):
    """Per-user compare-and-set retries were exhausted."""


class InvalidTierError(TokenGuardError):
    """Unknown subscription tier identifier."""


class UnknownPackageError(TokenGuardError):
    """Unknown token package identifier."""


class SafetyCheckFailed(TokenGuardError):
    """Cost-protection evaluation failed; callers fail open."""


class WebhookSignatureError(TokenGuardError):
    """Webhook payload signature could not be verified."""


class WebhookPayloadError(TokenGuardError):
    """Webhook payload is missing required fields."""


class PaymentProviderError(TokenGuardError):
    """Payment provider lookup failure."""
