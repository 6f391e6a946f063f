from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tokenguard.domain.models import AuditEvent
from tokenguard.persistence.db import get_session_factory


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "secret", "password", "signature", "card"]
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


async def record_event(
    *,
    session: AsyncSession | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    occurred_at: datetime | None = None,
    user_id: str | None,
    actor_type: str = "system",
    actor_id: str | None = None,
    event_type: str,
    outcome: str,
    request_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    commit: bool | None = None,
    best_effort: bool = True,
) -> None:
    # Write audit rows in a best-effort manner to avoid breaking ledger flows.
    sanitized_metadata = sanitize_metadata(metadata or {})
    event = AuditEvent(
        occurred_at=occurred_at or datetime.now(timezone.utc),
        user_id=user_id,
        actor_type=actor_type,
        actor_id=actor_id,
        event_type=event_type,
        outcome=outcome,
        request_id=request_id,
        metadata_json=sanitized_metadata,
        error_code=error_code,
    )

    if session is None:
        factory = session_factory or get_session_factory()
        async with factory() as audit_session:
            try:
                audit_session.add(event)
                await audit_session.commit()
            except SQLAlchemyError as exc:
                await audit_session.rollback()
                level = logger.warning if best_effort else logger.error
                level(
                    "audit_event_write_failed event_type=%s user_id=%s",
                    event_type,
                    user_id,
                    exc_info=exc,
                )
                if not best_effort:
                    raise
        return

    resolved_commit = commit if commit is not None else False
    try:
        session.add(event)
        if resolved_commit:
            await session.commit()
    except SQLAlchemyError as exc:
        if resolved_commit:
            await session.rollback()
        level = logger.warning if best_effort else logger.error
        level(
            "audit_event_write_failed event_type=%s user_id=%s",
            event_type,
            user_id,
            exc_info=exc,
        )
        if not best_effort:
            raise


async def latest_event_at(
    session: AsyncSession,
    *,
    user_id: str,
    event_type: str,
    outcome: str | None = None,
) -> datetime | None:
    # Look up the most recent occurrence of an event for dedupe windows.
    stmt = select(AuditEvent.occurred_at).where(
        AuditEvent.user_id == user_id,
        AuditEvent.event_type == event_type,
    )
    if outcome is not None:
        stmt = stmt.where(AuditEvent.outcome == outcome)
    stmt = stmt.order_by(AuditEvent.occurred_at.desc()).limit(1)
    return (await session.execute(stmt)).scalar_one_or_none()
