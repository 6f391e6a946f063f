from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tokenguard.core.config import Settings, get_settings
from tokenguard.domain.models import TokenTransaction, User
from tokenguard.domain.pricing import get_tier, is_known_tier
from tokenguard.domain.state import STATUS_ACTIVE, STATUS_PAST_DUE, TIER_FREE, TX_ROLLOVER
from tokenguard.persistence.repos.users import UserMutation, apply_user_mutation


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RolloverResult:
    user_id: str
    reset: bool
    rollover_tokens: int = 0
    next_reset_date: datetime | None = None
    transaction_id: str | None = None


@dataclass(frozen=True)
class RolloverSweepResult:
    scanned: int
    reset: int
    rollover_tokens: int
    errors: int


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def next_month_start(now: datetime) -> datetime:
    # First instant of the calendar month after ``now``, in UTC.
    now = now.astimezone(timezone.utc)
    if now.month == 12:
        return datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)


def compute_rollover(*, tier_id: str, monthly_used: int) -> int:
    # Carry unused allotment forward up to the tier cap; unlimited allotments carry nothing.
    if not is_known_tier(tier_id):
        return 0
    tier = get_tier(tier_id)
    if tier.unlimited_tokens:
        return 0
    unused = max(0, tier.monthly_tokens - int(monthly_used))
    if tier.unlimited_rollover:
        return unused
    return min(unused, max(0, tier.max_rollover))


def build_rollover_mutation(user: User, *, now: datetime, expiry_days: int) -> UserMutation | None:
    """Build the monthly reset transition for ``user`` or ``None`` when not due.

    The stored reset date is the idempotency key: once it has advanced past
    ``now`` the transition is a no-op until the next boundary.
    """
    if user.monthly_reset_date > now:
        return None
    rollover_tokens = compute_rollover(tier_id=user.tier, monthly_used=user.monthly_tokens_used)
    next_reset = next_month_start(now)
    values = {
        "monthly_tokens_used": 0,
        "monthly_reset_date": next_reset,
        "last_token_update_at": now,
    }
    entries: list[TokenTransaction] = []
    if rollover_tokens > 0:
        balance_before = int(user.token_balance)
        balance_after = balance_before + rollover_tokens
        values["token_balance"] = balance_after
        entries.append(
            TokenTransaction(
                user_id=user.id,
                type=TX_ROLLOVER,
                delta=rollover_tokens,
                balance_before=balance_before,
                balance_after=balance_after,
                description=f"Monthly rollover: {rollover_tokens} tokens",
                expires_at=now + timedelta(days=expiry_days),
                extra={"previous_reset_date": user.monthly_reset_date.isoformat()},
                created_at=now,
            )
        )
    return UserMutation(values=values, entries=entries, result=(rollover_tokens, next_reset))


class RolloverScheduler:
    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._time_provider = time_provider or _utc_now

    async def ensure_current(self, user_id: str) -> RolloverResult:
        # Apply the reset transition if the boundary has passed; safe to call on every request.
        now = self._time_provider()
        expiry_days = self._settings.rollover_expiry_days

        async def _mutate(user: User, session: AsyncSession) -> UserMutation | None:
            return build_rollover_mutation(user, now=now, expiry_days=expiry_days)

        outcome = await apply_user_mutation(
            self._session_factory,
            user_id,
            _mutate,
            max_attempts=self._settings.cas_max_attempts,
        )
        if not outcome.applied:
            return RolloverResult(user_id=user_id, reset=False)
        rollover_tokens, next_reset = outcome.result
        transaction_id = outcome.entries[0].id if outcome.entries else None
        logger.info(
            "monthly_reset user_id=%s rollover_tokens=%s next_reset=%s",
            user_id,
            rollover_tokens,
            next_reset.isoformat(),
        )
        return RolloverResult(
            user_id=user_id,
            reset=True,
            rollover_tokens=rollover_tokens,
            next_reset_date=next_reset,
            transaction_id=transaction_id,
        )

    async def sweep(self) -> RolloverSweepResult:
        # Eagerly reset subscribed users whose boundary has passed; each user is independent.
        now = self._time_provider()
        async with self._session_factory() as session:
            user_ids = (
                await session.execute(
                    select(User.id)
                    .where(
                        User.monthly_reset_date <= now,
                        User.tier != TIER_FREE,
                        User.subscription_status.in_((STATUS_ACTIVE, STATUS_PAST_DUE)),
                    )
                    .order_by(User.monthly_reset_date.asc())
                    .limit(self._settings.sweep_batch_size)
                )
            ).scalars().all()

        reset = 0
        tokens = 0
        errors = 0
        for user_id in user_ids:
            try:
                result = await self.ensure_current(user_id)
            except Exception:  # noqa: BLE001 - keep sweeping other users
                errors += 1
                logger.exception("monthly_reset_failed user_id=%s", user_id)
                continue
            if result.reset:
                reset += 1
                tokens += result.rollover_tokens
        logger.info(
            "monthly_reset_sweep scanned=%s reset=%s rollover_tokens=%s errors=%s",
            len(user_ids),
            reset,
            tokens,
            errors,
        )
        return RolloverSweepResult(scanned=len(user_ids), reset=reset, rollover_tokens=tokens, errors=errors)
