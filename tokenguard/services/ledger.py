from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
from typing import TYPE_CHECKING, Any, Callable

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tokenguard.core.config import Settings, get_settings
from tokenguard.domain.models import TokenTransaction, User
from tokenguard.domain.pricing import get_tier, is_known_tier, tokens_for_complexity
from tokenguard.domain.state import (
    ACCOUNT_SUSPENDED,
    CREDIT_TYPES,
    INSUFFICIENT_TOKENS,
    INVALID_TIER,
    MONTHLY_LIMIT_EXCEEDED,
    TX_EXPIRATION,
    TX_PURCHASE,
    TX_USAGE,
    USER_NOT_FOUND,
)
from tokenguard.persistence.repos.users import (
    OUTCOME_NOT_FOUND,
    Decline,
    UserMutation,
    apply_user_mutation,
    load_user,
)
from tokenguard.services.notifications import EVENT_LOW_BALANCE, LoggingNotificationSink, NotificationSink, notify_safely

if TYPE_CHECKING:
    from tokenguard.services.rollover import RolloverScheduler


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Operation:
    # Describe one AI operation; tokens override the complexity mapping when set.
    complexity: str = "standard"
    model: str | None = None
    tokens: int | None = None
    cost_cents: int | None = None
    description: str | None = None
    metadata: dict[str, Any] | None = None

    @property
    def tokens_needed(self) -> int:
        if self.tokens is not None:
            return int(self.tokens)
        return tokens_for_complexity(self.complexity)


@dataclass(frozen=True)
class CreditRequest:
    type: str
    tokens: int
    cost_cents: int | None = None
    package_id: str | None = None
    # Provider transaction id; a second credit with the same reference is a no-op.
    external_reference: str | None = None
    expires_at: datetime | None = None
    description: str | None = None
    metadata: dict[str, Any] | None = None


@dataclass(frozen=True)
class Availability:
    available: bool
    tokens_needed: int
    balance: int
    shortfall: int = 0
    reason: str | None = None
    monthly_limit: int | None = None
    monthly_used: int | None = None
    monthly_remaining: int | None = None
    reset_date: datetime | None = None


@dataclass(frozen=True)
class ConsumeResult:
    ok: bool
    tokens_consumed: int
    new_balance: int | None
    transaction_id: str | None = None
    reason: str | None = None
    shortfall: int = 0


@dataclass(frozen=True)
class CreditResult:
    ok: bool
    new_balance: int | None
    transaction_id: str | None = None
    duplicate: bool = False
    reason: str | None = None


@dataclass(frozen=True)
class ExpireResult:
    expired_count: int
    tokens_removed: int
    # Lots marked expired without a deduction because the balance could not absorb them.
    unabsorbed_count: int = 0
    errors: int = 0


@dataclass(frozen=True)
class TokenLot:
    transaction_id: str
    type: str
    tokens: int
    package_id: str | None
    expires_at: datetime | None
    created_at: datetime


@dataclass(frozen=True)
class BalanceBreakdown:
    user_id: str
    total_balance: int
    tier: str
    monthly_used: int
    monthly_limit: int
    # None when the tier has an unlimited allotment.
    monthly_remaining: int | None
    reset_date: datetime
    active_lots: list[TokenLot] = field(default_factory=list)
    lifetime_used: int = 0
    lifetime_purchased: int = 0
    last_purchase_at: datetime | None = None


@dataclass(frozen=True)
class BalanceAudit:
    user_id: str
    balance: int
    ledger_sum: int

    @property
    def consistent(self) -> bool:
        return self.balance == self.ledger_sum


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def evaluate_availability(user: User | None, tokens_needed: int) -> Availability:
    # Pure availability decision: account state, then balance, then monthly ceiling.
    if user is None:
        return Availability(available=False, tokens_needed=tokens_needed, balance=0, reason=USER_NOT_FOUND)
    balance = int(user.token_balance or 0)
    if not user.is_active:
        return Availability(
            available=False, tokens_needed=tokens_needed, balance=balance, reason=ACCOUNT_SUSPENDED
        )
    if not is_known_tier(user.tier):
        return Availability(available=False, tokens_needed=tokens_needed, balance=balance, reason=INVALID_TIER)
    tier = get_tier(user.tier)
    monthly_used = int(user.monthly_tokens_used or 0)
    monthly_limit = None if tier.unlimited_tokens else tier.monthly_tokens
    monthly_remaining = None if monthly_limit is None else max(monthly_limit - monthly_used, 0)
    if balance < tokens_needed:
        return Availability(
            available=False,
            tokens_needed=tokens_needed,
            balance=balance,
            shortfall=tokens_needed - balance,
            reason=INSUFFICIENT_TOKENS,
            monthly_limit=monthly_limit,
            monthly_used=monthly_used,
            monthly_remaining=monthly_remaining,
            reset_date=user.monthly_reset_date,
        )
    if monthly_remaining is not None and monthly_remaining < tokens_needed:
        return Availability(
            available=False,
            tokens_needed=tokens_needed,
            balance=balance,
            reason=MONTHLY_LIMIT_EXCEEDED,
            monthly_limit=monthly_limit,
            monthly_used=monthly_used,
            monthly_remaining=monthly_remaining,
            reset_date=user.monthly_reset_date,
        )
    return Availability(
        available=True,
        tokens_needed=tokens_needed,
        balance=balance,
        monthly_limit=monthly_limit,
        monthly_used=monthly_used,
        monthly_remaining=monthly_remaining,
        reset_date=user.monthly_reset_date,
    )


class TokenLedger:
    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
        notifier: NotificationSink | None = None,
        rollover: RolloverScheduler | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._notifier = notifier or LoggingNotificationSink()
        # Optional lazy monthly reset applied before every read of monthly usage.
        self._rollover = rollover
        # Allow time injection for deterministic expiry and reset tests.
        self._time_provider = time_provider or _utc_now

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory

    async def _ensure_current(self, user_id: str) -> None:
        if self._rollover is not None:
            await self._rollover.ensure_current(user_id)

    async def check_availability(self, user_id: str, complexity: str = "standard") -> Availability:
        # Availability check that never debits; a due monthly reset is applied first.
        return await self.check_operation(user_id, Operation(complexity=complexity))

    async def check_operation(self, user_id: str, operation: Operation) -> Availability:
        await self._ensure_current(user_id)
        async with self._session_factory() as session:
            user = await load_user(session, user_id)
        return evaluate_availability(user, operation.tokens_needed)

    async def consume(self, user_id: str, operation: Operation) -> ConsumeResult:
        """Debit tokens for one operation.

        The availability decision is re-made inside the per-user
        compare-and-set, so two concurrent debits can never both pass
        against the same stale balance. A decline here is a business
        outcome and must not be retried by callers.
        """
        tokens = operation.tokens_needed
        if tokens <= 0:
            raise ValueError("consume requires a positive token amount")
        await self._ensure_current(user_id)
        now = self._time_provider()

        async def _mutate(user: User, session: AsyncSession) -> UserMutation | Decline:
            availability = evaluate_availability(user, tokens)
            if not availability.available:
                return Decline(
                    reason=availability.reason or INSUFFICIENT_TOKENS,
                    details={"shortfall": availability.shortfall, "balance": availability.balance},
                )
            balance_before = int(user.token_balance)
            balance_after = balance_before - tokens
            entry = TokenTransaction(
                user_id=user.id,
                type=TX_USAGE,
                delta=-tokens,
                balance_before=balance_before,
                balance_after=balance_after,
                cost_cents=operation.cost_cents,
                model=operation.model,
                complexity=operation.complexity,
                description=operation.description or f"{operation.complexity} operation",
                extra=operation.metadata,
                created_at=now,
            )
            return UserMutation(
                values={
                    "token_balance": balance_after,
                    "lifetime_tokens_used": int(user.lifetime_tokens_used) + tokens,
                    "monthly_tokens_used": int(user.monthly_tokens_used) + tokens,
                    "last_token_update_at": now,
                },
                entries=[entry],
                result=(balance_before, balance_after),
            )

        outcome = await apply_user_mutation(
            self._session_factory,
            user_id,
            _mutate,
            max_attempts=self._settings.cas_max_attempts,
        )
        if outcome.status == OUTCOME_NOT_FOUND:
            return ConsumeResult(ok=False, tokens_consumed=0, new_balance=None, reason=USER_NOT_FOUND)
        if outcome.decline is not None:
            logger.info(
                "token_consume_declined user_id=%s reason=%s tokens=%s",
                user_id,
                outcome.decline.reason,
                tokens,
            )
            return ConsumeResult(
                ok=False,
                tokens_consumed=0,
                new_balance=outcome.user.token_balance if outcome.user else None,
                reason=outcome.decline.reason,
                shortfall=int(outcome.decline.details.get("shortfall", 0)),
            )

        balance_before, balance_after = outcome.result
        entry = outcome.entries[0]
        logger.info(
            "token_consumed user_id=%s tokens=%s balance=%s transaction_id=%s",
            user_id,
            tokens,
            balance_after,
            entry.id,
        )
        threshold = self._settings.low_balance_threshold
        if balance_before > threshold >= balance_after:
            await notify_safely(
                self._notifier,
                EVENT_LOW_BALANCE,
                {"user_id": user_id, "balance": balance_after, "threshold": threshold},
            )
        return ConsumeResult(
            ok=True,
            tokens_consumed=tokens,
            new_balance=balance_after,
            transaction_id=entry.id,
        )

    async def credit(self, user_id: str, request: CreditRequest) -> CreditResult:
        # Add tokens; a known external reference makes the credit idempotent.
        if request.type not in CREDIT_TYPES:
            raise ValueError(f"Unsupported credit type: {request.type}")
        if request.tokens <= 0:
            raise ValueError("credit requires a positive token amount")

        if request.external_reference:
            existing = await self._find_by_reference(request.external_reference)
            if existing is not None:
                logger.info(
                    "token_credit_duplicate user_id=%s reference=%s", user_id, request.external_reference
                )
                return CreditResult(
                    ok=True,
                    new_balance=existing.balance_after,
                    transaction_id=existing.id,
                    duplicate=True,
                )

        mutation_factory = self.credit_mutation(request)

        try:
            outcome = await apply_user_mutation(
                self._session_factory,
                user_id,
                mutation_factory,
                max_attempts=self._settings.cas_max_attempts,
            )
        except IntegrityError:
            # A concurrent delivery inserted the same reference first.
            if not request.external_reference:
                raise
            existing = await self._find_by_reference(request.external_reference)
            return CreditResult(
                ok=True,
                new_balance=existing.balance_after if existing else None,
                transaction_id=existing.id if existing else None,
                duplicate=True,
            )

        if outcome.status == OUTCOME_NOT_FOUND:
            return CreditResult(ok=False, new_balance=None, reason=USER_NOT_FOUND)
        entry = outcome.entries[0]
        logger.info(
            "token_credited user_id=%s type=%s tokens=%s balance=%s transaction_id=%s",
            user_id,
            request.type,
            request.tokens,
            entry.balance_after,
            entry.id,
        )
        return CreditResult(ok=True, new_balance=entry.balance_after, transaction_id=entry.id)

    def credit_mutation(self, request: CreditRequest):
        # Build the credit transition so other flows can apply it inside their own mutation.
        now = self._time_provider()
        expires_at = request.expires_at
        if expires_at is None and request.type == TX_PURCHASE:
            expires_at = now + timedelta(days=self._settings.purchase_expiry_days)

        async def _mutate(user: User, session: AsyncSession) -> UserMutation:
            return build_credit_mutation(user, request, now=now, expires_at=expires_at)

        return _mutate

    async def _find_by_reference(self, reference: str) -> TokenTransaction | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(TokenTransaction).where(TokenTransaction.external_reference == reference)
            )
            return result.scalar_one_or_none()

    async def expire(self) -> ExpireResult:
        """Expire every positive lot whose expiry has passed.

        Each lot is handled in its own per-user transaction: the lot flips
        to expired and, when the balance can absorb it, an offsetting
        ``expiration`` entry is written. Lots the balance cannot absorb are
        marked expired without a deduction so the balance never goes
        negative.
        """
        now = self._time_provider()
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(TokenTransaction.id, TokenTransaction.user_id)
                    .where(
                        TokenTransaction.expires_at.is_not(None),
                        TokenTransaction.expires_at <= now,
                        TokenTransaction.is_expired.is_(False),
                        TokenTransaction.delta > 0,
                    )
                    .order_by(TokenTransaction.expires_at.asc())
                    .limit(self._settings.sweep_batch_size)
                )
            ).all()

        expired = 0
        removed = 0
        unabsorbed = 0
        errors = 0
        for lot_id, user_id in rows:
            try:
                outcome = await apply_user_mutation(
                    self._session_factory,
                    user_id,
                    _expire_lot_mutation(lot_id, now),
                    max_attempts=self._settings.cas_max_attempts,
                )
            except Exception:  # noqa: BLE001 - one lot failure must not abort the sweep
                errors += 1
                logger.exception("token_expire_failed transaction_id=%s user_id=%s", lot_id, user_id)
                continue
            if not outcome.applied:
                continue
            expired += 1
            deducted = int(outcome.result or 0)
            if deducted:
                removed += deducted
            else:
                unabsorbed += 1
        if rows:
            logger.info(
                "token_expire_sweep scanned=%s expired=%s removed=%s unabsorbed=%s errors=%s",
                len(rows),
                expired,
                removed,
                unabsorbed,
                errors,
            )
        return ExpireResult(
            expired_count=expired, tokens_removed=removed, unabsorbed_count=unabsorbed, errors=errors
        )

    async def get_balance_breakdown(self, user_id: str) -> BalanceBreakdown | None:
        await self._ensure_current(user_id)
        now = self._time_provider()
        async with self._session_factory() as session:
            user = await load_user(session, user_id)
            if user is None:
                return None
            lots = (
                await session.execute(
                    select(TokenTransaction)
                    .where(
                        TokenTransaction.user_id == user_id,
                        TokenTransaction.type.in_(tuple(CREDIT_TYPES)),
                        TokenTransaction.is_expired.is_(False),
                        TokenTransaction.delta > 0,
                        or_(TokenTransaction.expires_at.is_(None), TokenTransaction.expires_at > now),
                    )
                    .order_by(TokenTransaction.expires_at.asc().nulls_last(), TokenTransaction.created_at.asc())
                )
            ).scalars().all()

        tier = get_tier(user.tier) if is_known_tier(user.tier) else get_tier("free")
        monthly_limit = tier.monthly_tokens
        monthly_remaining = None if tier.unlimited_tokens else max(monthly_limit - user.monthly_tokens_used, 0)
        return BalanceBreakdown(
            user_id=user.id,
            total_balance=user.token_balance,
            tier=user.tier,
            monthly_used=user.monthly_tokens_used,
            monthly_limit=monthly_limit,
            monthly_remaining=monthly_remaining,
            reset_date=user.monthly_reset_date,
            active_lots=[
                TokenLot(
                    transaction_id=lot.id,
                    type=lot.type,
                    tokens=lot.delta,
                    package_id=lot.package_id,
                    expires_at=lot.expires_at,
                    created_at=lot.created_at,
                )
                for lot in lots
            ],
            lifetime_used=user.lifetime_tokens_used,
            lifetime_purchased=user.lifetime_tokens_purchased,
            last_purchase_at=user.last_purchase_at,
        )

    async def get_history(
        self,
        user_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
        transaction_type: str | None = None,
    ) -> tuple[list[TokenTransaction], int]:
        # Paginated ledger history, newest first, with the total row count.
        limit = max(1, min(int(limit), 200))
        async with self._session_factory() as session:
            filters = [TokenTransaction.user_id == user_id]
            if transaction_type:
                filters.append(TokenTransaction.type == transaction_type)
            rows = (
                await session.execute(
                    select(TokenTransaction)
                    .where(*filters)
                    .order_by(TokenTransaction.created_at.desc(), TokenTransaction.id.desc())
                    .offset(max(0, int(offset)))
                    .limit(limit)
                )
            ).scalars().all()
            total = (
                await session.execute(select(func.count()).select_from(TokenTransaction).where(*filters))
            ).scalar_one()
        return list(rows), int(total)

    async def verify_balance(self, user_id: str) -> BalanceAudit | None:
        # Recompute the ledger sum to detect drift between balance and entries.
        async with self._session_factory() as session:
            user = await load_user(session, user_id)
            if user is None:
                return None
            ledger_sum = (
                await session.execute(
                    select(func.coalesce(func.sum(TokenTransaction.delta), 0)).where(
                        TokenTransaction.user_id == user_id
                    )
                )
            ).scalar_one()
        audit = BalanceAudit(user_id=user_id, balance=int(user.token_balance), ledger_sum=int(ledger_sum))
        if not audit.consistent:
            logger.error(
                "token_balance_drift user_id=%s balance=%s ledger_sum=%s",
                user_id,
                audit.balance,
                audit.ledger_sum,
            )
        return audit


def build_credit_mutation(
    user: User,
    request: CreditRequest,
    *,
    now: datetime,
    expires_at: datetime | None,
    extra_values: dict[str, Any] | None = None,
) -> UserMutation:
    balance_before = int(user.token_balance)
    balance_after = balance_before + int(request.tokens)
    entry = TokenTransaction(
        user_id=user.id,
        type=request.type,
        delta=int(request.tokens),
        balance_before=balance_before,
        balance_after=balance_after,
        cost_cents=request.cost_cents,
        package_id=request.package_id,
        description=request.description or f"{request.type}: {request.tokens} tokens",
        external_reference=request.external_reference,
        expires_at=expires_at,
        extra=request.metadata,
        created_at=now,
    )
    values: dict[str, Any] = {"token_balance": balance_after, "last_token_update_at": now}
    if request.type == TX_PURCHASE:
        values["lifetime_tokens_purchased"] = int(user.lifetime_tokens_purchased) + int(request.tokens)
        values["last_purchase_at"] = now
    if extra_values:
        values.update(extra_values)
    return UserMutation(values=values, entries=[entry], result=balance_after)


def _expire_lot_mutation(lot_id: str, now: datetime):
    async def _mutate(user: User, session: AsyncSession) -> UserMutation | None:
        lot = (
            await session.execute(
                select(TokenTransaction)
                .where(TokenTransaction.id == lot_id)
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if lot is None or lot.is_expired:
            return None
        flip = (
            update(TokenTransaction)
            .where(TokenTransaction.id == lot_id, TokenTransaction.is_expired.is_(False))
            .values(is_expired=True)
        )
        balance_before = int(user.token_balance)
        amount = int(lot.delta)
        if balance_before < amount:
            # The balance cannot absorb this lot; retire it without a deduction.
            return UserMutation(values={"last_token_update_at": now}, guards=[flip], result=0)
        entry = TokenTransaction(
            user_id=user.id,
            type=TX_EXPIRATION,
            delta=-amount,
            balance_before=balance_before,
            balance_after=balance_before - amount,
            package_id=lot.package_id,
            description=f"{amount} tokens expired from {lot.package_id or lot.type}",
            extra={"original_transaction_id": lot.id, "expired_at": now.isoformat()},
            created_at=now,
        )
        return UserMutation(
            values={"token_balance": balance_before - amount, "last_token_update_at": now},
            entries=[entry],
            guards=[flip],
            result=amount,
        )

    return _mutate
