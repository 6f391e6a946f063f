from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
import logging
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tokenguard.core.config import Settings, get_settings
from tokenguard.core.errors import SafetyCheckFailed
from tokenguard.domain.models import AuditEvent, User
from tokenguard.domain.pricing import TIERS, get_tier
from tokenguard.domain.state import (
    ACCOUNT_SUSPENDED,
    COST_CRITICAL,
    COST_HEALTHY,
    COST_LIMIT_EXCEEDED,
    COST_WARNING,
    TIER_FREE,
    USER_NOT_FOUND,
)
from tokenguard.persistence.repos.users import UserMutation, apply_user_mutation, load_user
from tokenguard.services.audit import latest_event_at, record_event
from tokenguard.services.costs.estimator import (
    SafetyCheck,
    check_safety,
    estimate_operation_cost,
    project_monthly_cost,
)
from tokenguard.services.ledger import Operation
from tokenguard.services.notifications import (
    EVENT_AUDIT_REPORT,
    EVENT_COST_CRITICAL,
    EVENT_COST_WARNING,
    LoggingNotificationSink,
    NotificationSink,
    notify_safely,
)


logger = logging.getLogger(__name__)

AUDIT_COST_WARNING = "cost.warning.sent"
AUDIT_COST_SUSPENDED = "cost.critical.suspended"
AUDIT_COST_OVERRIDE = "cost.override"
AUDIT_COST_REPORT = "cost.audit.completed"

SUSPENSION_REASON = "Cost protection - usage costs exceed safe limits"


@dataclass(frozen=True)
class CostSnapshot:
    # Derived on demand; never stored as a source of truth.
    user_id: str
    tier: str
    monthly_tokens_used: int
    current_cost_cents: int
    projected_cost_cents: int
    revenue_cents: int
    safety: SafetyCheck

    @property
    def status(self) -> str:
        return self.safety.status


@dataclass(frozen=True)
class SafetyDecision:
    allowed: bool
    status: str
    snapshot: CostSnapshot | None = None
    reason: str | None = None
    warning_sent: bool = False
    suspended: bool = False
    exempt: bool = False
    override_active: bool = False
    # Set when evaluation failed internally and the operation was allowed anyway.
    error: SafetyCheckFailed | None = None

    @property
    def check_failed(self) -> bool:
        return self.error is not None


@dataclass(frozen=True)
class CostProtectionStatus:
    user_id: str
    is_active: bool
    suspension_reason: str | None
    suspended_at: datetime | None
    snapshot: CostSnapshot
    exempt: bool
    last_warning_at: datetime | None


@dataclass
class AuditReport:
    audited_at: datetime
    total: int = 0
    healthy: int = 0
    warnings: list[dict[str, Any]] = field(default_factory=list)
    critical: list[dict[str, Any]] = field(default_factory=list)
    suspended: list[str] = field(default_factory=list)
    errors: int = 0

    def summary(self) -> dict[str, Any]:
        return {
            "audited_at": self.audited_at.isoformat(),
            "total": self.total,
            "healthy": self.healthy,
            "warning": len(self.warnings),
            "critical": len(self.critical),
            "suspended": len(self.suspended),
            "errors": self.errors,
        }


@dataclass(frozen=True)
class TierMargin:
    tier: str
    users: int
    revenue_cents: int
    cost_cents: int
    profit_cents: int
    margin_percentage: int
    # None when the tier has no cost yet.
    profit_multiplier: Decimal | None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _snapshot_payload(snapshot: CostSnapshot) -> dict[str, Any]:
    return {
        "user_id": snapshot.user_id,
        "tier": snapshot.tier,
        "current_cost_cents": snapshot.current_cost_cents,
        "projected_cost_cents": snapshot.projected_cost_cents,
        "revenue_cents": snapshot.revenue_cents,
        "cost_ratio": str(snapshot.safety.cost_ratio),
        "margin": str(snapshot.safety.margin),
        "status": snapshot.status,
        "recommendation": snapshot.safety.recommendation,
    }


def build_snapshot(user: User, *, operation: Operation | None = None) -> CostSnapshot:
    # Current monthly projection plus the estimated cost of the pending operation.
    tier = get_tier(user.tier)
    projection = project_monthly_cost(user.monthly_tokens_used, tier.id)
    operation_cost = 0
    if operation is not None:
        operation_cost = estimate_operation_cost(operation.complexity, operation.model).total_cost_cents
    projected = projection.total_cost_cents + operation_cost
    return CostSnapshot(
        user_id=user.id,
        tier=tier.id,
        monthly_tokens_used=int(user.monthly_tokens_used),
        current_cost_cents=projection.total_cost_cents,
        projected_cost_cents=projected,
        revenue_cents=tier.monthly_price_cents,
        safety=check_safety(projected, tier.monthly_price_cents, tier.id),
    )


class CostProtectionMonitor:
    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
        notifier: NotificationSink | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._notifier = notifier or LoggingNotificationSink()
        self._time_provider = time_provider or _utc_now

    def _is_exempt(self, user: User) -> bool:
        # Only when configured; zero revenue is otherwise always critical.
        if not self._settings.cost_protection_exempt_free_tier:
            return False
        return get_tier(user.tier).monthly_price_cents == 0

    async def check_operation_safety(self, user_id: str, operation: Operation) -> SafetyDecision:
        """Decide whether an operation may run given the user's cost position.

        Critical users are suspended before the decision is returned. Warnings
        never block and are sent at most once per rolling window. Any internal
        failure allows the operation and sets ``check_failed`` so callers can
        alert on it.
        """
        try:
            return await self._evaluate(user_id, operation)
        except Exception as exc:  # noqa: BLE001 - cost protection fails open
            logger.exception("cost_safety_check_failed user_id=%s", user_id)
            error = SafetyCheckFailed(f"{type(exc).__name__}: {exc}")
            error.__cause__ = exc
            return SafetyDecision(allowed=True, status="unknown", error=error)

    async def _evaluate(self, user_id: str, operation: Operation) -> SafetyDecision:
        now = self._time_provider()
        async with self._session_factory() as session:
            user = await load_user(session, user_id)
        if user is None:
            return SafetyDecision(allowed=False, status="unknown", reason=USER_NOT_FOUND)
        if not user.is_active:
            return SafetyDecision(allowed=False, status="suspended", reason=ACCOUNT_SUSPENDED, suspended=True)

        snapshot = build_snapshot(user, operation=operation)
        if self._is_exempt(user):
            # Allowed, but the real classification is still reported.
            return SafetyDecision(allowed=True, status=snapshot.status, snapshot=snapshot, exempt=True)

        if snapshot.safety.is_critical:
            if await self._override_active(user_id, now):
                logger.info("cost_override_applied user_id=%s", user_id)
                return SafetyDecision(
                    allowed=True, status=COST_CRITICAL, snapshot=snapshot, override_active=True
                )
            suspended = await self.suspend(user_id, snapshot=snapshot, source="operation")
            return SafetyDecision(
                allowed=False,
                status=COST_CRITICAL,
                snapshot=snapshot,
                reason=COST_LIMIT_EXCEEDED,
                suspended=suspended,
            )

        if snapshot.safety.is_warning:
            sent = await self._maybe_warn(user_id, snapshot=snapshot, now=now)
            return SafetyDecision(allowed=True, status=COST_WARNING, snapshot=snapshot, warning_sent=sent)

        return SafetyDecision(allowed=True, status=COST_HEALTHY, snapshot=snapshot)

    async def suspend(self, user_id: str, *, snapshot: CostSnapshot, source: str) -> bool:
        # Suspend through the per-user primitive so in-flight debits re-read and decline.
        now = self._time_provider()

        async def _mutate(user: User, session: AsyncSession) -> UserMutation | None:
            if not user.is_active:
                return None
            return UserMutation(
                values={
                    "is_active": False,
                    "suspension_reason": SUSPENSION_REASON,
                    "suspended_at": now,
                }
            )

        outcome = await apply_user_mutation(
            self._session_factory,
            user_id,
            _mutate,
            max_attempts=self._settings.cas_max_attempts,
        )
        if not outcome.applied:
            return False
        payload = _snapshot_payload(snapshot)
        payload["source"] = source
        logger.warning(
            "cost_critical_suspended user_id=%s projected_cents=%s revenue_cents=%s",
            user_id,
            snapshot.projected_cost_cents,
            snapshot.revenue_cents,
        )
        await record_event(
            session_factory=self._session_factory,
            occurred_at=now,
            user_id=user_id,
            event_type=AUDIT_COST_SUSPENDED,
            outcome="suspended",
            metadata=payload,
        )
        await notify_safely(self._notifier, EVENT_COST_CRITICAL, payload)
        return True

    async def _maybe_warn(self, user_id: str, *, snapshot: CostSnapshot, now: datetime) -> bool:
        window = timedelta(hours=self._settings.cost_warning_window_hours)
        async with self._session_factory() as session:
            last_warning = await latest_event_at(session, user_id=user_id, event_type=AUDIT_COST_WARNING)
        if last_warning is not None and last_warning > now - window:
            return False
        payload = _snapshot_payload(snapshot)
        await record_event(
            session_factory=self._session_factory,
            occurred_at=now,
            user_id=user_id,
            event_type=AUDIT_COST_WARNING,
            outcome="warned",
            metadata=payload,
        )
        logger.info(
            "cost_warning_sent user_id=%s cost_ratio=%s", user_id, snapshot.safety.cost_ratio
        )
        await notify_safely(self._notifier, EVENT_COST_WARNING, payload)
        return True

    async def _override_active(self, user_id: str, now: datetime) -> bool:
        async with self._session_factory() as session:
            event = (
                await session.execute(
                    select(AuditEvent)
                    .where(AuditEvent.user_id == user_id, AuditEvent.event_type == AUDIT_COST_OVERRIDE)
                    .order_by(AuditEvent.occurred_at.desc())
                    .limit(1)
                )
            ).scalar_one_or_none()
        if event is None:
            return False
        expires_at = (event.metadata_json or {}).get("expires_at")
        if not expires_at:
            return False
        return datetime.fromisoformat(expires_at) > now

    async def override_cost_protection(
        self,
        user_id: str,
        *,
        actor_id: str,
        reason: str,
        expires_at: datetime | None = None,
    ) -> bool:
        """Reactivate a suspended user on an operator's authority.

        With ``expires_at`` the user is also exempt from automatic
        re-suspension until that time.
        """
        now = self._time_provider()

        async def _mutate(user: User, session: AsyncSession) -> UserMutation:
            return UserMutation(values={"is_active": True, "suspension_reason": None, "suspended_at": None})

        outcome = await apply_user_mutation(
            self._session_factory,
            user_id,
            _mutate,
            max_attempts=self._settings.cas_max_attempts,
        )
        if not outcome.applied:
            return False
        await record_event(
            session_factory=self._session_factory,
            occurred_at=now,
            user_id=user_id,
            actor_type="operator",
            actor_id=actor_id,
            event_type=AUDIT_COST_OVERRIDE,
            outcome="reactivated",
            metadata={
                "reason": reason,
                "expires_at": expires_at.isoformat() if expires_at else None,
            },
        )
        logger.warning("cost_protection_override user_id=%s actor_id=%s", user_id, actor_id)
        return True

    async def get_cost_protection_status(self, user_id: str) -> CostProtectionStatus | None:
        async with self._session_factory() as session:
            user = await load_user(session, user_id)
            if user is None:
                return None
            last_warning = await latest_event_at(session, user_id=user_id, event_type=AUDIT_COST_WARNING)
        return CostProtectionStatus(
            user_id=user.id,
            is_active=user.is_active,
            suspension_reason=user.suspension_reason,
            suspended_at=user.suspended_at,
            snapshot=build_snapshot(user),
            exempt=self._is_exempt(user),
            last_warning_at=last_warning,
        )

    async def perform_system_audit(self) -> AuditReport:
        # Recompute every active paid user; one failure never aborts the sweep.
        now = self._time_provider()
        report = AuditReport(audited_at=now)
        async with self._session_factory() as session:
            user_ids = (
                await session.execute(
                    select(User.id)
                    .where(User.tier != TIER_FREE, User.is_active.is_(True))
                    .order_by(User.id.asc())
                )
            ).scalars().all()
        report.total = len(user_ids)

        for user_id in user_ids:
            try:
                async with self._session_factory() as session:
                    user = await load_user(session, user_id)
                if user is None or not user.is_active:
                    continue
                snapshot = build_snapshot(user)
                entry = {
                    "user_id": user.id,
                    "email": user.email,
                    "tier": user.tier,
                    "cost_ratio": str(snapshot.safety.cost_ratio),
                    "cost_cents": snapshot.projected_cost_cents,
                    "revenue_cents": snapshot.revenue_cents,
                }
                if snapshot.safety.is_critical:
                    report.critical.append(entry)
                    if self._is_exempt(user) or await self._override_active(user_id, now):
                        continue
                    if await self.suspend(user_id, snapshot=snapshot, source="audit"):
                        report.suspended.append(user_id)
                elif snapshot.safety.is_warning:
                    report.warnings.append(entry)
                else:
                    report.healthy += 1
            except Exception:  # noqa: BLE001 - keep auditing other users
                report.errors += 1
                logger.exception("cost_audit_user_failed user_id=%s", user_id)

        summary = report.summary()
        logger.info(
            "cost_audit_completed total=%s healthy=%s warning=%s critical=%s suspended=%s errors=%s",
            summary["total"],
            summary["healthy"],
            summary["warning"],
            summary["critical"],
            summary["suspended"],
            summary["errors"],
        )
        await record_event(
            session_factory=self._session_factory,
            occurred_at=now,
            user_id=None,
            event_type=AUDIT_COST_REPORT,
            outcome="completed",
            metadata=summary,
        )
        await notify_safely(
            self._notifier,
            EVENT_AUDIT_REPORT,
            {**summary, "warnings": report.warnings, "critical_users": report.critical},
        )
        return report

    async def calculate_system_margins(self) -> dict[str, TierMargin]:
        # Aggregate revenue against projected cost for every paid tier with users.
        margins: dict[str, TierMargin] = {}
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(User.tier, User.monthly_tokens_used).where(User.tier != TIER_FREE)
                )
            ).all()
        grouped: dict[str, list[int]] = {}
        for tier_id, monthly_used in rows:
            if tier_id not in TIERS:
                continue
            grouped.setdefault(tier_id, []).append(int(monthly_used or 0))

        for tier_id, usages in grouped.items():
            tier = get_tier(tier_id)
            revenue = tier.monthly_price_cents * len(usages)
            cost = sum(project_monthly_cost(used, tier_id).total_cost_cents for used in usages)
            margin_pct = round((revenue - cost) * 100 / revenue) if revenue > 0 else 0
            multiplier = (
                (Decimal(revenue) / Decimal(cost)).quantize(Decimal("0.01")) if cost > 0 else None
            )
            margins[tier_id] = TierMargin(
                tier=tier_id,
                users=len(usages),
                revenue_cents=revenue,
                cost_cents=cost,
                profit_cents=revenue - cost,
                margin_percentage=margin_pct,
                profit_multiplier=multiplier,
            )
        return margins
