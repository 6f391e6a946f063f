from __future__ import annotations

from dataclasses import dataclass, replace
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tokenguard.domain.models import User
from tokenguard.domain.state import USER_NOT_FOUND
from tokenguard.services.costs.estimator import CostEstimate, estimate_operation_cost
from tokenguard.services.costs.protection import CostProtectionMonitor, SafetyDecision
from tokenguard.services.ledger import Availability, ConsumeResult, Operation, TokenLedger
from tokenguard.services.rate_limit import RateLimitDecision, TierRateLimiter


logger = logging.getLogger(__name__)

STAGE_RATE_LIMIT = "rate_limit"
STAGE_AVAILABILITY = "availability"
STAGE_COST = "cost_protection"
STAGE_CONSUME = "consume"


@dataclass(frozen=True)
class GateResult:
    allowed: bool
    # Stage that declined the operation, or "consume" when it ran to completion.
    stage: str
    reason: str | None = None
    rate_limit: RateLimitDecision | None = None
    availability: Availability | None = None
    estimate: CostEstimate | None = None
    safety: SafetyDecision | None = None
    consume: ConsumeResult | None = None

    @property
    def retry_after_s(self) -> int:
        return self.rate_limit.retry_after_s if self.rate_limit is not None else 0


class OperationGate:
    """Run one AI operation through every guard before debiting it.

    Order: tier rate limit, availability, cost estimate, cost protection,
    then the debit itself. The first decline short-circuits the rest and
    nothing is charged.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: TokenLedger,
        monitor: CostProtectionMonitor,
        limiter: TierRateLimiter,
    ) -> None:
        self._session_factory = session_factory
        self._ledger = ledger
        self._monitor = monitor
        self._limiter = limiter

    async def _tier_for(self, user_id: str) -> str | None:
        async with self._session_factory() as session:
            return (await session.execute(select(User.tier).where(User.id == user_id))).scalar_one_or_none()

    async def run(self, user_id: str, operation: Operation) -> GateResult:
        tier_id = await self._tier_for(user_id)
        if tier_id is None:
            return GateResult(allowed=False, stage=STAGE_AVAILABILITY, reason=USER_NOT_FOUND)

        rate = await self._limiter.allow(tier_id, f"user:{user_id}")
        if not rate.allowed:
            return GateResult(allowed=False, stage=STAGE_RATE_LIMIT, reason=rate.reason, rate_limit=rate)

        availability = await self._ledger.check_operation(user_id, operation)
        if not availability.available:
            return GateResult(
                allowed=False,
                stage=STAGE_AVAILABILITY,
                reason=availability.reason,
                rate_limit=rate,
                availability=availability,
            )

        estimate = estimate_operation_cost(operation.complexity, operation.model)
        safety = await self._monitor.check_operation_safety(user_id, operation)
        if not safety.allowed:
            return GateResult(
                allowed=False,
                stage=STAGE_COST,
                reason=safety.reason,
                rate_limit=rate,
                availability=availability,
                estimate=estimate,
                safety=safety,
            )
        if safety.check_failed:
            logger.error("operation_gate_safety_unavailable user_id=%s", user_id)

        charged = operation if operation.cost_cents is not None else replace(
            operation, cost_cents=estimate.total_cost_cents
        )
        result = await self._ledger.consume(user_id, charged)
        return GateResult(
            allowed=result.ok,
            stage=STAGE_CONSUME,
            reason=result.reason,
            rate_limit=rate,
            availability=availability,
            estimate=estimate,
            safety=safety,
            consume=result,
        )
