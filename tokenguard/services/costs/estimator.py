from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, ROUND_UP, Decimal

from tokenguard.domain.pricing import (
    COST_PROTECTION,
    DEFAULT_COMPLEXITY,
    DEFAULT_MODEL,
    INFRASTRUCTURE_COST_CENTS,
    PROCESSING_OVERHEAD,
    TIERS,
    api_cost_for_model,
    get_tier,
    tokens_for_complexity,
)


RECOMMEND_SUSPEND = "suspend_user"
RECOMMEND_LIMIT = "limit_usage"
RECOMMEND_UPGRADE = "suggest_upgrade"
RECOMMEND_CONTINUE = "continue"

_CENT = Decimal("1")
_RATIO_PLACES = Decimal("0.01")


@dataclass(frozen=True)
class CostEstimate:
    tokens: int
    api_cost_cents: int
    processing_cost_cents: int
    total_cost_cents: int
    model: str
    complexity: str


@dataclass(frozen=True)
class MonthlyProjection:
    total_cost_cents: int
    api_cost_cents: int
    infrastructure_cost_cents: int
    support_cost_cents: int
    operations: int
    cost_per_operation_cents: int


@dataclass(frozen=True)
class SafetyCheck:
    is_warning: bool
    is_critical: bool
    margin_too_low: bool
    # Rounded to two places; revenue of zero is treated as the maximal ratio 1.
    cost_ratio: Decimal
    margin: Decimal
    cost_cents: int
    revenue_cents: int
    recommendation: str

    @property
    def status(self) -> str:
        if self.is_critical:
            return "critical"
        if self.is_warning:
            return "warning"
        return "healthy"


def _ceil_cents(value: Decimal) -> int:
    return int(value.quantize(_CENT, rounding=ROUND_UP))


def estimate_operation_cost(complexity: str | None = None, model: str | None = None) -> CostEstimate:
    """Estimate the internal cost of one operation in whole cents.

    The external API cost is looked up per model (unknown models use the
    documented default) and the processing surcharge is 10% of that base.
    Each component rounds up to a whole cent.
    """
    resolved_complexity = complexity or DEFAULT_COMPLEXITY
    resolved_model = model or DEFAULT_MODEL
    base = api_cost_for_model(resolved_model)
    api_cost = _ceil_cents(base)
    processing_cost = _ceil_cents(base * PROCESSING_OVERHEAD)
    return CostEstimate(
        tokens=tokens_for_complexity(resolved_complexity),
        api_cost_cents=api_cost,
        processing_cost_cents=processing_cost,
        total_cost_cents=api_cost + processing_cost,
        model=resolved_model,
        complexity=resolved_complexity,
    )


def project_monthly_cost(
    monthly_tokens_used: int,
    tier_id: str,
    *,
    complexity: str | None = None,
    model: str | None = None,
) -> MonthlyProjection:
    # Each token used this month is one operation priced at the per-operation estimate.
    tier = get_tier(tier_id)
    operations = max(0, int(monthly_tokens_used))
    unit = estimate_operation_cost(complexity, model)
    api_cost = operations * unit.total_cost_cents
    total = api_cost + INFRASTRUCTURE_COST_CENTS + tier.support_cost_cents
    return MonthlyProjection(
        total_cost_cents=total,
        api_cost_cents=api_cost,
        infrastructure_cost_cents=INFRASTRUCTURE_COST_CENTS,
        support_cost_cents=tier.support_cost_cents,
        operations=operations,
        cost_per_operation_cents=unit.total_cost_cents,
    )


def recommend(*, is_warning: bool, is_critical: bool, margin_too_low: bool) -> str:
    if is_critical:
        return RECOMMEND_SUSPEND
    if is_warning:
        return RECOMMEND_LIMIT
    if margin_too_low:
        return RECOMMEND_UPGRADE
    return RECOMMEND_CONTINUE


def check_safety(cost_cents: int, revenue_cents: int, tier_id: str | None = None) -> SafetyCheck:
    """Classify a cost against revenue.

    ``cost_ratio`` is cost/revenue, forced to 1 when revenue is zero so the
    outcome is always critical. ``margin`` is revenue/cost (0 without
    revenue). ``tier_id`` is accepted for reporting and does not change the
    thresholds.
    """
    cost = Decimal(int(cost_cents))
    revenue = Decimal(int(revenue_cents))
    if revenue > 0:
        cost_ratio = cost / revenue
        margin = revenue / cost if cost > 0 else revenue
    else:
        cost_ratio = Decimal("1")
        margin = Decimal("0")
    is_warning = cost_ratio >= COST_PROTECTION.warning_ratio
    is_critical = cost_ratio >= COST_PROTECTION.hard_limit_ratio
    margin_too_low = margin < COST_PROTECTION.min_margin_multiplier
    return SafetyCheck(
        is_warning=is_warning,
        is_critical=is_critical,
        margin_too_low=margin_too_low,
        cost_ratio=cost_ratio.quantize(_RATIO_PLACES, rounding=ROUND_HALF_UP),
        margin=margin.quantize(_RATIO_PLACES, rounding=ROUND_HALF_UP),
        cost_cents=int(cost_cents),
        revenue_cents=int(revenue_cents),
        recommendation=recommend(
            is_warning=is_warning, is_critical=is_critical, margin_too_low=margin_too_low
        ),
    )


def break_even_operations(tier_id: str, *, model: str | None = None) -> int:
    # Operations a tier can run per month before cost reaches the warning ratio.
    tier = get_tier(tier_id)
    budget = Decimal(tier.monthly_price_cents) * COST_PROTECTION.warning_ratio
    fixed = Decimal(INFRASTRUCTURE_COST_CENTS + tier.support_cost_cents)
    unit = estimate_operation_cost(model=model).total_cost_cents
    if budget <= fixed or unit <= 0:
        return 0
    return int((budget - fixed) / unit)


def tier_cost_table(*, model: str | None = None) -> dict[str, int]:
    # Safe monthly operation counts per tier for operator reporting.
    return {tier_id: break_even_operations(tier_id, model=model) for tier_id in TIERS}
