from __future__ import annotations

from decimal import Decimal

from tokenguard.services.costs.estimator import (
    RECOMMEND_CONTINUE,
    RECOMMEND_LIMIT,
    RECOMMEND_SUSPEND,
    RECOMMEND_UPGRADE,
    break_even_operations,
    check_safety,
    estimate_operation_cost,
    project_monthly_cost,
    recommend,
    tier_cost_table,
)


def test_operation_estimate_rounds_each_component_up() -> None:
    estimate = estimate_operation_cost("standard", "gpt3_5_turbo")
    assert estimate.tokens == 3
    assert estimate.api_cost_cents == 1
    assert estimate.processing_cost_cents == 1
    assert estimate.total_cost_cents == 2

    opus = estimate_operation_cost("complex", "opus")
    assert opus.tokens == 7
    assert opus.api_cost_cents == 2
    assert opus.processing_cost_cents == 1


def test_monthly_projection_prices_usage_at_the_operation_estimate() -> None:
    per_operation = estimate_operation_cost("standard").total_cost_cents
    projection = project_monthly_cost(300, "starter")
    assert projection.operations == 300
    assert projection.cost_per_operation_cents == per_operation == 2
    assert projection.api_cost_cents == 300 * per_operation
    # Plus infrastructure and starter support.
    assert projection.total_cost_cents == 300 * per_operation + 1 + 10

    idle = project_monthly_cost(0, "pro")
    assert idle.operations == 0
    assert idle.total_cost_cents == 1 + 25


def test_projection_follows_model_and_complexity() -> None:
    opus = estimate_operation_cost("complex", "opus").total_cost_cents
    projection = project_monthly_cost(10, "pro", complexity="complex", model="opus")
    assert projection.api_cost_cents == 10 * opus


def test_paid_tiers_at_full_allotment_reach_the_warning_band() -> None:
    business = project_monthly_cost(5000, "business")
    check = check_safety(business.total_cost_cents, 19900)
    assert business.total_cost_cents == 10101
    assert check.status == "warning"
    assert check.cost_ratio == Decimal("0.51")


def test_zero_revenue_is_always_critical() -> None:
    check = check_safety(1, 0)
    assert check.is_critical
    assert check.is_warning
    assert check.cost_ratio == Decimal("1.00")
    assert check.margin == Decimal("0.00")
    assert check.recommendation == RECOMMEND_SUSPEND


def test_warning_band() -> None:
    check = check_safety(700, 1900)
    assert check.cost_ratio == Decimal("0.37")
    assert check.is_warning
    assert not check.is_critical
    assert check.margin_too_low
    assert check.recommendation == RECOMMEND_LIMIT
    assert check.status == "warning"


def test_critical_band() -> None:
    check = check_safety(1400, 1900)
    assert check.is_critical
    assert check.status == "critical"


def test_low_margin_alone_suggests_upgrade() -> None:
    assert recommend(is_warning=False, is_critical=False, margin_too_low=True) == RECOMMEND_UPGRADE
    assert recommend(is_warning=True, is_critical=True, margin_too_low=True) == RECOMMEND_SUSPEND


def test_healthy_user_continues() -> None:
    check = check_safety(100, 1900)
    assert check.status == "healthy"
    assert check.margin == Decimal("19.00")
    assert check.recommendation == RECOMMEND_CONTINUE


def test_break_even_operations_per_tier() -> None:
    # (1900 * 0.30 - 11) / 2 cents per operation
    assert break_even_operations("starter") == 279
    assert break_even_operations("free") == 0
    table = tier_cost_table()
    assert table["starter"] == 279
    assert table["business"] > table["pro"] > table["starter"]
