from __future__ import annotations

# Re-export cost services for centralized imports.

from tokenguard.services.costs.estimator import (
    CostEstimate,
    MonthlyProjection,
    SafetyCheck,
    break_even_operations,
    check_safety,
    estimate_operation_cost,
    project_monthly_cost,
)
from tokenguard.services.costs.protection import (
    AuditReport,
    CostProtectionMonitor,
    CostProtectionStatus,
    CostSnapshot,
    SafetyDecision,
    TierMargin,
)

__all__ = [
    "CostEstimate",
    "MonthlyProjection",
    "SafetyCheck",
    "break_even_operations",
    "check_safety",
    "estimate_operation_cost",
    "project_monthly_cost",
    "AuditReport",
    "CostProtectionMonitor",
    "CostProtectionStatus",
    "CostSnapshot",
    "SafetyDecision",
    "TierMargin",
]
