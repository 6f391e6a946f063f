from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from types import MappingProxyType
from typing import Mapping

from tokenguard.core.errors import InvalidTierError, UnknownPackageError


UNLIMITED = -1


@dataclass(frozen=True)
class RateLimits:
    # Requests allowed per fixed UTC window; UNLIMITED disables a window.
    per_day: int
    per_hour: int
    per_minute: int


@dataclass(frozen=True)
class TierDefinition:
    id: str
    name: str
    # Monthly token allotment acts as a usage ceiling; UNLIMITED disables it.
    monthly_tokens: int
    max_rollover: int
    monthly_price_cents: int
    rate_limits: RateLimits
    # Ordering used for upgrade/downgrade comparisons.
    priority: int
    # Support cost attributed to each user on the tier, per month.
    support_cost_cents: int

    @property
    def unlimited_tokens(self) -> bool:
        return self.monthly_tokens == UNLIMITED

    @property
    def unlimited_rollover(self) -> bool:
        return self.max_rollover == UNLIMITED


@dataclass(frozen=True)
class TokenPackage:
    id: str
    tokens: int
    price_cents: int
    stripe_price_id: str


@dataclass(frozen=True)
class CostProtectionPolicy:
    # Cost/revenue ratio at which a user is warned.
    warning_ratio: Decimal
    # Cost/revenue ratio at which a user is suspended.
    hard_limit_ratio: Decimal
    # Revenue must exceed cost by at least this multiple.
    min_margin_multiplier: Decimal
    token_expiry_days: int


_TIERS: dict[str, TierDefinition] = {
    "free": TierDefinition(
        id="free",
        name="Free",
        monthly_tokens=5,
        max_rollover=0,
        monthly_price_cents=0,
        rate_limits=RateLimits(per_day=5, per_hour=2, per_minute=2),
        priority=0,
        support_cost_cents=0,
    ),
    "starter": TierDefinition(
        id="starter",
        name="Starter",
        monthly_tokens=50,
        max_rollover=10,
        monthly_price_cents=1900,
        rate_limits=RateLimits(per_day=50, per_hour=10, per_minute=5),
        priority=1,
        support_cost_cents=10,
    ),
    "pro": TierDefinition(
        id="pro",
        name="Pro",
        monthly_tokens=1000,
        max_rollover=200,
        monthly_price_cents=4900,
        rate_limits=RateLimits(per_day=200, per_hour=50, per_minute=20),
        priority=2,
        support_cost_cents=25,
    ),
    "team": TierDefinition(
        id="team",
        name="Team",
        monthly_tokens=2500,
        max_rollover=500,
        monthly_price_cents=9900,
        rate_limits=RateLimits(per_day=500, per_hour=100, per_minute=50),
        priority=3,
        support_cost_cents=50,
    ),
    "business": TierDefinition(
        id="business",
        name="Business",
        monthly_tokens=5000,
        max_rollover=1000,
        monthly_price_cents=19900,
        rate_limits=RateLimits(per_day=2000, per_hour=400, per_minute=100),
        priority=4,
        support_cost_cents=100,
    ),
    "enterprise": TierDefinition(
        id="enterprise",
        name="Enterprise",
        monthly_tokens=UNLIMITED,
        max_rollover=UNLIMITED,
        monthly_price_cents=29900,
        rate_limits=RateLimits(per_day=UNLIMITED, per_hour=UNLIMITED, per_minute=UNLIMITED),
        priority=5,
        support_cost_cents=500,
    ),
}

TIERS: Mapping[str, TierDefinition] = MappingProxyType(_TIERS)

# Unauthenticated callers get limits at or below the free tier.
ANONYMOUS_RATE_LIMITS = RateLimits(per_day=2, per_hour=1, per_minute=1)

TOKEN_CONSUMPTION: Mapping[str, int] = MappingProxyType(
    {
        "simple": 1,
        "standard": 3,
        "complex": 7,
        "custom": 15,
    }
)
DEFAULT_COMPLEXITY = "standard"

_PACKAGES: dict[str, TokenPackage] = {
    "small": TokenPackage(id="small", tokens=25, price_cents=499, stripe_price_id="price_tokens_25"),
    "medium": TokenPackage(id="medium", tokens=100, price_cents=1799, stripe_price_id="price_tokens_100"),
    "large": TokenPackage(id="large", tokens=500, price_cents=7999, stripe_price_id="price_tokens_500"),
    "bulk": TokenPackage(id="bulk", tokens=1000, price_cents=14999, stripe_price_id="price_tokens_1000"),
    "addon_small": TokenPackage(
        id="addon_small", tokens=20, price_cents=500, stripe_price_id="price_addon_tokens_20"
    ),
    "addon_medium": TokenPackage(
        id="addon_medium", tokens=50, price_cents=1000, stripe_price_id="price_addon_tokens_50"
    ),
}

TOKEN_PACKAGES: Mapping[str, TokenPackage] = MappingProxyType(_PACKAGES)

COST_PROTECTION = CostProtectionPolicy(
    warning_ratio=Decimal("0.30"),
    hard_limit_ratio=Decimal("0.70"),
    min_margin_multiplier=Decimal("3.0"),
    token_expiry_days=90,
)

# External API cost per call in cents; fractional values are rounded up per operation.
API_COSTS: Mapping[str, Mapping[str, Decimal]] = MappingProxyType(
    {
        "openai": MappingProxyType(
            {
                "gpt3_5_turbo": Decimal("0.2"),
                "gpt4": Decimal("0.6"),
            }
        ),
        "claude": MappingProxyType(
            {
                "sonnet": Decimal("0.3"),
                "opus": Decimal("1.5"),
            }
        ),
    }
)
DEFAULT_API_COST = Decimal("0.3")
DEFAULT_MODEL = "gpt3_5_turbo"

INFRASTRUCTURE_COST_CENTS = 1
PROCESSING_OVERHEAD = Decimal("0.10")

# Provider price ids mapped to tiers; yearly and legacy ids resolve to the same tier.
PRICE_TO_TIER: Mapping[str, str] = MappingProxyType(
    {
        "price_starter_monthly": "starter",
        "price_starter_yearly": "starter",
        "price_pro_monthly": "pro",
        "price_pro_yearly": "pro",
        "price_team_monthly": "team",
        "price_team_yearly": "team",
        "price_team_pro_monthly": "team",
        "price_team_pro_yearly": "team",
        "price_business_monthly": "business",
        "price_business_yearly": "business",
        "price_enterprise_monthly": "enterprise",
        "price_enterprise_yearly": "enterprise",
    }
)


def get_tier(tier_id: str) -> TierDefinition:
    tier = TIERS.get(tier_id)
    if tier is None:
        raise InvalidTierError(f"Unknown tier: {tier_id}")
    return tier


def is_known_tier(tier_id: str) -> bool:
    return tier_id in TIERS


def tier_rank(tier_id: str) -> int:
    return get_tier(tier_id).priority


def is_upgrade(current_tier: str, target_tier: str) -> bool:
    return tier_rank(target_tier) > tier_rank(current_tier)


def tokens_for_complexity(complexity: str | None) -> int:
    # Unknown complexity falls back to the standard token cost.
    return TOKEN_CONSUMPTION.get(complexity or DEFAULT_COMPLEXITY, TOKEN_CONSUMPTION[DEFAULT_COMPLEXITY])


def get_package(package_id: str) -> TokenPackage:
    package = TOKEN_PACKAGES.get(package_id)
    if package is None:
        raise UnknownPackageError(f"Unknown token package: {package_id}")
    return package


def package_for_price(price_id: str | None) -> TokenPackage | None:
    if not price_id:
        return None
    for package in TOKEN_PACKAGES.values():
        if package.stripe_price_id == price_id:
            return package
    return None


def tier_for_price(price_id: str | None) -> str | None:
    if not price_id:
        return None
    return PRICE_TO_TIER.get(price_id)


def api_cost_for_model(model: str | None) -> Decimal:
    """Resolve the per-call API cost for a model name.

    Names are matched loosely: ``gpt-4o`` resolves to gpt4, any other
    ``gpt*`` to gpt3_5_turbo, ``claude-*opus*`` to opus and any other
    ``claude*`` to sonnet. Anything else uses ``DEFAULT_API_COST``.
    """
    name = (model or DEFAULT_MODEL).lower().replace(".", "_").replace("-", "_")
    for costs in API_COSTS.values():
        if name in costs:
            return costs[name]
    if name.startswith("gpt"):
        openai = API_COSTS["openai"]
        if name.startswith("gpt4") or name.startswith("gpt_4"):
            return openai["gpt4"]
        return openai["gpt3_5_turbo"]
    if name.startswith("claude"):
        claude = API_COSTS["claude"]
        if "opus" in name:
            return claude["opus"]
        return claude["sonnet"]
    return DEFAULT_API_COST
