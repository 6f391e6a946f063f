from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, Field

from tokenguard.apps.api.deps import get_services, get_user_id
from tokenguard.apps.api.errors import http_error
from tokenguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tokenguard.apps.api.response import SuccessEnvelope, success_response
from tokenguard.domain.state import (
    ACCOUNT_SUSPENDED,
    COST_LIMIT_EXCEEDED,
    INVALID_TIER,
    RATE_LIMITED,
    USER_NOT_FOUND,
)
from tokenguard.services.container import Services
from tokenguard.services.costs.estimator import estimate_operation_cost
from tokenguard.services.ledger import Operation


router = APIRouter(prefix="/tokens", tags=["tokens"], responses=DEFAULT_ERROR_RESPONSES)

# Business declines mapped to HTTP statuses; anything else is a 402 token shortfall.
_DECLINE_STATUS: dict[str, int] = {
    USER_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ACCOUNT_SUSPENDED: status.HTTP_403_FORBIDDEN,
    COST_LIMIT_EXCEEDED: status.HTTP_403_FORBIDDEN,
    INVALID_TIER: status.HTTP_409_CONFLICT,
    RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
}


class TokenLotResponse(BaseModel):
    transaction_id: str
    type: str
    tokens: int
    package_id: str | None
    expires_at: datetime | None
    created_at: datetime


class BalanceResponse(BaseModel):
    user_id: str
    total_balance: int
    tier: str
    monthly_used: int
    monthly_limit: int
    monthly_remaining: int | None
    reset_date: datetime
    lifetime_used: int
    lifetime_purchased: int
    last_purchase_at: datetime | None
    active_lots: list[TokenLotResponse]


class TransactionResponse(BaseModel):
    id: str
    type: str
    delta: int
    balance_before: int
    balance_after: int
    cost_cents: int | None
    package_id: str | None
    model: str | None
    complexity: str | None
    description: str | None
    expires_at: datetime | None
    is_expired: bool
    created_at: datetime


class HistoryResponse(BaseModel):
    items: list[TransactionResponse]
    total: int
    limit: int
    offset: int


class OperationRequest(BaseModel):
    complexity: Literal["simple", "standard", "complex", "custom"] = "standard"
    model: str | None = None
    description: str | None = Field(default=None, max_length=500)
    metadata: dict[str, Any] | None = None


class CheckResponse(BaseModel):
    available: bool
    tokens_needed: int
    balance: int
    shortfall: int
    reason: str | None
    monthly_limit: int | None
    monthly_used: int | None
    monthly_remaining: int | None
    estimated_cost_cents: int


class ConsumeResponse(BaseModel):
    tokens_consumed: int
    new_balance: int | None
    transaction_id: str | None
    estimated_cost_cents: int | None
    cost_status: str | None
    # True when cost protection could not be evaluated and the operation ran anyway.
    cost_check_failed: bool = False


@router.get("/balance", response_model=SuccessEnvelope[BalanceResponse])
async def get_balance(
    request: Request,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
) -> dict:
    breakdown = await services.ledger.get_balance_breakdown(user_id)
    if breakdown is None:
        raise http_error(status.HTTP_404_NOT_FOUND, USER_NOT_FOUND, "User not found")
    payload = BalanceResponse(
        user_id=breakdown.user_id,
        total_balance=breakdown.total_balance,
        tier=breakdown.tier,
        monthly_used=breakdown.monthly_used,
        monthly_limit=breakdown.monthly_limit,
        monthly_remaining=breakdown.monthly_remaining,
        reset_date=breakdown.reset_date,
        lifetime_used=breakdown.lifetime_used,
        lifetime_purchased=breakdown.lifetime_purchased,
        last_purchase_at=breakdown.last_purchase_at,
        active_lots=[
            TokenLotResponse(
                transaction_id=lot.transaction_id,
                type=lot.type,
                tokens=lot.tokens,
                package_id=lot.package_id,
                expires_at=lot.expires_at,
                created_at=lot.created_at,
            )
            for lot in breakdown.active_lots
        ],
    )
    return success_response(request=request, data=payload)


@router.get("/history", response_model=SuccessEnvelope[HistoryResponse])
async def get_history(
    request: Request,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    type: str | None = Query(default=None),
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
) -> dict:
    rows, total = await services.ledger.get_history(
        user_id, limit=limit, offset=offset, transaction_type=type
    )
    payload = HistoryResponse(
        items=[
            TransactionResponse(
                id=row.id,
                type=row.type,
                delta=row.delta,
                balance_before=row.balance_before,
                balance_after=row.balance_after,
                cost_cents=row.cost_cents,
                package_id=row.package_id,
                model=row.model,
                complexity=row.complexity,
                description=row.description,
                expires_at=row.expires_at,
                is_expired=row.is_expired,
                created_at=row.created_at,
            )
            for row in rows
        ],
        total=total,
        limit=limit,
        offset=offset,
    )
    return success_response(request=request, data=payload)


@router.post("/check", response_model=SuccessEnvelope[CheckResponse])
async def check_tokens(
    request: Request,
    body: OperationRequest,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
) -> dict:
    # Read-only: reports whether the operation could run and what it would cost.
    operation = Operation(complexity=body.complexity, model=body.model)
    availability = await services.ledger.check_operation(user_id, operation)
    if availability.reason == USER_NOT_FOUND:
        raise http_error(status.HTTP_404_NOT_FOUND, USER_NOT_FOUND, "User not found")
    estimate = estimate_operation_cost(body.complexity, body.model)
    payload = CheckResponse(
        available=availability.available,
        tokens_needed=availability.tokens_needed,
        balance=availability.balance,
        shortfall=availability.shortfall,
        reason=availability.reason,
        monthly_limit=availability.monthly_limit,
        monthly_used=availability.monthly_used,
        monthly_remaining=availability.monthly_remaining,
        estimated_cost_cents=estimate.total_cost_cents,
    )
    return success_response(request=request, data=payload)


@router.post("/consume", response_model=SuccessEnvelope[ConsumeResponse])
async def consume_tokens(
    request: Request,
    body: OperationRequest,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
) -> dict:
    operation = Operation(
        complexity=body.complexity,
        model=body.model,
        description=body.description,
        metadata=body.metadata,
    )
    result = await services.gate.run(user_id, operation)
    if not result.allowed:
        reason = result.reason or "TOKENS_UNAVAILABLE"
        error = http_error(
            _DECLINE_STATUS.get(reason, status.HTTP_402_PAYMENT_REQUIRED),
            reason,
            "Operation declined",
            stage=result.stage,
        )
        if reason == RATE_LIMITED:
            error.headers = {"Retry-After": str(result.retry_after_s)}
        raise error
    payload = ConsumeResponse(
        tokens_consumed=result.consume.tokens_consumed if result.consume else 0,
        new_balance=result.consume.new_balance if result.consume else None,
        transaction_id=result.consume.transaction_id if result.consume else None,
        estimated_cost_cents=result.estimate.total_cost_cents if result.estimate else None,
        cost_status=result.safety.status if result.safety else None,
        cost_check_failed=bool(result.safety and result.safety.check_failed),
    )
    return success_response(request=request, data=payload)
