from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel

from tokenguard.apps.api.deps import get_services, get_user_id
from tokenguard.apps.api.errors import http_error
from tokenguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tokenguard.apps.api.response import SuccessEnvelope, success_response
from tokenguard.domain.state import USER_NOT_FOUND
from tokenguard.services.container import Services


router = APIRouter(prefix="/cost-protection", tags=["cost-protection"], responses=DEFAULT_ERROR_RESPONSES)


class CostProtectionStatusResponse(BaseModel):
    user_id: str
    tier: str
    is_active: bool
    suspension_reason: str | None
    suspended_at: datetime | None
    status: str
    recommendation: str
    current_cost_cents: int
    revenue_cents: int
    cost_ratio: str
    margin: str
    exempt: bool
    last_warning_at: datetime | None


@router.get("/status", response_model=SuccessEnvelope[CostProtectionStatusResponse])
async def get_status(
    request: Request,
    user_id: str = Depends(get_user_id),
    services: Services = Depends(get_services),
) -> dict:
    result = await services.monitor.get_cost_protection_status(user_id)
    if result is None:
        raise http_error(status.HTTP_404_NOT_FOUND, USER_NOT_FOUND, "User not found")
    snapshot = result.snapshot
    payload = CostProtectionStatusResponse(
        user_id=result.user_id,
        tier=snapshot.tier,
        is_active=result.is_active,
        suspension_reason=result.suspension_reason,
        suspended_at=result.suspended_at,
        status=snapshot.status,
        recommendation=snapshot.safety.recommendation,
        current_cost_cents=snapshot.current_cost_cents,
        revenue_cents=snapshot.revenue_cents,
        # Decimal ratios are rendered as strings to keep exact values.
        cost_ratio=str(snapshot.safety.cost_ratio),
        margin=str(snapshot.safety.margin),
        exempt=result.exempt,
        last_warning_at=result.last_warning_at,
    )
    return success_response(request=request, data=payload)
