from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from tokenguard.apps.api.deps import get_services
from tokenguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tokenguard.apps.api.response import SuccessEnvelope, success_response
from tokenguard.services.container import Services

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    database: str


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request, services: Services = Depends(get_services)) -> dict:
    # Report degraded instead of failing so load balancers can tell the process is alive.
    database = "ok"
    try:
        async with services.session_factory() as session:
            await session.execute(text("SELECT 1"))
    except SQLAlchemyError:
        database = "unavailable"
    payload = HealthResponse(status="ok" if database == "ok" else "degraded", database=database)
    return success_response(request=request, data=payload)
