from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import AsyncIterator

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from tokenguard.apps.api.errors import (
    domain_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from tokenguard.apps.api.response import API_VERSION, get_request_id
from tokenguard.apps.api.routes.cost_protection import router as cost_protection_router
from tokenguard.apps.api.routes.health import router as health_router
from tokenguard.apps.api.routes.tokens import router as tokens_router
from tokenguard.apps.api.routes.webhooks import router as webhooks_router
from tokenguard.core.errors import TokenGuardError
from tokenguard.core.logging import configure_logging
from tokenguard.persistence.db import dispose_engine
from tokenguard.services.container import Services, build_services


logger = logging.getLogger(__name__)


def create_app(services: Services | None = None) -> FastAPI:
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # Build the container on startup unless one was injected.
        owned = services is None
        app.state.services = services or build_services()
        try:
            yield
        finally:
            if owned:
                await dispose_engine()

    app = FastAPI(title="TokenGuard API", version=API_VERSION, lifespan=lifespan)
    if services is not None:
        app.state.services = services

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = get_request_id(request)
        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(TokenGuardError)
    async def _domain_exception_handler(request: Request, exc: TokenGuardError):
        return await domain_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(tokens_router, prefix=f"/{API_VERSION}")
    app.include_router(cost_protection_router, prefix=f"/{API_VERSION}")
    app.include_router(webhooks_router, prefix=f"/{API_VERSION}")

    return app


app = create_app()
