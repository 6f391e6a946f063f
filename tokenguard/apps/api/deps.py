from __future__ import annotations

from fastapi import Header, Request, status

from tokenguard.apps.api.errors import http_error
from tokenguard.services.container import Services


def get_services(request: Request) -> Services:
    # The container is built once at startup and shared by every request.
    return request.app.state.services


async def get_user_id(x_user_id: str | None = Header(default=None, alias="X-User-Id")) -> str:
    # Identity is asserted by the upstream auth layer; this service trusts the header.
    if not x_user_id or not x_user_id.strip():
        raise http_error(status.HTTP_401_UNAUTHORIZED, "AUTH_UNAUTHORIZED", "Missing X-User-Id header")
    return x_user_id.strip()
