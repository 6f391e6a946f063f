from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from tokenguard.apps.api.main import create_app
from tokenguard.tests.utils.factories import (
    WEBHOOK_SECRET,
    create_user,
    encode_event,
    get_user,
    stripe_event,
    stripe_signature_header,
    subscription_object,
)


@pytest.fixture
async def client(services):
    app = create_app(services)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client


def _headers(user_id: str) -> dict[str, str]:
    return {"X-User-Id": user_id}


@pytest.mark.asyncio
async def test_health_reports_database(client) -> None:
    response = await client.get("/v1/health", headers={"X-Request-Id": "req-health"})

    assert response.status_code == 200
    body = response.json()
    assert body["data"] == {"status": "ok", "database": "ok"}
    assert body["meta"] == {"request_id": "req-health", "api_version": "v1"}
    assert response.headers["X-Request-Id"] == "req-health"


@pytest.mark.asyncio
async def test_balance_requires_identity(client) -> None:
    response = await client.get("/v1/tokens/balance")

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "AUTH_UNAUTHORIZED"


@pytest.mark.asyncio
async def test_balance_and_history(client, session_factory, clock) -> None:
    user_id = await create_user(session_factory, now=clock(), tier="starter", balance=12, monthly_used=4)

    balance = await client.get("/v1/tokens/balance", headers=_headers(user_id))
    assert balance.status_code == 200
    data = balance.json()["data"]
    assert data["total_balance"] == 12
    assert data["tier"] == "starter"
    assert data["monthly_limit"] == 50
    assert data["monthly_remaining"] == 46
    assert len(data["active_lots"]) == 1

    history = await client.get("/v1/tokens/history", params={"limit": 10}, headers=_headers(user_id))
    assert history.status_code == 200
    page = history.json()["data"]
    assert page["total"] == 1
    assert page["items"][0]["delta"] == 12

    missing = await client.get("/v1/tokens/balance", headers=_headers("nobody"))
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "USER_NOT_FOUND"


@pytest.mark.asyncio
async def test_check_does_not_debit(client, session_factory, clock) -> None:
    user_id = await create_user(session_factory, now=clock(), tier="starter", balance=2)

    response = await client.post(
        "/v1/tokens/check", json={"complexity": "standard"}, headers=_headers(user_id)
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["available"] is False
    assert data["reason"] == "INSUFFICIENT_TOKENS"
    assert data["shortfall"] == 1
    assert data["estimated_cost_cents"] == 2
    assert (await get_user(session_factory, user_id)).token_balance == 2

    invalid = await client.post("/v1/tokens/check", json={"complexity": "epic"}, headers=_headers(user_id))
    assert invalid.status_code == 422
    assert invalid.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_consume_success_and_shortfall(client, session_factory, clock) -> None:
    user_id = await create_user(session_factory, now=clock(), tier="starter", balance=5)

    ok = await client.post("/v1/tokens/consume", json={"complexity": "standard"}, headers=_headers(user_id))
    assert ok.status_code == 200
    data = ok.json()["data"]
    assert data["tokens_consumed"] == 3
    assert data["new_balance"] == 2
    assert data["estimated_cost_cents"] == 2
    assert data["cost_status"] == "healthy"
    assert data["cost_check_failed"] is False

    short = await client.post("/v1/tokens/consume", json={"complexity": "standard"}, headers=_headers(user_id))
    assert short.status_code == 402
    error = short.json()["error"]
    assert error["code"] == "INSUFFICIENT_TOKENS"
    assert error["details"]["stage"] == "availability"


@pytest.mark.asyncio
async def test_consume_rate_limited_sets_retry_after(client, session_factory, clock) -> None:
    user_id = await create_user(session_factory, now=clock(), tier="starter", balance=20)

    for _ in range(5):
        response = await client.post(
            "/v1/tokens/consume", json={"complexity": "simple"}, headers=_headers(user_id)
        )
        assert response.status_code == 200

    limited = await client.post("/v1/tokens/consume", json={"complexity": "simple"}, headers=_headers(user_id))
    assert limited.status_code == 429
    assert limited.headers["Retry-After"] == "60"
    assert limited.json()["error"]["code"] == "RATE_LIMITED"


@pytest.mark.asyncio
async def test_consume_flags_unavailable_cost_protection(client, services, session_factory, clock, monkeypatch) -> None:
    user_id = await create_user(session_factory, now=clock(), tier="starter", balance=5)

    async def _broken(*args, **kwargs):
        raise RuntimeError("cost tables unavailable")

    monkeypatch.setattr(services.monitor, "_evaluate", _broken)
    response = await client.post("/v1/tokens/consume", json={"complexity": "standard"}, headers=_headers(user_id))

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["tokens_consumed"] == 3
    assert data["cost_status"] == "unknown"
    assert data["cost_check_failed"] is True


@pytest.mark.asyncio
async def test_cost_protection_status(client, session_factory, clock) -> None:
    user_id = await create_user(session_factory, now=clock(), tier="starter", monthly_used=300)

    response = await client.get("/v1/cost-protection/status", headers=_headers(user_id))

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "warning"
    assert data["recommendation"] == "limit_usage"
    assert data["current_cost_cents"] == 611
    assert data["revenue_cents"] == 1900
    assert data["cost_ratio"] == "0.32"
    assert data["is_active"] is True


@pytest.mark.asyncio
async def test_stripe_webhook_applies_signed_events(client, session_factory, clock) -> None:
    user_id = await create_user(session_factory, now=clock(), tier="free")
    event = stripe_event(
        "customer.subscription.created",
        subscription_object(
            subscription_id="sub_api", customer="cus_api", price_id="price_starter_monthly", user_id=user_id
        ),
    )
    payload = encode_event(event)
    headers = {
        "Stripe-Signature": stripe_signature_header(payload, WEBHOOK_SECRET),
        "Content-Type": "application/json",
    }

    first = await client.post("/v1/webhooks/stripe", content=payload, headers=headers)
    second = await client.post("/v1/webhooks/stripe", content=payload, headers=headers)

    assert first.status_code == 200
    assert first.json()["data"] == {"received": True, "event_id": event["id"], "status": "processed"}
    assert second.json()["data"]["status"] == "duplicate"
    assert (await get_user(session_factory, user_id)).tier == "starter"


@pytest.mark.asyncio
async def test_stripe_webhook_rejects_bad_signatures(client, session_factory, clock) -> None:
    user_id = await create_user(session_factory, now=clock(), tier="free")
    event = stripe_event(
        "customer.subscription.created",
        subscription_object(
            subscription_id="sub_forged", customer="cus_forged", price_id="price_pro_monthly", user_id=user_id
        ),
    )
    payload = encode_event(event)

    forged = await client.post(
        "/v1/webhooks/stripe",
        content=payload,
        headers={"Stripe-Signature": stripe_signature_header(payload, "whsec_wrong")},
    )
    unsigned = await client.post("/v1/webhooks/stripe", content=payload)

    assert forged.status_code == 400
    assert forged.json()["error"]["code"] == "WEBHOOK_SIGNATURE_INVALID"
    assert unsigned.status_code == 400
    assert (await get_user(session_factory, user_id)).tier == "free"


@pytest.mark.asyncio
async def test_stripe_webhook_failure_asks_for_redelivery(client, session_factory, clock) -> None:
    event = stripe_event(
        "customer.subscription.created",
        subscription_object(subscription_id="sub_orphan", customer="cus_orphan", price_id="price_pro_monthly"),
    )
    payload = encode_event(event)

    response = await client.post(
        "/v1/webhooks/stripe",
        content=payload,
        headers={"Stripe-Signature": stripe_signature_header(payload, WEBHOOK_SECRET)},
    )

    assert response.status_code == 500
    assert response.json()["error"]["code"] == "WEBHOOK_PROCESSING_FAILED"
