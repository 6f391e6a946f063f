from __future__ import annotations

import json

import httpx
import pytest

from tokenguard.services.notifications import (
    EVENT_COST_WARNING,
    LoggingNotificationSink,
    WebhookNotificationSink,
    build_notification_signature,
    build_notification_sink,
    notify_safely,
)
from tokenguard.services.resilience import RetryPolicy


_NO_BACKOFF = RetryPolicy(timeout_ms=1000, max_attempts=3, backoff_ms=0)


def _sink(settings, handler) -> WebhookNotificationSink:
    return WebhookNotificationSink(
        url="https://hooks.example.com/tokenguard",
        secret="notify-secret",
        retry_policy=_NO_BACKOFF,
        transport=httpx.MockTransport(handler),
        settings=settings,
    )


@pytest.mark.asyncio
async def test_webhook_sink_signs_the_exact_body(settings) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(202)

    result = await _sink(settings, handler).send(EVENT_COST_WARNING, {"user_id": "u-1", "cost_ratio": "0.35"})

    assert result.sent
    assert result.status_code == 202
    request = seen[0]
    body = request.content
    assert request.headers["X-TokenGuard-Signature"] == build_notification_signature("notify-secret", body)
    assert request.headers["X-TokenGuard-Event"] == EVENT_COST_WARNING
    envelope = json.loads(body)
    assert envelope["type"] == EVENT_COST_WARNING
    assert envelope["data"] == {"user_id": "u-1", "cost_ratio": "0.35"}


@pytest.mark.asyncio
async def test_webhook_sink_retries_server_errors(settings) -> None:
    statuses = iter([503, 502, 200])

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(next(statuses))

    result = await _sink(settings, handler).send(EVENT_COST_WARNING, {"user_id": "u-1"})

    assert result.sent
    assert result.status_code == 200


@pytest.mark.asyncio
async def test_webhook_sink_reports_failures_without_raising(settings) -> None:
    calls = 0

    def rejected(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(400)

    def unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    rejected_result = await _sink(settings, rejected).send(EVENT_COST_WARNING, {})
    assert not rejected_result.sent
    assert rejected_result.status_code == 400
    assert calls == 1

    unreachable_result = await _sink(settings, unreachable).send(EVENT_COST_WARNING, {})
    assert not unreachable_result.sent
    assert unreachable_result.status_code is None


@pytest.mark.asyncio
async def test_notify_safely_swallows_sink_errors() -> None:
    class BrokenSink:
        async def send(self, event_type, payload):
            raise RuntimeError("sink exploded")

    await notify_safely(BrokenSink(), EVENT_COST_WARNING, {"user_id": "u-1"})


def test_sink_selection_follows_settings(settings) -> None:
    assert isinstance(build_notification_sink(settings), LoggingNotificationSink)
    configured = settings.model_copy(
        update={
            "notification_webhook_url": "https://hooks.example.com/tokenguard",
            "notification_webhook_secret": "notify-secret",
        }
    )
    assert isinstance(build_notification_sink(configured), WebhookNotificationSink)
