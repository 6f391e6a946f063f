from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import hashlib
import hmac
import json
import logging
from threading import Lock
from typing import Any, Protocol

import httpx

from tokenguard.core.config import Settings, get_settings
from tokenguard.services.resilience import RetryPolicy, retry_async


logger = logging.getLogger(__name__)

EVENT_LOW_BALANCE = "token.low_balance"
EVENT_COST_WARNING = "cost.warning"
EVENT_COST_CRITICAL = "cost.critical"
EVENT_AUDIT_REPORT = "cost.audit_report"
EVENT_WEBHOOK_FAILED = "webhook.failed"


@dataclass(frozen=True)
class DeliveryResult:
    sent: bool
    status_code: int | None
    message: str


class NotificationSink(Protocol):
    # Fire-and-forget contract; implementations must never raise into ledger flows.
    async def send(self, event_type: str, payload: dict[str, Any]) -> DeliveryResult: ...


class LoggingNotificationSink:
    # Default sink that only writes structured log lines.
    async def send(self, event_type: str, payload: dict[str, Any]) -> DeliveryResult:
        logger.info("notification event_type=%s payload=%s", event_type, _encode(payload).decode("utf-8"))
        return DeliveryResult(sent=True, status_code=None, message="logged")


class InMemoryNotificationSink:
    # Collects notifications for tests and local inspection.
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []
        self._lock = Lock()

    async def send(self, event_type: str, payload: dict[str, Any]) -> DeliveryResult:
        with self._lock:
            self.events.append((event_type, dict(payload)))
        return DeliveryResult(sent=True, status_code=None, message="recorded")

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        with self._lock:
            return [payload for kind, payload in self.events if kind == event_type]


def build_notification_signature(secret: str, payload: bytes) -> str:
    # Compute HMAC SHA256 signatures for outbound notification payloads.
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def _encode(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8")


class WebhookNotificationSink:
    def __init__(
        self,
        *,
        url: str,
        secret: str,
        timeout_ms: int | None = None,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._url = url
        self._secret = secret
        self._timeout_s = min(timeout_ms or settings.notification_timeout_ms, settings.ext_call_timeout_ms) / 1000.0
        self._retry_policy = retry_policy or RetryPolicy(
            timeout_ms=settings.ext_call_timeout_ms,
            max_attempts=settings.ext_retry_max_attempts,
            backoff_ms=settings.ext_retry_backoff_ms,
        )
        # Injectable transport keeps delivery testable without a network.
        self._transport = transport

    async def send(self, event_type: str, payload: dict[str, Any]) -> DeliveryResult:
        # Send signed payloads with a short timeout and a non-fatal failure mode.
        envelope = {
            "type": event_type,
            "sent_at": datetime.now(timezone.utc).isoformat(),
            "data": payload,
        }
        body = _encode(envelope)
        headers = {
            "Content-Type": "application/json",
            "X-TokenGuard-Signature": build_notification_signature(self._secret, body),
            "X-TokenGuard-Event": event_type,
        }

        async def _call() -> httpx.Response:
            async with httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport) as client:
                response = await client.post(self._url, content=body, headers=headers)
            if response.status_code >= 500:
                # Surface 5xx as an exception so the retry helper sees a retryable status.
                response.raise_for_status()
            return response

        def _retryable(exc: Exception) -> bool:
            if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError)):
                return True
            if isinstance(exc, httpx.HTTPStatusError):
                return exc.response.status_code >= 500
            return False

        try:
            response = await retry_async(_call, policy=self._retry_policy, retryable=_retryable)
        except Exception as exc:  # noqa: BLE001 - notification failures are non-fatal
            logger.warning("notification_send_failed event_type=%s", event_type, exc_info=exc)
            return DeliveryResult(sent=False, status_code=None, message=str(exc))

        if response.status_code >= 400:
            logger.warning(
                "notification_send_rejected event_type=%s status=%s", event_type, response.status_code
            )
            return DeliveryResult(
                sent=False,
                status_code=response.status_code,
                message=f"Webhook responded with status {response.status_code}",
            )
        return DeliveryResult(sent=True, status_code=response.status_code, message="delivered")


async def notify_safely(sink: NotificationSink, event_type: str, payload: dict[str, Any]) -> None:
    # Guard third-party sink implementations so a broken sink never affects the caller.
    try:
        await sink.send(event_type, payload)
    except Exception as exc:  # noqa: BLE001 - sinks are fire-and-forget
        logger.warning("notification_sink_error event_type=%s", event_type, exc_info=exc)


def build_notification_sink(settings: Settings | None = None) -> NotificationSink:
    # Pick the outbound webhook sink when configured, else log-only delivery.
    settings = settings or get_settings()
    if settings.notification_webhook_url and settings.notification_webhook_secret:
        return WebhookNotificationSink(
            url=settings.notification_webhook_url,
            secret=settings.notification_webhook_secret,
            settings=settings,
        )
    return LoggingNotificationSink()
