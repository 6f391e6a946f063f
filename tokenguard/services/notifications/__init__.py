from tokenguard.services.notifications.sinks import (
    EVENT_AUDIT_REPORT,
    EVENT_COST_CRITICAL,
    EVENT_COST_WARNING,
    EVENT_LOW_BALANCE,
    EVENT_WEBHOOK_FAILED,
    DeliveryResult,
    InMemoryNotificationSink,
    LoggingNotificationSink,
    NotificationSink,
    WebhookNotificationSink,
    build_notification_signature,
    build_notification_sink,
    notify_safely,
)

__all__ = [
    "EVENT_AUDIT_REPORT",
    "EVENT_COST_CRITICAL",
    "EVENT_COST_WARNING",
    "EVENT_LOW_BALANCE",
    "EVENT_WEBHOOK_FAILED",
    "DeliveryResult",
    "InMemoryNotificationSink",
    "LoggingNotificationSink",
    "NotificationSink",
    "WebhookNotificationSink",
    "build_notification_signature",
    "build_notification_sink",
    "notify_safely",
]
