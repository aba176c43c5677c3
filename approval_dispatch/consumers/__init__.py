"""Event consumers and the topic registry."""

from approval_dispatch.consumers.audit import AuditConsumer, AuditSink, LoggingAuditSink
from approval_dispatch.consumers.base import WILDCARD, ConsumerRegistry, EventConsumer, SeenEvents
from approval_dispatch.consumers.notification import (
    LoggingNotifier,
    Notification,
    NotificationConsumer,
    Notifier,
)

__all__ = [
    "AuditConsumer",
    "AuditSink",
    "ConsumerRegistry",
    "EventConsumer",
    "LoggingAuditSink",
    "LoggingNotifier",
    "Notification",
    "NotificationConsumer",
    "Notifier",
    "SeenEvents",
    "WILDCARD",
]
