"""
NotificationConsumer -- turns approval events into per-recipient messages.

Recipients in the payload may be users, roles or units; they are expanded
through the ApproverDirectory at delivery time, so role membership changes
between enqueue and delivery are honoured.  Each recipient is notified on
every channel in their profile (``in_app`` when they have no profile).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from approval_kernel.domain.directory import ApproverDirectory
from approval_kernel.logging_config import get_logger
from approval_dispatch.consumers.base import SeenEvents
from approval_dispatch.domain.types import QueuedEvent

logger = get_logger("dispatch.notification")

DEFAULT_CHANNELS: tuple[str, ...] = ("in_app",)


@dataclass(frozen=True)
class Notification:
    event_id: str
    topic: str
    recipient_id: str
    channel: str
    subject: str
    body: str
    request_id: str | None = None


class Notifier(Protocol):
    def send(self, notification: Notification) -> None: ...


class LoggingNotifier:
    """Default notifier: the structured log line is the notification."""

    def send(self, notification: Notification) -> None:
        logger.info(
            "notification_sent",
            extra={
                "event_id": notification.event_id,
                "topic": notification.topic,
                "recipient_id": notification.recipient_id,
                "channel": notification.channel,
                "request_id": notification.request_id,
            },
        )


class NotificationConsumer:
    """Fans an event out to recipients and channels.

    Idempotent per (event_id, recipient, channel): a redelivered event only
    sends what failed the first time.
    """

    def __init__(
        self,
        notifier: Notifier,
        directory: ApproverDirectory,
        memory_size: int = 100_000,
    ):
        self._notifier = notifier
        self._directory = directory
        self._sent = SeenEvents(memory_size)

    def recipients_for(self, event: QueuedEvent) -> list[tuple[str, str]]:
        """(recipient_id, channel) pairs for an event, de-duplicated in order."""
        pairs: dict[tuple[str, str], None] = {}
        for approver_id in event.payload.get("recipients") or ():
            for person in self._directory.resolve_recipients(approver_id):
                profile = self._directory.get_profile(person)
                channels = (profile.channels if profile is not None else ()) or DEFAULT_CHANNELS
                for channel in channels:
                    pairs.setdefault((person, channel), None)
        return list(pairs)

    def handle(self, event: QueuedEvent) -> None:
        payload = event.payload
        subject = f"[{payload.get('action_type', 'approval')}] {event.topic}"
        body = payload.get("summary") or event.topic
        for recipient_id, channel in self.recipients_for(event):
            key = (event.event_id, recipient_id, channel)
            if key in self._sent:
                continue
            self._notifier.send(
                Notification(
                    event_id=event.event_id,
                    topic=event.topic,
                    recipient_id=recipient_id,
                    channel=channel,
                    subject=subject,
                    body=body,
                    request_id=payload.get("request_id"),
                )
            )
            self._sent.add(key)
