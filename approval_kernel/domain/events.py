"""
Outbound event topics and the publisher seam between the kernel and the
dispatch layer.

The kernel only knows ``EventPublisher``; ``approval_dispatch`` provides
the buffered, durable implementation.  ``enqueue`` must never block on or
raise for downstream I/O.
"""

from __future__ import annotations

from typing import Any, Protocol

from approval_kernel.domain.approval import Priority

REQUEST_CREATED = "request.created"
DECISION_RECORDED = "decision.recorded"
DECISION_APPROVED = "decision.approved"
DECISION_REJECTED = "decision.rejected"
APPROVAL_DELEGATED = "approval.delegated"
INFO_REQUESTED = "info.requested"
ESCALATION_TRIGGERED = "escalation.triggered"
REQUEST_CANCELLED = "request.cancelled"
REQUEST_EXPIRED = "request.expired"
DEADLINE_APPROACHING = "deadline.approaching"
AUDIT_RECORDED = "audit.recorded"

NOTIFICATION_TOPICS: frozenset[str] = frozenset({
    REQUEST_CREATED,
    DECISION_RECORDED,
    DECISION_APPROVED,
    DECISION_REJECTED,
    APPROVAL_DELEGATED,
    INFO_REQUESTED,
    ESCALATION_TRIGGERED,
    REQUEST_CANCELLED,
    REQUEST_EXPIRED,
    DEADLINE_APPROACHING,
})

ALL_TOPICS: frozenset[str] = NOTIFICATION_TOPICS | {AUDIT_RECORDED}


class EventPublisher(Protocol):
    def enqueue(
        self,
        topic: str,
        payload: dict[str, Any],
        *,
        ordering_key: str | None = None,
        priority: Priority = Priority.NORMAL,
    ) -> str:
        """Accept an event for eventual delivery; returns its event id."""
        ...
