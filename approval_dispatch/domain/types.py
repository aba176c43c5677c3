"""
Dispatch value objects.

``QueuedEvent`` is the unit of work that moves from the in-process buffer
to the durable queue (or the local fallback log) and on to a consumer.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any


class DeliveryStatus(str, Enum):
    READY = "ready"
    IN_FLIGHT = "in_flight"
    DELIVERED = "delivered"
    DEAD_LETTERED = "dead_lettered"


@dataclass(frozen=True)
class DispatcherSettings:
    backoff_base_seconds: float = 2.0
    backoff_cap_seconds: float = 300.0
    max_attempts: int = 8
    poll_interval_seconds: float = 1.0
    sweep_interval_seconds: float = 30.0
    batch_size: int = 50
    lease_seconds: float = 60.0
    fallback_log_path: str = "approval-dispatch-fallback.jsonl"
    buffer_capacity: int = 10000

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.buffer_capacity < 1:
            raise ValueError("buffer_capacity must be >= 1")
        if self.backoff_base_seconds <= 0 or self.backoff_cap_seconds < self.backoff_base_seconds:
            raise ValueError("backoff requires 0 < base <= cap")


@dataclass(frozen=True)
class QueuedEvent:
    """One event on its way to a consumer.

    ``attempt`` counts failed deliveries so far.  ``sequence`` is the
    producer's enqueue counter and breaks ties between events created in
    the same instant, which keeps per-request order best-effort.
    """

    event_id: str
    topic: str
    payload: dict[str, Any]
    created_at: datetime
    not_before: datetime
    ordering_key: str | None = None
    priority: int = 2
    sequence: int = 0
    attempt: int = 0
    last_error: str | None = None

    def with_attempt(self, attempt: int, not_before: datetime, error: str | None) -> QueuedEvent:
        return replace(self, attempt=attempt, not_before=not_before, last_error=error)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "topic": self.topic,
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
            "not_before": self.not_before.isoformat(),
            "ordering_key": self.ordering_key,
            "priority": self.priority,
            "sequence": self.sequence,
            "attempt": self.attempt,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueuedEvent:
        return cls(
            event_id=data["event_id"],
            topic=data["topic"],
            payload=dict(data.get("payload") or {}),
            created_at=datetime.fromisoformat(data["created_at"]),
            not_before=datetime.fromisoformat(data["not_before"]),
            ordering_key=data.get("ordering_key"),
            priority=int(data.get("priority", 2)),
            sequence=int(data.get("sequence", 0)),
            attempt=int(data.get("attempt", 0)),
            last_error=data.get("last_error"),
        )


@dataclass(frozen=True)
class DeadLetter:
    event: QueuedEvent
    attempts: int
    last_error: str
    dead_lettered_at: datetime
    requeued_at: datetime | None = None


@dataclass
class DeliveryReport:
    """Outcome counters for one worker poll."""

    claimed: int = 0
    delivered: int = 0
    retried: int = 0
    dead_lettered: int = 0
    failures: list[str] = field(default_factory=list)
