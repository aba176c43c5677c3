"""AuditConsumer -- forwards ``audit.recorded`` payloads to an AuditSink."""

from __future__ import annotations

from typing import Any, Protocol

from approval_kernel.logging_config import get_logger
from approval_dispatch.consumers.base import SeenEvents
from approval_dispatch.domain.types import QueuedEvent

logger = get_logger("dispatch.audit")


class AuditSink(Protocol):
    def record(self, event_id: str, entry: dict[str, Any]) -> None: ...


class LoggingAuditSink:
    """Default sink: one structured log line per audit entry, nothing retained."""

    def record(self, event_id: str, entry: dict[str, Any]) -> None:
        logger.info(
            "audit_recorded",
            extra={
                "event_id": event_id,
                "request_id": entry.get("request_id"),
                "previous_status": entry.get("previous_status"),
                "new_status": entry.get("new_status"),
                "transition_reason": entry.get("transition_reason"),
                "audit_actor_id": entry.get("actor_id"),
            },
        )


class AuditConsumer:
    """Idempotent on ``event_id``."""

    def __init__(self, sink: AuditSink, memory_size: int = 100_000):
        self._sink = sink
        self._seen = SeenEvents(memory_size)

    def handle(self, event: QueuedEvent) -> None:
        key = (event.event_id,)
        if key in self._seen:
            return
        self._sink.record(event.event_id, dict(event.payload))
        self._seen.add(key)
