"""
Module: approval_dispatch.models.queue
Responsibility: ORM persistence for the durable event queue and the
    dead-letter set.

Architecture position: Dispatch > Models.  Shares the kernel's declarative
    base (approval_kernel.db.base) so one ``create_all`` builds every table.

Invariants enforced:
    - ``event_id`` is UNIQUE: publishing the same event twice (fallback
      sweep after a partial failure) never creates a second queue row.
    - ``claim_count`` is bumped by a conditional UPDATE when a worker claims
      a row; a lost claim race updates zero rows.
    - Dead letters are never deleted; a requeue only stamps ``requeued_at``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, CheckConstraint, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from approval_kernel.db.base import Base
from approval_dispatch.domain.types import DeadLetter, QueuedEvent


class QueuedEventModel(Base):
    __tablename__ = "queued_events"

    __table_args__ = (
        CheckConstraint(
            "status IN ('ready', 'in_flight', 'delivered', 'dead_lettered')",
            name="ck_queued_events_status",
        ),
        # Worker claim scan
        Index("ix_queued_events_due", "status", "not_before"),
        Index("ix_queued_events_ordering", "ordering_key", "sequence"),
    )

    event_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    topic: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    ordering_key: Mapped[str | None] = mapped_column(String(100), nullable=True)
    priority: Mapped[int] = mapped_column(nullable=False, default=2)
    sequence: Mapped[int] = mapped_column(nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="ready")
    attempt: Mapped[int] = mapped_column(nullable=False, default=0)
    claim_count: Mapped[int] = mapped_column(nullable=False, default=0)
    not_before: Mapped[datetime] = mapped_column(nullable=False)
    lease_expires_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    delivered_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return f"<QueuedEvent {self.event_id} {self.topic} {self.status} attempt={self.attempt}>"

    def to_dto(self) -> QueuedEvent:
        return QueuedEvent(
            event_id=self.event_id,
            topic=self.topic,
            payload=dict(self.payload or {}),
            created_at=self.created_at,
            not_before=self.not_before,
            ordering_key=self.ordering_key,
            priority=self.priority,
            sequence=self.sequence,
            attempt=self.attempt,
            last_error=self.last_error,
        )

    @classmethod
    def from_dto(cls, dto: QueuedEvent) -> QueuedEventModel:
        return cls(
            event_id=dto.event_id,
            topic=dto.topic,
            payload=dict(dto.payload),
            ordering_key=dto.ordering_key,
            priority=dto.priority,
            sequence=dto.sequence,
            status="ready",
            attempt=dto.attempt,
            claim_count=0,
            not_before=dto.not_before,
            last_error=dto.last_error,
            created_at=dto.created_at,
        )


class DeadLetterModel(Base):
    """A permanently failed event, kept for inspection and manual replay."""

    __tablename__ = "dead_letters"

    event_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    topic: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    ordering_key: Mapped[str | None] = mapped_column(String(100), nullable=True)
    priority: Mapped[int] = mapped_column(nullable=False, default=2)
    sequence: Mapped[int] = mapped_column(nullable=False, default=0)
    attempts: Mapped[int] = mapped_column(nullable=False)
    last_error: Mapped[str] = mapped_column(Text, nullable=False, default="")
    event_created_at: Mapped[datetime] = mapped_column(nullable=False)
    dead_lettered_at: Mapped[datetime] = mapped_column(nullable=False)
    requeued_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def to_dto(self) -> DeadLetter:
        return DeadLetter(
            event=QueuedEvent(
                event_id=self.event_id,
                topic=self.topic,
                payload=dict(self.payload or {}),
                created_at=self.event_created_at,
                not_before=self.dead_lettered_at,
                ordering_key=self.ordering_key,
                priority=self.priority,
                sequence=self.sequence,
                attempt=self.attempts,
                last_error=self.last_error,
            ),
            attempts=self.attempts,
            last_error=self.last_error,
            dead_lettered_at=self.dead_lettered_at,
            requeued_at=self.requeued_at,
        )
