"""
Module: approval_kernel.models.escalation
Responsibility: ORM persistence for escalation events.

Architecture position: Kernel > Models.

Invariants enforced:
    - Append-only: one row per escalation occurrence, never updated or
      deleted (ORM listeners below).
    - UNIQUE(request_id, level): a request cannot record the same escalation
      level twice, which backs the single-escalation-per-breach guarantee.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, String, UniqueConstraint, event
from sqlalchemy.orm import Mapped, mapped_column

from approval_kernel.db.base import Base, UUIDString
from approval_kernel.exceptions import ImmutabilityViolationError

if TYPE_CHECKING:
    from approval_kernel.domain.approval import EscalationEvent


class EscalationEventModel(Base):
    __tablename__ = "escalation_events"

    __table_args__ = (
        UniqueConstraint("request_id", "level", name="uq_escalation_events_level"),
    )

    request_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("approval_requests.id"), nullable=False, index=True,
    )
    level: Mapped[int] = mapped_column(nullable=False)
    triggered_at: Mapped[datetime] = mapped_column(nullable=False)
    reason: Mapped[str] = mapped_column(String(20), nullable=False)
    strategy_used: Mapped[str] = mapped_column(String(20), nullable=False)
    previous_approvers: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    new_approvers: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    actor_id: Mapped[str] = mapped_column(String(100), nullable=False)
    previous_deadline_at: Mapped[datetime | None] = mapped_column(nullable=True)
    new_deadline_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def to_dto(self) -> EscalationEvent:
        from approval_kernel.domain.approval import (
            EscalationEvent as EscalationEventDTO,
            EscalationReason,
            EscalationStrategy,
        )

        return EscalationEventDTO(
            event_id=self.id,
            request_id=self.request_id,
            level=self.level,
            triggered_at=self.triggered_at,
            reason=EscalationReason(self.reason),
            strategy_used=EscalationStrategy(self.strategy_used),
            previous_approvers=tuple(self.previous_approvers or ()),
            new_approvers=tuple(self.new_approvers or ()),
            actor_id=self.actor_id,
            previous_deadline_at=self.previous_deadline_at,
            new_deadline_at=self.new_deadline_at,
        )

    @classmethod
    def from_dto(cls, dto: EscalationEvent) -> EscalationEventModel:
        return cls(
            id=dto.event_id,
            request_id=dto.request_id,
            level=dto.level,
            triggered_at=dto.triggered_at,
            reason=dto.reason.value,
            strategy_used=dto.strategy_used.value,
            previous_approvers=list(dto.previous_approvers),
            new_approvers=list(dto.new_approvers),
            actor_id=dto.actor_id,
            previous_deadline_at=dto.previous_deadline_at,
            new_deadline_at=dto.new_deadline_at,
        )


@event.listens_for(EscalationEventModel, "before_update")
def prevent_escalation_update(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="EscalationEvent",
        entity_id=str(target.id),
        reason="Escalation events are append-only -- cannot modify",
    )


@event.listens_for(EscalationEventModel, "before_delete")
def prevent_escalation_delete(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="EscalationEvent",
        entity_id=str(target.id),
        reason="Escalation events are append-only -- cannot delete",
    )
