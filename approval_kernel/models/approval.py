"""
Module: approval_kernel.models.approval
Responsibility: ORM persistence for approval requests, their approver slots,
    decisions and transition history.

Architecture position: Kernel > Models.  May import from db/base.py,
    domain/ and exceptions only.

Invariants enforced:
    - Optimistic concurrency: ``version`` is the mapper's version_id_col
      (application-managed).  Every UPDATE carries ``WHERE version = :old``;
      a lost race surfaces as StaleDataError.
    - Duplicate open requests: ``open_fingerprint`` is UNIQUE and only set
      while the request is open.  It is cleared on terminal transition so a
      new request with the same fingerprint may be created afterwards.
    - Decision uniqueness: UNIQUE(request_id, approver_id) means one decision
      per approver slot.  UNIQUE(request_id, sequence) totally orders the log.
    - Decisions and history rows are append-only (ORM listeners below).

Failure modes:
    - IntegrityError on a duplicate open fingerprint or a concurrent
      duplicate decision insert.
    - StaleDataError on a version mismatch.
    - ImmutabilityViolationError on decision/history UPDATE or DELETE.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from approval_kernel.db.base import Base, UUIDString
from approval_kernel.exceptions import ImmutabilityViolationError

if TYPE_CHECKING:
    from approval_kernel.domain.approval import (
        ApprovalRequest,
        ApproverSpec,
        DecisionRecord,
        HistoryEntry,
    )


class ApprovalRequestModel(Base):
    """Persistent approval request (the aggregate root).

    Contract:
        Mutated only through ``ApprovalRequestStore.mutate`` so that every
        write bumps ``version`` under an optimistic check.

    Guarantees:
        - Never physically deleted.
        - ``approvers`` loads only slots; inactive slots stay for audit.
    """

    __tablename__ = "approval_requests"

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'in_analysis', 'approved', 'rejected', "
            "'cancelled', 'expired', 'escalated')",
            name="ck_approval_requests_valid_status",
        ),
        CheckConstraint(
            "priority BETWEEN 1 AND 5",
            name="ck_approval_requests_priority",
        ),
        # Escalation scan: open requests by deadline
        Index("ix_approval_requests_status_deadline", "status", "deadline_at"),
        Index("ix_approval_requests_requester", "requester_id", "action_type"),
        Index("ix_approval_requests_created", "created_at"),
    )

    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    target_entity: Mapped[str] = mapped_column(String(100), default="", nullable=False)
    target_entity_id: Mapped[str] = mapped_column(String(100), default="", nullable=False)
    requester_id: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    strategy: Mapped[str] = mapped_column(String(20), nullable=False)
    custom_strategy: Mapped[str | None] = mapped_column(String(100), nullable=True)
    priority: Mapped[int] = mapped_column(nullable=False, default=2)
    value: Mapped[Decimal | None] = mapped_column(nullable=True)
    context_data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    open_fingerprint: Mapped[str | None] = mapped_column(
        String(64), nullable=True, unique=True,
    )
    deadline_at: Mapped[datetime] = mapped_column(nullable=False)
    original_deadline_at: Mapped[datetime] = mapped_column(nullable=False)
    escalation_count: Mapped[int] = mapped_column(nullable=False, default=0)
    reminded_for_deadline: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    updated_at: Mapped[datetime] = mapped_column(nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    version: Mapped[int] = mapped_column(nullable=False, default=1)

    __mapper_args__ = {
        "version_id_col": version,
        "version_id_generator": False,
    }

    approvers: Mapped[list["ApprovalApproverModel"]] = relationship(
        "ApprovalApproverModel",
        back_populates="request",
        order_by=lambda: (
            ApprovalApproverModel.approval_order,
            ApprovalApproverModel.position,
        ),
        lazy="selectin",
    )
    decisions: Mapped[list["ApprovalDecisionModel"]] = relationship(
        "ApprovalDecisionModel",
        back_populates="request",
        order_by="ApprovalDecisionModel.sequence",
        lazy="selectin",
    )
    history: Mapped[list["ApprovalHistoryModel"]] = relationship(
        "ApprovalHistoryModel",
        back_populates="request",
        order_by="ApprovalHistoryModel.sequence",
        lazy="select",
    )

    def __repr__(self) -> str:
        return (
            f"<ApprovalRequest {self.id} {self.action_type} "
            f"status={self.status} v{self.version}>"
        )

    @property
    def active_approvers(self) -> list["ApprovalApproverModel"]:
        """Active slots by (order, insertion position).

        Sorted here as well because slots appended in the current unit of
        work are not re-ordered by the relationship loader.
        """
        return sorted(
            (a for a in self.approvers if a.active),
            key=lambda a: (a.approval_order, a.position),
        )

    def to_dto(self) -> ApprovalRequest:
        """Convert ORM model to frozen domain DTO."""
        from approval_kernel.domain.approval import (
            ActionType,
            ApprovalRequest as ApprovalRequestDTO,
            ApprovalStatus,
            ApprovalStrategy,
            Priority,
        )

        return ApprovalRequestDTO(
            request_id=self.id,
            action_type=ActionType(self.action_type),
            requester_id=self.requester_id,
            status=ApprovalStatus(self.status),
            strategy=ApprovalStrategy(self.strategy),
            approvers=tuple(a.to_dto() for a in self.active_approvers),
            deadline_at=self.deadline_at,
            target_entity=self.target_entity,
            target_entity_id=self.target_entity_id,
            priority=Priority(self.priority),
            value=self.value,
            custom_strategy=self.custom_strategy,
            context_data=dict(self.context_data or {}),
            fingerprint=self.fingerprint,
            decisions=tuple(d.to_dto() for d in self.decisions),
            escalation_count=self.escalation_count,
            original_deadline_at=self.original_deadline_at,
            version=self.version,
            created_at=self.created_at,
            updated_at=self.updated_at,
            resolved_at=self.resolved_at,
        )


class ApprovalApproverModel(Base):
    """One approver slot on a request.

    Slots are deactivated, never deleted, when escalation or delegation
    replaces them.
    """

    __tablename__ = "approval_approvers"

    __table_args__ = (
        Index("ix_approval_approvers_request", "request_id", "active"),
        Index("ix_approval_approvers_approver", "approver_id", "active"),
    )

    request_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("approval_requests.id"), nullable=False,
    )
    approver_id: Mapped[str] = mapped_column(String(100), nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False, default="user")
    weight: Mapped[int] = mapped_column(nullable=False, default=1)
    approval_order: Mapped[int] = mapped_column(nullable=False, default=1)
    position: Mapped[int] = mapped_column(nullable=False, default=0)
    max_value: Mapped[Decimal | None] = mapped_column(nullable=True)
    can_delegate: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    channels: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    delegated_from: Mapped[str | None] = mapped_column(String(100), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    added_at: Mapped[datetime] = mapped_column(nullable=False)
    deactivated_at: Mapped[datetime | None] = mapped_column(nullable=True)

    request: Mapped["ApprovalRequestModel"] = relationship(
        "ApprovalRequestModel", back_populates="approvers",
    )

    def to_dto(self) -> ApproverSpec:
        from approval_kernel.domain.approval import ApproverKind, ApproverSpec

        return ApproverSpec(
            approver_id=self.approver_id,
            kind=ApproverKind(self.kind),
            weight=self.weight,
            order=self.approval_order,
            max_value=self.max_value,
            can_delegate=self.can_delegate,
            channels=tuple(self.channels or ()),
            delegated_from=self.delegated_from,
        )

    @classmethod
    def from_dto(
        cls, dto: ApproverSpec, *, position: int, added_at: datetime,
    ) -> ApprovalApproverModel:
        return cls(
            approver_id=dto.approver_id,
            kind=dto.kind.value,
            weight=dto.weight,
            approval_order=dto.order,
            position=position,
            max_value=dto.max_value,
            can_delegate=dto.can_delegate,
            channels=list(dto.channels),
            delegated_from=dto.delegated_from,
            active=True,
            added_at=added_at,
        )


class ApprovalDecisionModel(Base):
    """Persistent approval decision record. Append-only.

    Guarantees:
        - UNIQUE(request_id, approver_id): one decision per approver slot.
        - UNIQUE(request_id, sequence): a concurrent append collides.
    """

    __tablename__ = "approval_decisions"

    __table_args__ = (
        UniqueConstraint("request_id", "approver_id", name="uq_approval_decisions_slot"),
        UniqueConstraint("request_id", "sequence", name="uq_approval_decisions_sequence"),
        CheckConstraint(
            "outcome IN ('approve', 'reject')",
            name="ck_approval_decisions_outcome",
        ),
    )

    request_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("approval_requests.id"), nullable=False,
    )
    sequence: Mapped[int] = mapped_column(nullable=False)
    approver_id: Mapped[str] = mapped_column(String(100), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(100), nullable=False)
    outcome: Mapped[str] = mapped_column(String(10), nullable=False)
    comment: Mapped[str] = mapped_column(Text, default="", nullable=False)
    decided_at: Mapped[datetime] = mapped_column(nullable=False)

    request: Mapped["ApprovalRequestModel"] = relationship(
        "ApprovalRequestModel", back_populates="decisions",
    )

    def __repr__(self) -> str:
        return (
            f"<ApprovalDecision {self.id} request={self.request_id} "
            f"slot={self.approver_id} outcome={self.outcome}>"
        )

    def to_dto(self) -> DecisionRecord:
        from approval_kernel.domain.approval import DecisionOutcome, DecisionRecord

        return DecisionRecord(
            decision_id=self.id,
            request_id=self.request_id,
            sequence=self.sequence,
            approver_id=self.approver_id,
            actor_id=self.actor_id,
            outcome=DecisionOutcome(self.outcome),
            comment=self.comment,
            decided_at=self.decided_at,
        )


class ApprovalHistoryModel(Base):
    """One row per transition of a request. Append-only; backs getHistory."""

    __tablename__ = "approval_history"

    __table_args__ = (
        UniqueConstraint("request_id", "sequence", name="uq_approval_history_sequence"),
    )

    request_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("approval_requests.id"), nullable=False,
    )
    sequence: Mapped[int] = mapped_column(nullable=False)
    previous_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    new_status: Mapped[str] = mapped_column(String(20), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(100), nullable=False)
    reason: Mapped[str] = mapped_column(String(50), nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    occurred_at: Mapped[datetime] = mapped_column(nullable=False)

    request: Mapped["ApprovalRequestModel"] = relationship(
        "ApprovalRequestModel", back_populates="history",
    )

    def to_dto(self) -> HistoryEntry:
        from approval_kernel.domain.approval import ApprovalStatus, HistoryEntry

        return HistoryEntry(
            sequence=self.sequence,
            request_id=self.request_id,
            previous_status=(
                ApprovalStatus(self.previous_status) if self.previous_status else None
            ),
            new_status=ApprovalStatus(self.new_status),
            actor_id=self.actor_id,
            reason=self.reason,
            occurred_at=self.occurred_at,
            details=dict(self.details or {}),
        )


# =============================================================================
# ORM-Level Immutability (Append-Only)
# =============================================================================


@event.listens_for(ApprovalDecisionModel, "before_update")
def prevent_decision_update(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="ApprovalDecision",
        entity_id=str(target.id),
        reason="Approval decisions are immutable -- cannot modify",
    )


@event.listens_for(ApprovalDecisionModel, "before_delete")
def prevent_decision_delete(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="ApprovalDecision",
        entity_id=str(target.id),
        reason="Approval decisions are immutable -- cannot delete",
    )


@event.listens_for(ApprovalHistoryModel, "before_update")
def prevent_history_update(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="ApprovalHistory",
        entity_id=str(target.id),
        reason="Approval history is append-only -- cannot modify",
    )


@event.listens_for(ApprovalHistoryModel, "before_delete")
def prevent_history_delete(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="ApprovalHistory",
        entity_id=str(target.id),
        reason="Approval history is append-only -- cannot delete",
    )
