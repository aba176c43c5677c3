"""
Module: approval_kernel.selectors.approval_selector
Responsibility: Read-only queries over approval requests: filtered listing,
    single lookup, full history (transitions, decisions, escalations) and
    aggregate metrics.
Architecture position: Kernel > Selectors.  Extends BaseSelector.

Invariants enforced:
    - Read-only; returns frozen DTOs.
    - Listing order is deterministic: priority desc, created_at desc, id.
    - History entries, decisions and escalation events are returned in
      their append order (sequence / level).

Failure modes:
    - NotFoundError from get_by_id / get_history for an unknown id.
    - ValueError for an inverted metrics window or a negative page size.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy import select

from approval_kernel.domain.approval import (
    ApprovalMetrics,
    ApprovalRequest,
    ApprovalStatus,
    Priority,
    RequestHistory,
)
from approval_kernel.exceptions import NotFoundError
from approval_kernel.models.approval import (
    ApprovalApproverModel,
    ApprovalHistoryModel,
    ApprovalRequestModel,
)
from approval_kernel.models.escalation import EscalationEventModel
from approval_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class RequestFilter:
    """Criteria for ``list_by_filter``.  Unset fields do not constrain."""

    statuses: tuple[ApprovalStatus, ...] = ()
    action_types: tuple[str, ...] = ()
    requester_id: str | None = None
    approver_id: str | None = None  # has an active slot on the request
    target_entity: str | None = None
    target_entity_id: str | None = None
    min_priority: Priority | None = None
    created_from: datetime | None = None
    created_until: datetime | None = None
    limit: int = 100
    offset: int = 0


class ApprovalSelector(BaseSelector[ApprovalRequestModel]):
    """Query side of the approval engine."""

    def get_by_id(self, request_id: UUID) -> ApprovalRequest:
        return self._load(request_id).to_dto()

    def list_by_filter(self, criteria: RequestFilter | None = None) -> list[ApprovalRequest]:
        criteria = criteria or RequestFilter()
        if criteria.limit < 0 or criteria.offset < 0:
            raise ValueError("limit and offset must be non-negative")

        stmt = select(ApprovalRequestModel)
        if criteria.statuses:
            stmt = stmt.where(
                ApprovalRequestModel.status.in_([ApprovalStatus(s).value for s in criteria.statuses])
            )
        if criteria.action_types:
            stmt = stmt.where(ApprovalRequestModel.action_type.in_(criteria.action_types))
        if criteria.requester_id is not None:
            stmt = stmt.where(ApprovalRequestModel.requester_id == criteria.requester_id)
        if criteria.approver_id is not None:
            stmt = stmt.where(
                ApprovalRequestModel.approvers.any(
                    (ApprovalApproverModel.approver_id == criteria.approver_id)
                    & (ApprovalApproverModel.active.is_(True))
                )
            )
        if criteria.target_entity is not None:
            stmt = stmt.where(ApprovalRequestModel.target_entity == criteria.target_entity)
        if criteria.target_entity_id is not None:
            stmt = stmt.where(ApprovalRequestModel.target_entity_id == criteria.target_entity_id)
        if criteria.min_priority is not None:
            stmt = stmt.where(ApprovalRequestModel.priority >= int(criteria.min_priority))
        if criteria.created_from is not None:
            stmt = stmt.where(ApprovalRequestModel.created_at >= criteria.created_from)
        if criteria.created_until is not None:
            stmt = stmt.where(ApprovalRequestModel.created_at < criteria.created_until)

        stmt = (
            stmt.order_by(
                ApprovalRequestModel.priority.desc(),
                ApprovalRequestModel.created_at.desc(),
                ApprovalRequestModel.id,
            )
            .limit(criteria.limit)
            .offset(criteria.offset)
        )
        return [m.to_dto() for m in self.session.scalars(stmt)]

    def get_history(self, request_id: UUID) -> RequestHistory:
        model = self._load(request_id)
        entries = self.session.scalars(
            select(ApprovalHistoryModel)
            .where(ApprovalHistoryModel.request_id == model.id)
            .order_by(ApprovalHistoryModel.sequence)
        )
        escalations = self.session.scalars(
            select(EscalationEventModel)
            .where(EscalationEventModel.request_id == model.id)
            .order_by(EscalationEventModel.level)
        )
        request = model.to_dto()
        return RequestHistory(
            request=request,
            entries=tuple(e.to_dto() for e in entries),
            decisions=request.decisions,
            escalations=tuple(e.to_dto() for e in escalations),
        )

    def metrics(self, since: datetime, until: datetime) -> ApprovalMetrics:
        """Aggregates over requests created in ``[since, until)``.

        ``approval_rate`` is approved / (approved + rejected); an SLA breach
        is a request resolved after its original deadline, or still open
        past it at ``until``.
        """
        if until <= since:
            raise ValueError("metrics window must have until > since")

        rows = list(
            self.session.scalars(
                select(ApprovalRequestModel).where(
                    ApprovalRequestModel.created_at >= since,
                    ApprovalRequestModel.created_at < until,
                )
            )
        )

        by_status = Counter(r.status for r in rows)
        by_action = Counter(r.action_type for r in rows)
        approved = by_status.get(ApprovalStatus.APPROVED.value, 0)
        rejected = by_status.get(ApprovalStatus.REJECTED.value, 0)
        decided = approved + rejected

        durations = [
            (r.resolved_at - r.created_at).total_seconds() / 3600.0
            for r in rows
            if r.resolved_at is not None
        ]
        breaches = sum(
            1
            for r in rows
            if (r.resolved_at or until) > r.original_deadline_at
        )

        return ApprovalMetrics(
            total=len(rows),
            by_status=dict(sorted(by_status.items())),
            by_action_type=dict(sorted(by_action.items())),
            approval_rate=(approved / decided) if decided else None,
            mean_hours_to_resolution=(sum(durations) / len(durations)) if durations else None,
            escalated_count=sum(1 for r in rows if r.escalation_count > 0),
            sla_breach_count=breaches,
        )

    def _load(self, request_id: UUID | str) -> ApprovalRequestModel:
        try:
            key = request_id if isinstance(request_id, UUID) else UUID(str(request_id))
        except ValueError:
            raise NotFoundError("ApprovalRequest", str(request_id)) from None
        model = self.session.get(ApprovalRequestModel, key)
        if model is None:
            raise NotFoundError("ApprovalRequest", str(request_id))
        return model
