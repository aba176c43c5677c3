"""
Approval domain types (``approval_kernel.domain.approval``).

Responsibility
--------------
Pure value objects for the approval workflow engine.  Defines the request
lifecycle state machine, the closed enumerations (action types, strategies,
priorities, escalation reasons), and the immutable request, decision,
delegation, escalation and history records handed across layers.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``models/``, ``services/``, ``selectors/`` or outer layers.

Invariants enforced
-------------------
* ``APPROVAL_TRANSITIONS`` defines the only valid status transitions.
  Terminal states have no outgoing edges.
* ``OPEN_APPROVAL_STATUSES`` are the states in which a request must have
  at least one active approver and may be escalated.
* Delegations span at most ``MAX_DELEGATION_SPAN``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum, IntEnum
from typing import Any
from uuid import UUID


# =========================================================================
# Approval Status Lifecycle
# =========================================================================


class ApprovalStatus(str, Enum):
    """Approval request lifecycle states."""

    PENDING = "pending"
    IN_ANALYSIS = "in_analysis"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    ESCALATED = "escalated"


APPROVAL_TRANSITIONS: dict[ApprovalStatus, frozenset[ApprovalStatus]] = {
    ApprovalStatus.PENDING: frozenset({
        ApprovalStatus.IN_ANALYSIS,
        ApprovalStatus.APPROVED,
        ApprovalStatus.REJECTED,
        ApprovalStatus.CANCELLED,
        ApprovalStatus.ESCALATED,
        ApprovalStatus.EXPIRED,
    }),
    ApprovalStatus.IN_ANALYSIS: frozenset({
        ApprovalStatus.IN_ANALYSIS,
        ApprovalStatus.APPROVED,
        ApprovalStatus.REJECTED,
        ApprovalStatus.ESCALATED,
        ApprovalStatus.CANCELLED,
        ApprovalStatus.EXPIRED,
    }),
    ApprovalStatus.ESCALATED: frozenset({
        ApprovalStatus.ESCALATED,
        ApprovalStatus.IN_ANALYSIS,
        ApprovalStatus.APPROVED,
        ApprovalStatus.REJECTED,
        ApprovalStatus.CANCELLED,
        ApprovalStatus.EXPIRED,
    }),
    ApprovalStatus.APPROVED: frozenset(),
    ApprovalStatus.REJECTED: frozenset(),
    ApprovalStatus.CANCELLED: frozenset(),
    ApprovalStatus.EXPIRED: frozenset(),
}

TERMINAL_APPROVAL_STATUSES: frozenset[ApprovalStatus] = frozenset({
    ApprovalStatus.APPROVED,
    ApprovalStatus.REJECTED,
    ApprovalStatus.CANCELLED,
    ApprovalStatus.EXPIRED,
})

OPEN_APPROVAL_STATUSES: frozenset[ApprovalStatus] = frozenset({
    ApprovalStatus.PENDING,
    ApprovalStatus.IN_ANALYSIS,
    ApprovalStatus.ESCALATED,
})


def can_transition(current: ApprovalStatus, target: ApprovalStatus) -> bool:
    return target in APPROVAL_TRANSITIONS.get(current, frozenset())


# =========================================================================
# Closed enumerations
# =========================================================================


class ActionType(str, Enum):
    """Critical actions that may be gated behind an approval."""

    CANCEL_REQUEST = "cancel_request"
    SUSPEND_REQUEST = "suspend_request"
    REACTIVATE_REQUEST = "reactivate_request"
    SUSPEND_BENEFIT = "suspend_benefit"
    BLOCK_BENEFIT = "block_benefit"
    UNBLOCK_BENEFIT = "unblock_benefit"
    RELEASE_BENEFIT = "release_benefit"
    CANCEL_GRANT = "cancel_grant"
    DEACTIVATE_CITIZEN = "deactivate_citizen"
    REACTIVATE_CITIZEN = "reactivate_citizen"
    DELETE_CITIZEN = "delete_citizen"
    DEACTIVATE_USER = "deactivate_user"
    REACTIVATE_USER = "reactivate_user"
    CHANGE_PERMISSIONS = "change_permissions"
    DELETE_DOCUMENT = "delete_document"
    REPLACE_DOCUMENT = "replace_document"
    CHANGE_CRITICAL_CONFIG = "change_critical_config"
    BULK_REPROCESS = "bulk_reprocess"


class ApprovalStrategy(str, Enum):
    """How the decision log of a request is resolved."""

    UNANIMOUS = "unanimous"
    MAJORITY = "majority"
    ANY_ONE = "any_one"
    HIERARCHICAL = "hierarchical"
    CUSTOM = "custom"


class DecisionOutcome(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class Priority(IntEnum):
    """Ordinal priority: escalation tie-breaking and queue ordering."""

    LOW = 1
    NORMAL = 2
    HIGH = 3
    CRITICAL = 4
    EMERGENCY = 5


class ApproverKind(str, Enum):
    """What an approver reference points at."""

    USER = "user"
    ROLE = "role"
    UNIT = "unit"
    HIERARCHY_LEVEL = "hierarchy_level"


class EscalationReason(str, Enum):
    TIME = "time"
    PRIORITY = "priority"
    VALUE = "value"
    MANUAL = "manual"


class EscalationStrategy(str, Enum):
    """How an escalation changes the approver set."""

    HIERARCHICAL = "hierarchical"  # promote pending approvers to their superiors
    BY_PRIORITY = "by_priority"  # widen with the priority's escalation pool
    MANUAL = "manual"  # flag only
    REPLACE = "replace"  # substitute pending approvers with the pool


SYSTEM_ACTOR = "system"

MAX_DELEGATION_SPAN = timedelta(days=90)


# =========================================================================
# Approver and decision records
# =========================================================================


@dataclass(frozen=True)
class ApproverSpec:
    """One approver slot on a request.

    ``approver_id`` identifies the slot: decisions are keyed by it even
    when a delegate acts for the slot.  ``order`` only matters for the
    hierarchical strategy.
    """

    approver_id: str
    kind: ApproverKind = ApproverKind.USER
    weight: int = 1
    order: int = 1
    max_value: Decimal | None = None
    can_delegate: bool = True
    channels: tuple[str, ...] = ()
    delegated_from: str | None = None


@dataclass(frozen=True)
class DecisionRecord:
    """Record of a single approval decision. Immutable.

    ``approver_id`` is the slot decided for; ``actor_id`` is who acted
    (the slot holder or an active delegate).
    """

    decision_id: UUID
    request_id: UUID
    sequence: int
    approver_id: str
    actor_id: str
    outcome: DecisionOutcome
    comment: str = ""
    decided_at: datetime | None = None


@dataclass(frozen=True)
class ApprovalRequest:
    """Immutable snapshot of an approval request."""

    request_id: UUID
    action_type: ActionType
    requester_id: str
    status: ApprovalStatus
    strategy: ApprovalStrategy
    approvers: tuple[ApproverSpec, ...]
    deadline_at: datetime
    target_entity: str = ""
    target_entity_id: str = ""
    priority: Priority = Priority.NORMAL
    value: Decimal | None = None
    custom_strategy: str | None = None
    context_data: dict[str, Any] = field(default_factory=dict)
    fingerprint: str = ""
    decisions: tuple[DecisionRecord, ...] = ()
    escalation_count: int = 0
    original_deadline_at: datetime | None = None
    version: int = 1
    created_at: datetime | None = None
    updated_at: datetime | None = None
    resolved_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_APPROVAL_STATUSES

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_APPROVAL_STATUSES

    @property
    def approver_ids(self) -> tuple[str, ...]:
        return tuple(a.approver_id for a in self.approvers)

    def approver(self, approver_id: str) -> ApproverSpec | None:
        for spec in self.approvers:
            if spec.approver_id == approver_id:
                return spec
        return None

    def decision_for(self, approver_id: str) -> DecisionRecord | None:
        """Latest decision recorded for an approver slot."""
        latest = None
        for record in self.decisions:
            if record.approver_id == approver_id:
                latest = record
        return latest


@dataclass(frozen=True)
class Resolution:
    """Outcome of running a strategy over a decision log.

    ``outcome`` is None while the request is still undecided.
    """

    outcome: DecisionOutcome | None
    reason: str = ""

    @property
    def is_resolved(self) -> bool:
        return self.outcome is not None


# =========================================================================
# Delegation, escalation and history
# =========================================================================


@dataclass(frozen=True)
class Delegation:
    """Transfer of one approver's authority to another for a time window."""

    delegation_id: UUID
    from_approver_id: str
    to_approver_id: str
    valid_from: datetime
    valid_until: datetime
    max_value: Decimal | None = None
    scope: str | None = None
    created_by: str = ""
    created_at: datetime | None = None
    revoked_at: datetime | None = None

    def is_active(self, at: datetime) -> bool:
        """Active on the closed interval [valid_from, valid_until]."""
        if self.revoked_at is not None and self.revoked_at <= at:
            return False
        return self.valid_from <= at <= self.valid_until

    def covers(self, action_type: str, value: Decimal | None) -> bool:
        """True when the delegation's scope and value bound admit the request."""
        if self.scope is not None and self.scope != action_type:
            return False
        if self.max_value is not None and value is not None and value > self.max_value:
            return False
        return True


@dataclass(frozen=True)
class EscalationEvent:
    """One escalation occurrence. Append-only."""

    event_id: UUID
    request_id: UUID
    level: int
    triggered_at: datetime
    reason: EscalationReason
    strategy_used: EscalationStrategy
    previous_approvers: tuple[str, ...]
    new_approvers: tuple[str, ...]
    actor_id: str = SYSTEM_ACTOR
    previous_deadline_at: datetime | None = None
    new_deadline_at: datetime | None = None


@dataclass(frozen=True)
class HistoryEntry:
    """One state transition (or in-place change) of a request."""

    sequence: int
    request_id: UUID
    previous_status: ApprovalStatus | None
    new_status: ApprovalStatus
    actor_id: str
    reason: str
    occurred_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RequestHistory:
    request: ApprovalRequest
    entries: tuple[HistoryEntry, ...]
    decisions: tuple[DecisionRecord, ...]
    escalations: tuple[EscalationEvent, ...]


@dataclass(frozen=True)
class ApprovalMetrics:
    """Aggregate figures over requests created in a window."""

    total: int
    by_status: dict[str, int]
    by_action_type: dict[str, int]
    approval_rate: float | None
    mean_hours_to_resolution: float | None
    escalated_count: int
    sla_breach_count: int
