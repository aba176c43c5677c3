"""
Pure domain layer.

This module contains pure data transfer objects and domain logic
with NO dependencies on:
- ORM (SQLAlchemy)
- Database
- I/O

All domain objects are immutable and deterministic.
"""

from approval_kernel.domain.approval import (
    APPROVAL_TRANSITIONS,
    MAX_DELEGATION_SPAN,
    OPEN_APPROVAL_STATUSES,
    SYSTEM_ACTOR,
    TERMINAL_APPROVAL_STATUSES,
    ActionType,
    ApprovalMetrics,
    ApprovalRequest,
    ApprovalStatus,
    ApprovalStrategy,
    ApproverKind,
    ApproverSpec,
    DecisionOutcome,
    DecisionRecord,
    Delegation,
    EscalationEvent,
    EscalationReason,
    EscalationStrategy,
    HistoryEntry,
    Priority,
    RequestHistory,
    Resolution,
    can_transition,
)
from approval_kernel.domain.clock import Clock, DeterministicClock, SystemClock

__all__ = [
    "APPROVAL_TRANSITIONS",
    "MAX_DELEGATION_SPAN",
    "OPEN_APPROVAL_STATUSES",
    "SYSTEM_ACTOR",
    "TERMINAL_APPROVAL_STATUSES",
    "ActionType",
    "ApprovalMetrics",
    "ApprovalRequest",
    "ApprovalStatus",
    "ApprovalStrategy",
    "ApproverKind",
    "ApproverSpec",
    "DecisionOutcome",
    "DecisionRecord",
    "Delegation",
    "EscalationEvent",
    "EscalationReason",
    "EscalationStrategy",
    "HistoryEntry",
    "Priority",
    "RequestHistory",
    "Resolution",
    "can_transition",
    "Clock",
    "DeterministicClock",
    "SystemClock",
]
