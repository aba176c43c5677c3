"""
Declarative policy value objects.

Escalation rules, action policies (the registration table that replaces
"critical action" decorators) and approver directory profiles.  All are
frozen dataclasses built from YAML by ``approval_config`` or directly in
code; none carries executable logic except through the pure helpers in
``approval_engines``.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from approval_kernel.domain.approval import (
    ApprovalStrategy,
    ApproverKind,
    EscalationStrategy,
    Priority,
)

DEFAULT_FINGERPRINT_FIELDS: tuple[str, ...] = (
    "target_entity",
    "target_entity_id",
    "endpoint",
)


# ---------------------------------------------------------------------------
# Escalation policy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EscalationRule:
    """A single escalation rule.

    ``priority`` determines evaluation order: lower number first, first
    match wins.  Empty conditions match everything.
    """

    name: str
    priority: int
    strategy: EscalationStrategy
    action_types: tuple[str, ...] = ()
    min_priority: Priority | None = None
    min_value: Decimal | None = None
    max_escalations: int | None = None
    grace_period_hours: float | None = None


@dataclass(frozen=True)
class EscalationSettings:
    tick_interval_seconds: float = 1800.0
    grace_period_hours: float = 24.0
    max_escalations: int = 3
    reminder_window_hours: float = 4.0
    default_strategy: EscalationStrategy = EscalationStrategy.HIERARCHICAL
    rules: tuple[EscalationRule, ...] = ()


# ---------------------------------------------------------------------------
# Action registry entries
# ---------------------------------------------------------------------------

AUTO_APPROVAL_OPERATORS: frozenset[str] = frozenset(
    {"lt", "lte", "gt", "gte", "eq", "ne", "in"}
)


@dataclass(frozen=True)
class AutoApprovalRule:
    """Context predicate under which an action skips approval.

    Example: ``AutoApprovalRule("amount", "lt", Decimal("100"))``.
    """

    field: str
    operator: str
    threshold: Any

    def __post_init__(self) -> None:
        if self.operator not in AUTO_APPROVAL_OPERATORS:
            raise ValueError(
                f"Unknown auto-approval operator '{self.operator}'. "
                f"Expected one of {sorted(AUTO_APPROVAL_OPERATORS)}"
            )


@dataclass(frozen=True)
class ActionPolicy:
    action_type: str
    requires_approval: bool = True
    default_strategy: ApprovalStrategy = ApprovalStrategy.UNANIMOUS
    default_deadline_hours: float = 48.0
    default_priority: Priority = Priority.NORMAL
    fingerprint_fields: tuple[str, ...] = DEFAULT_FINGERPRINT_FIELDS
    auto_approval: AutoApprovalRule | None = None
    description: str = ""


@dataclass(frozen=True)
class ActionEvaluation:
    """What the calling layer should do with an intended action."""

    action_type: str
    requires_approval: bool
    auto_approved: bool
    reason: str


# ---------------------------------------------------------------------------
# Approver directory seed data
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ApproverProfile:
    approver_id: str
    kind: ApproverKind = ApproverKind.USER
    max_value: Decimal | None = None
    can_delegate: bool = True
    channels: tuple[str, ...] = ("in_app",)
    scopes: tuple[str, ...] = ()  # empty = authority over every action type
    is_admin: bool = False
    members: tuple[str, ...] = ()  # for role / unit approvers


@dataclass(frozen=True)
class HierarchySettings:
    superiors: dict[str, tuple[str, ...]]
    pools: dict[Priority, tuple[str, ...]]
