"""
approval_engines.escalation -- Pure escalation rule selection and planning.

Responsibility:
    Choose the escalation rule that governs a request and compute the
    approver set an escalation should leave behind.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  Organisational lookups
    arrive as plain callables / sequences supplied by the service layer.

Invariants enforced:
    - Rules are evaluated in ascending ``priority``; first match wins;
      ties keep configuration order.
    - Decided approver slots are never removed by an escalation.
    - The requester is never added as an approver.
    - A plan never leaves a request without approvers: when no target is
      available the pending slot is kept.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import timedelta

from approval_kernel.domain.approval import (
    ApprovalRequest,
    ApprovalStrategy,
    ApproverKind,
    ApproverSpec,
    EscalationStrategy,
)
from approval_kernel.domain.policy import EscalationRule, EscalationSettings
from approval_engines.strategies import pending_approvers
from approval_engines.tracer import traced_engine


@dataclass(frozen=True)
class EscalationPolicy:
    """Effective limits for one request after rule selection."""

    strategy: EscalationStrategy
    max_escalations: int
    grace_period: timedelta
    rule_name: str | None = None


def _rule_matches(rule: EscalationRule, request: ApprovalRequest) -> bool:
    if rule.action_types and request.action_type.value not in rule.action_types:
        return False
    if rule.min_priority is not None and request.priority < rule.min_priority:
        return False
    if rule.min_value is not None:
        if request.value is None or request.value < rule.min_value:
            return False
    return True


def select_escalation_rule(
    rules: Sequence[EscalationRule],
    request: ApprovalRequest,
) -> EscalationRule | None:
    for rule in sorted(rules, key=lambda r: r.priority):
        if _rule_matches(rule, request):
            return rule
    return None


def resolve_escalation_policy(
    settings: EscalationSettings,
    request: ApprovalRequest,
) -> EscalationPolicy:
    rule = select_escalation_rule(settings.rules, request)
    if rule is None:
        return EscalationPolicy(
            strategy=settings.default_strategy,
            max_escalations=settings.max_escalations,
            grace_period=timedelta(hours=settings.grace_period_hours),
        )
    return EscalationPolicy(
        strategy=rule.strategy,
        max_escalations=(
            rule.max_escalations
            if rule.max_escalations is not None
            else settings.max_escalations
        ),
        grace_period=timedelta(
            hours=(
                rule.grace_period_hours
                if rule.grace_period_hours is not None
                else settings.grace_period_hours
            )
        ),
        rule_name=rule.name,
    )


def _promoted(slot: ApproverSpec, approver_id: str) -> ApproverSpec:
    return ApproverSpec(
        approver_id=approver_id,
        kind=ApproverKind.USER,
        weight=slot.weight,
        order=slot.order,
    )


@traced_engine(
    "escalation_plan",
    "1.0",
    fingerprint_fields=("strategy", "pool"),
    summarize=lambda planned: {"planned_approvers": [a.approver_id for a in planned]},
)
def plan_escalation(
    *,
    request: ApprovalRequest,
    strategy: EscalationStrategy,
    superiors_of: Callable[[str], Sequence[str]],
    pool: Sequence[str],
) -> tuple[ApproverSpec, ...]:
    """Approver set after escalating ``request`` with ``strategy``.

    Returns the current set unchanged for MANUAL, or when no escalation
    target exists (flag-only escalation).
    """
    current = tuple(request.approvers)
    if strategy is EscalationStrategy.MANUAL:
        return current

    pending = pending_approvers(request.strategy, current, request.decisions)
    if not pending:
        return current

    taken = {a.approver_id for a in current} | {request.requester_id}
    pending_ids = {a.approver_id for a in pending}
    target_order = pending[0].order if request.strategy is ApprovalStrategy.HIERARCHICAL else 1

    if strategy is EscalationStrategy.HIERARCHICAL:
        result: list[ApproverSpec] = []
        for slot in current:
            if slot.approver_id not in pending_ids:
                result.append(slot)
                continue
            promoted = [s for s in superiors_of(slot.approver_id) if s not in taken]
            if not promoted:
                result.append(slot)
                continue
            for superior in promoted:
                taken.add(superior)
                result.append(_promoted(slot, superior))
        return tuple(result)

    additions: list[ApproverSpec] = []
    for approver_id in pool:
        if approver_id in taken:
            continue
        taken.add(approver_id)
        additions.append(ApproverSpec(approver_id=approver_id, order=target_order))

    if strategy is EscalationStrategy.BY_PRIORITY:
        return current + tuple(additions)

    # REPLACE: pending slots give way to the pool when it has anyone to offer
    if not additions:
        return current
    kept = tuple(a for a in current if a.approver_id not in pending_ids)
    return kept + tuple(additions)
