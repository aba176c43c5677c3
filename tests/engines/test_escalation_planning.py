"""Escalation rule selection and approver planning (approval_engines/escalation.py)."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

from approval_engines.escalation import (
    plan_escalation,
    resolve_escalation_policy,
    select_escalation_rule,
)
from approval_kernel.domain.approval import (
    ActionType,
    ApprovalRequest,
    ApprovalStatus,
    ApprovalStrategy,
    ApproverSpec,
    DecisionOutcome,
    DecisionRecord,
    EscalationStrategy,
    Priority,
)
from approval_kernel.domain.policy import EscalationRule, EscalationSettings

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

SUPERIORS = {
    "ana": ("sam",),
    "bruno": ("sam",),
    "cleo": (),
}


def superiors_of(approver_id):
    return SUPERIORS.get(approver_id, ())


def make_request(
    approvers=("ana", "bruno"),
    strategy=ApprovalStrategy.UNANIMOUS,
    decisions=(),
    priority=Priority.NORMAL,
    value=None,
    action_type=ActionType.DELETE_CITIZEN,
    order=None,
):
    request_id = uuid4()
    return ApprovalRequest(
        request_id=request_id,
        action_type=action_type,
        requester_id="carla",
        status=ApprovalStatus.PENDING,
        strategy=strategy,
        approvers=tuple(
            ApproverSpec(a, order=(order[n] if order else 1)) for n, a in enumerate(approvers)
        ),
        deadline_at=NOW,
        priority=priority,
        value=value,
        decisions=tuple(
            DecisionRecord(uuid4(), request_id, n + 1, a, a, outcome)
            for n, (a, outcome) in enumerate(decisions)
        ),
    )


def ids(specs):
    return [s.approver_id for s in specs]


# =============================================================================
# Rule selection
# =============================================================================


class TestRuleSelection:
    rules = (
        EscalationRule("catch_all", priority=100, strategy=EscalationStrategy.MANUAL),
        EscalationRule(
            "emergency", priority=1, strategy=EscalationStrategy.BY_PRIORITY,
            min_priority=Priority.EMERGENCY, max_escalations=5, grace_period_hours=1,
        ),
        EscalationRule(
            "big_benefits", priority=10, strategy=EscalationStrategy.HIERARCHICAL,
            action_types=("release_benefit",), min_value=Decimal("10000"),
        ),
    )

    def test_lowest_priority_number_wins(self):
        request = make_request(priority=Priority.EMERGENCY)
        assert select_escalation_rule(self.rules, request).name == "emergency"

    def test_action_and_value_conditions(self):
        big = make_request(action_type=ActionType.RELEASE_BENEFIT, value=Decimal("25000"))
        small = make_request(action_type=ActionType.RELEASE_BENEFIT, value=Decimal("50"))
        unknown_value = make_request(action_type=ActionType.RELEASE_BENEFIT)
        assert select_escalation_rule(self.rules, big).name == "big_benefits"
        assert select_escalation_rule(self.rules, small).name == "catch_all"
        assert select_escalation_rule(self.rules, unknown_value).name == "catch_all"

    def test_no_rules_falls_back_to_settings(self):
        settings = EscalationSettings(max_escalations=4, grace_period_hours=12)
        policy = resolve_escalation_policy(settings, make_request())
        assert policy.rule_name is None
        assert policy.strategy is EscalationStrategy.HIERARCHICAL
        assert policy.max_escalations == 4
        assert policy.grace_period == timedelta(hours=12)

    def test_rule_overrides_limits(self):
        settings = EscalationSettings(rules=self.rules)
        policy = resolve_escalation_policy(settings, make_request(priority=Priority.EMERGENCY))
        assert policy.rule_name == "emergency"
        assert policy.max_escalations == 5
        assert policy.grace_period == timedelta(hours=1)

    def test_rule_without_limits_inherits_settings(self):
        settings = EscalationSettings(max_escalations=2, grace_period_hours=6, rules=self.rules)
        policy = resolve_escalation_policy(settings, make_request())
        assert policy.rule_name == "catch_all"
        assert policy.max_escalations == 2
        assert policy.grace_period == timedelta(hours=6)


# =============================================================================
# Planning
# =============================================================================


class TestPlanEscalation:
    def _plan(self, request, strategy, pool=()):
        return plan_escalation(
            request=request, strategy=strategy, superiors_of=superiors_of, pool=pool,
        )

    def test_manual_keeps_current_set(self):
        request = make_request()
        assert self._plan(request, EscalationStrategy.MANUAL) == request.approvers

    def test_hierarchical_promotes_pending_to_superiors(self):
        request = make_request(approvers=("ana", "cleo"))
        plan = self._plan(request, EscalationStrategy.HIERARCHICAL)
        # cleo has no superior and keeps her slot
        assert ids(plan) == ["sam", "cleo"]

    def test_hierarchical_shares_a_superior_once(self):
        plan = self._plan(make_request(), EscalationStrategy.HIERARCHICAL)
        assert ids(plan) == ["sam", "bruno"]

    def test_decided_slots_are_kept(self):
        request = make_request(decisions=[("ana", DecisionOutcome.APPROVE)])
        plan = self._plan(request, EscalationStrategy.HIERARCHICAL)
        assert ids(plan) == ["ana", "sam"]

    def test_by_priority_widens_with_pool(self):
        plan = self._plan(make_request(), EscalationStrategy.BY_PRIORITY, pool=("sue", "ana"))
        assert ids(plan) == ["ana", "bruno", "sue"]

    def test_requester_never_added(self):
        plan = self._plan(make_request(), EscalationStrategy.BY_PRIORITY, pool=("carla", "sue"))
        assert "carla" not in ids(plan)

    def test_replace_swaps_pending_for_pool(self):
        request = make_request(decisions=[("ana", DecisionOutcome.APPROVE)])
        plan = self._plan(request, EscalationStrategy.REPLACE, pool=("sue", "tom"))
        assert ids(plan) == ["ana", "sue", "tom"]

    def test_replace_with_empty_pool_keeps_set(self):
        request = make_request()
        assert self._plan(request, EscalationStrategy.REPLACE, pool=()) == request.approvers

    def test_hierarchical_request_targets_current_level(self):
        request = make_request(
            approvers=("ana", "bruno"),
            strategy=ApprovalStrategy.HIERARCHICAL,
            order=[1, 2],
            decisions=[("ana", DecisionOutcome.APPROVE)],
        )
        plan = self._plan(request, EscalationStrategy.BY_PRIORITY, pool=("sue",))
        added = [s for s in plan if s.approver_id == "sue"]
        assert added and added[0].order == 2
