"""
Resolution strategy tests (approval_engines/strategies.py).

Pure functions: no database, no clock.  Property-based checks use
Hypothesis to generate approver sets and decision logs.
"""

from decimal import Decimal
from uuid import uuid4

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from approval_engines.strategies import (
    AnyOneStrategy,
    HierarchicalStrategy,
    MajorityStrategy,
    PredicateStrategy,
    StrategyRegistry,
    UnanimousStrategy,
    WeightedThresholdStrategy,
    current_order,
    default_strategy_registry,
    majority_quorum,
    pending_approvers,
    resolve_decisions,
    strategy_key,
)
from approval_kernel.domain.approval import (
    ApprovalStrategy,
    ApproverSpec,
    DecisionOutcome,
    DecisionRecord,
)
from approval_kernel.exceptions import StrategyNotFoundError

APPROVE = DecisionOutcome.APPROVE
REJECT = DecisionOutcome.REJECT
REQUEST_ID = uuid4()


def slots(*ids, order=None):
    return tuple(
        ApproverSpec(approver_id=i, order=(order[n] if order else 1)) for n, i in enumerate(ids)
    )


def log(*entries):
    """``log(("a", APPROVE), ("b", REJECT))`` -> decision records in order."""
    return tuple(
        DecisionRecord(
            decision_id=uuid4(),
            request_id=REQUEST_ID,
            sequence=n + 1,
            approver_id=approver_id,
            actor_id=approver_id,
            outcome=outcome,
        )
        for n, (approver_id, outcome) in enumerate(entries)
    )


# =============================================================================
# AnyOne
# =============================================================================


class TestAnyOne:
    strategy = AnyOneStrategy()

    def test_single_approval_approves(self):
        result = self.strategy.resolve(slots("a", "b", "c"), log(("b", APPROVE)))
        assert result.outcome is APPROVE

    def test_single_rejection_leaves_request_open(self):
        result = self.strategy.resolve(slots("a", "b"), log(("a", REJECT)))
        assert not result.is_resolved

    def test_rejects_only_when_everyone_rejected(self):
        result = self.strategy.resolve(slots("a", "b"), log(("a", REJECT), ("b", REJECT)))
        assert result.outcome is REJECT

    def test_approval_after_rejection_still_approves(self):
        result = self.strategy.resolve(slots("a", "b"), log(("a", REJECT), ("b", APPROVE)))
        assert result.outcome is APPROVE


# =============================================================================
# Unanimous
# =============================================================================


class TestUnanimous:
    strategy = UnanimousStrategy()

    def test_all_approve(self):
        result = self.strategy.resolve(slots("a", "b"), log(("a", APPROVE), ("b", APPROVE)))
        assert result.outcome is APPROVE

    def test_partial_approval_undecided(self):
        assert not self.strategy.resolve(slots("a", "b"), log(("a", APPROVE))).is_resolved

    def test_any_rejection_rejects(self):
        result = self.strategy.resolve(slots("a", "b", "c"), log(("c", REJECT)))
        assert result.outcome is REJECT

    def test_decisions_of_inactive_slots_ignored(self):
        # "x" was replaced by an escalation; its approval no longer counts
        result = self.strategy.resolve(slots("a"), log(("x", APPROVE)))
        assert not result.is_resolved

    def test_empty_approver_set_never_approves(self):
        assert not self.strategy.resolve((), ()).is_resolved


# =============================================================================
# Majority
# =============================================================================


class TestMajority:
    strategy = MajorityStrategy()

    @pytest.mark.parametrize("n, quorum", [(1, 1), (2, 2), (3, 2), (4, 3), (5, 3)])
    def test_quorum(self, n, quorum):
        assert majority_quorum(n) == quorum

    def test_approves_at_quorum(self):
        result = self.strategy.resolve(slots("a", "b", "c"), log(("a", APPROVE), ("c", APPROVE)))
        assert result.outcome is APPROVE

    def test_rejects_once_quorum_unreachable(self):
        result = self.strategy.resolve(slots("a", "b", "c"), log(("a", REJECT), ("b", REJECT)))
        assert result.outcome is REJECT

    def test_even_split_of_four_rejects(self):
        # quorum 3 of 4: two rejections make it unreachable
        approvers = slots("a", "b", "c", "d")
        result = self.strategy.resolve(approvers, log(("a", APPROVE), ("b", APPROVE), ("c", REJECT), ("d", REJECT)))
        assert result.outcome is REJECT

    def test_one_each_undecided(self):
        result = self.strategy.resolve(slots("a", "b", "c"), log(("a", APPROVE), ("b", REJECT)))
        assert not result.is_resolved


# =============================================================================
# Hierarchical
# =============================================================================


class TestHierarchical:
    strategy = HierarchicalStrategy()
    approvers = slots("lead", "manager", "director", order=[1, 2, 3])

    def test_current_order_advances_level_by_level(self):
        assert current_order(self.approvers, ()) == 1
        assert current_order(self.approvers, log(("lead", APPROVE))) == 2
        assert current_order(self.approvers, log(("lead", APPROVE), ("manager", APPROVE))) == 3

    def test_highest_level_approval_approves(self):
        decisions = log(("lead", APPROVE), ("manager", APPROVE), ("director", APPROVE))
        assert self.strategy.resolve(self.approvers, decisions).outcome is APPROVE

    def test_rejection_at_any_level_rejects(self):
        decisions = log(("lead", APPROVE), ("manager", REJECT))
        assert self.strategy.resolve(self.approvers, decisions).outcome is REJECT

    def test_any_approver_at_a_level_clears_it(self):
        approvers = slots("lead.a", "lead.b", "director", order=[1, 1, 2])
        assert current_order(approvers, log(("lead.b", APPROVE))) == 2

    def test_pending_approvers_only_current_level(self):
        pending = pending_approvers(
            ApprovalStrategy.HIERARCHICAL, self.approvers, log(("lead", APPROVE)),
        )
        assert [a.approver_id for a in pending] == ["manager"]


# =============================================================================
# Custom strategies
# =============================================================================


class TestCustomStrategies:
    def test_weighted_threshold(self):
        strategy = WeightedThresholdStrategy("0.6")
        approvers = (
            ApproverSpec("heavy", weight=3),
            ApproverSpec("light.1", weight=1),
            ApproverSpec("light.2", weight=1),
        )
        assert strategy.resolve(approvers, log(("heavy", APPROVE))).outcome is APPROVE
        assert strategy.resolve(approvers, log(("heavy", REJECT))).outcome is REJECT
        assert not strategy.resolve(approvers, log(("light.1", APPROVE))).is_resolved

    @pytest.mark.parametrize("threshold", ["0", "1.5", "-0.1"])
    def test_weighted_threshold_bounds(self, threshold):
        with pytest.raises(ValueError):
            WeightedThresholdStrategy(threshold)

    def test_predicate_strategy(self):
        def two_approvals(approvers, decisions):
            approvals = sum(1 for d in decisions if d.outcome is APPROVE)
            return APPROVE if approvals >= 2 else None

        strategy = PredicateStrategy("two_approvals", two_approvals)
        assert not strategy.resolve(slots("a", "b", "c"), log(("a", APPROVE))).is_resolved
        assert strategy.resolve(slots("a", "b", "c"), log(("a", APPROVE), ("c", APPROVE))).outcome is APPROVE


# =============================================================================
# Registry
# =============================================================================


class TestStrategyRegistry:
    def test_defaults_registered(self):
        registry = default_strategy_registry()
        for name in ("any_one", "unanimous", "majority", "hierarchical", "weighted_majority"):
            assert registry.has(name)

    def test_duplicate_registration_rejected(self):
        registry = StrategyRegistry()
        registry.register(UnanimousStrategy())
        with pytest.raises(ValueError, match="already registered"):
            registry.register(UnanimousStrategy())

    def test_unknown_key_lists_available(self):
        registry = default_strategy_registry()
        with pytest.raises(StrategyNotFoundError) as exc_info:
            registry.get("coin_flip")
        assert "unanimous" in exc_info.value.available

    def test_custom_requires_a_name(self):
        with pytest.raises(StrategyNotFoundError):
            strategy_key(ApprovalStrategy.CUSTOM, None)
        assert strategy_key(ApprovalStrategy.CUSTOM, "weighted_majority") == "weighted_majority"
        assert strategy_key(ApprovalStrategy.MAJORITY, "ignored") == "majority"

    def test_resolve_decisions_entry_point(self):
        result = resolve_decisions(
            strategy_key="majority",
            approvers=slots("a", "b", "c"),
            decisions=log(("a", APPROVE), ("b", APPROVE)),
            registry=default_strategy_registry(),
        )
        assert result.outcome is APPROVE


# =============================================================================
# Properties
# =============================================================================

approver_ids = st.lists(
    st.sampled_from(["a", "b", "c", "d", "e", "f", "g"]), min_size=1, max_size=7, unique=True,
)


@st.composite
def approvers_and_log(draw):
    ids = draw(approver_ids)
    entries = draw(
        st.lists(
            st.tuples(st.sampled_from(ids), st.sampled_from([APPROVE, REJECT])),
            max_size=12,
        )
    )
    return slots(*ids), log(*entries)


class TestStrategyProperties:
    @settings(max_examples=200, deadline=None)
    @given(approvers_and_log())
    def test_majority_never_both_thresholds(self, data):
        approvers, decisions = data
        n = len(approvers)
        quorum = majority_quorum(n)
        latest = {}
        for d in decisions:
            latest[d.approver_id] = d.outcome
        approvals = sum(1 for o in latest.values() if o is APPROVE)
        rejections = sum(1 for o in latest.values() if o is REJECT)
        assert not (approvals >= quorum and rejections >= n - quorum + 1)

    @settings(max_examples=200, deadline=None)
    @given(approvers_and_log())
    def test_unanimous_approval_implies_every_slot_approved(self, data):
        approvers, decisions = data
        result = UnanimousStrategy().resolve(approvers, decisions)
        if result.outcome is APPROVE:
            latest = {d.approver_id: d.outcome for d in decisions}
            assert all(latest.get(a.approver_id) is APPROVE for a in approvers)

    @settings(max_examples=200, deadline=None)
    @given(approvers_and_log())
    def test_resolution_is_deterministic(self, data):
        approvers, decisions = data
        registry = default_strategy_registry()
        for key in registry.keys:
            strategy = registry.get(key)
            assert strategy.resolve(approvers, decisions) == strategy.resolve(approvers, decisions)

    @settings(max_examples=200, deadline=None)
    @given(approvers_and_log())
    def test_any_one_approves_iff_some_slot_approved(self, data):
        approvers, decisions = data
        latest = {d.approver_id: d.outcome for d in decisions}
        result = AnyOneStrategy().resolve(approvers, decisions)
        assert (result.outcome is APPROVE) == any(o is APPROVE for o in latest.values())


def test_weighted_threshold_accepts_decimal():
    assert WeightedThresholdStrategy(Decimal("1")).resolve(
        (ApproverSpec("a"),), log(("a", APPROVE)),
    ).outcome is APPROVE
