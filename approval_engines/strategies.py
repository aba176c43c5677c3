"""
approval_engines.strategies -- Pure resolution strategies.

Responsibility:
    Decide whether a request's decision log closes it (approved / rejected)
    under its configured strategy, and which approver slots are still
    pending.  Strategies are looked up in a ``StrategyRegistry`` so new
    ones can be registered without touching the state machine.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import approval_kernel/domain types and exceptions.

Invariants enforced:
    - Determinism: a strategy's result depends only on the active approver
      slots and the decision log.  No clock, no I/O.
    - Deduplication: one outcome per approver slot, latest wins.
    - Decisions for slots that are no longer active are ignored.
    - Majority: approve at ``n // 2 + 1`` approvals; reject once approval
      is unreachable (``n - quorum + 1`` rejections).  Both thresholds can
      never be met together, so ties are impossible.

Failure modes:
    - StrategyNotFoundError for an unregistered strategy key.
    - ValueError when registering a duplicate key.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from decimal import Decimal
from typing import Protocol

from approval_kernel.domain.approval import (
    ApprovalRequest,
    ApprovalStrategy,
    ApproverSpec,
    DecisionOutcome,
    DecisionRecord,
    Resolution,
)
from approval_kernel.exceptions import StrategyNotFoundError
from approval_engines.tracer import traced_engine

APPROVE = DecisionOutcome.APPROVE
REJECT = DecisionOutcome.REJECT

UNDECIDED = Resolution(outcome=None, reason="awaiting decisions")


def latest_outcomes(
    approvers: Sequence[ApproverSpec],
    decisions: Sequence[DecisionRecord],
) -> dict[str, DecisionOutcome]:
    """Latest outcome per active approver slot, in log order."""
    active = {a.approver_id for a in approvers}
    outcomes: dict[str, DecisionOutcome] = {}
    for record in decisions:
        if record.approver_id in active:
            outcomes[record.approver_id] = record.outcome
    return outcomes


class ResolutionStrategy(Protocol):
    """Contract every strategy satisfies: pure, deterministic resolve()."""

    @property
    def name(self) -> str: ...

    def resolve(
        self,
        approvers: Sequence[ApproverSpec],
        decisions: Sequence[DecisionRecord],
    ) -> Resolution: ...


# =============================================================================
# Built-in strategies
# =============================================================================


class AnyOneStrategy:
    """First approval approves; rejection needs every approver to reject."""

    name = ApprovalStrategy.ANY_ONE.value

    def resolve(self, approvers, decisions) -> Resolution:
        outcomes = latest_outcomes(approvers, decisions)
        if any(o is APPROVE for o in outcomes.values()):
            return Resolution(APPROVE, "an approver approved")
        if approvers and len(outcomes) == len(approvers) and all(
            o is REJECT for o in outcomes.values()
        ):
            return Resolution(REJECT, "every approver rejected")
        return UNDECIDED


class UnanimousStrategy:
    """Any rejection rejects; approval needs every approver."""

    name = ApprovalStrategy.UNANIMOUS.value

    def resolve(self, approvers, decisions) -> Resolution:
        outcomes = latest_outcomes(approvers, decisions)
        if any(o is REJECT for o in outcomes.values()):
            return Resolution(REJECT, "an approver rejected")
        if approvers and len(outcomes) == len(approvers):
            return Resolution(APPROVE, "every approver approved")
        return UNDECIDED


def majority_quorum(approver_count: int) -> int:
    return approver_count // 2 + 1


class MajorityStrategy:
    name = ApprovalStrategy.MAJORITY.value

    def resolve(self, approvers, decisions) -> Resolution:
        outcomes = latest_outcomes(approvers, decisions)
        n = len(approvers)
        quorum = majority_quorum(n)
        approvals = sum(1 for o in outcomes.values() if o is APPROVE)
        rejections = sum(1 for o in outcomes.values() if o is REJECT)
        if approvals >= quorum:
            return Resolution(APPROVE, f"{approvals} of {n} approved (quorum {quorum})")
        if rejections >= n - quorum + 1:
            return Resolution(
                REJECT, f"{rejections} of {n} rejected; quorum {quorum} unreachable",
            )
        return UNDECIDED


def hierarchy_levels(approvers: Sequence[ApproverSpec]) -> list[int]:
    return sorted({a.order for a in approvers})


def current_order(
    approvers: Sequence[ApproverSpec],
    decisions: Sequence[DecisionRecord],
) -> int | None:
    """Lowest order index whose level has not approved yet (None = all done).

    A level is approved once any approver at that order approves.
    """
    outcomes = latest_outcomes(approvers, decisions)
    for level in hierarchy_levels(approvers):
        at_level = [a.approver_id for a in approvers if a.order == level]
        if not any(outcomes.get(slot) is APPROVE for slot in at_level):
            return level
    return None


class HierarchicalStrategy:
    """Levels decide in ascending order; any rejection rejects the request."""

    name = ApprovalStrategy.HIERARCHICAL.value

    def resolve(self, approvers, decisions) -> Resolution:
        outcomes = latest_outcomes(approvers, decisions)
        for slot, outcome in outcomes.items():
            if outcome is REJECT:
                return Resolution(REJECT, f"rejected at level of {slot}")
        if not approvers:
            return UNDECIDED
        pending = current_order(approvers, decisions)
        if pending is None:
            return Resolution(APPROVE, "highest level approved")
        return Resolution(None, f"awaiting level {pending}")


class WeightedThresholdStrategy:
    """Custom strategy: approve once approving weight reaches a share of the total.

    Rejects as soon as the remaining weight can no longer reach the threshold.
    """

    def __init__(self, threshold: Decimal | str | float, name: str = "weighted_threshold"):
        threshold = Decimal(str(threshold))
        if not (Decimal("0") < threshold <= Decimal("1")):
            raise ValueError(f"threshold must be in (0, 1], got {threshold}")
        self._threshold = threshold
        self.name = name

    def resolve(self, approvers, decisions) -> Resolution:
        outcomes = latest_outcomes(approvers, decisions)
        weights = {a.approver_id: Decimal(a.weight) for a in approvers}
        total = sum(weights.values(), Decimal("0"))
        if total <= 0:
            return UNDECIDED
        required = total * self._threshold
        approving = sum(
            (weights[s] for s, o in outcomes.items() if o is APPROVE), Decimal("0"),
        )
        rejecting = sum(
            (weights[s] for s, o in outcomes.items() if o is REJECT), Decimal("0"),
        )
        if approving >= required:
            return Resolution(APPROVE, f"approving weight {approving}/{total}")
        if total - rejecting < required:
            return Resolution(REJECT, f"rejecting weight {rejecting}/{total}")
        return UNDECIDED


class PredicateStrategy:
    """Custom strategy backed by an injected pure predicate."""

    def __init__(
        self,
        name: str,
        predicate: Callable[
            [Sequence[ApproverSpec], Sequence[DecisionRecord]], DecisionOutcome | None
        ],
    ):
        self.name = name
        self._predicate = predicate

    def resolve(self, approvers, decisions) -> Resolution:
        outcome = self._predicate(tuple(approvers), tuple(decisions))
        if outcome is None:
            return UNDECIDED
        return Resolution(outcome, f"predicate '{self.name}'")


# =============================================================================
# Registry
# =============================================================================


def strategy_key(strategy: ApprovalStrategy, custom_strategy: str | None = None) -> str:
    """Registry key for a request's strategy."""
    if strategy is ApprovalStrategy.CUSTOM:
        if not custom_strategy:
            raise StrategyNotFoundError("custom:<unnamed>")
        return custom_strategy
    return strategy.value


class StrategyRegistry:
    """Key -> ResolutionStrategy lookup.  One instance per engine, no globals."""

    def __init__(self) -> None:
        self._strategies: dict[str, ResolutionStrategy] = {}

    def register(self, strategy: ResolutionStrategy, key: str | None = None) -> None:
        key = key or strategy.name
        if key in self._strategies:
            raise ValueError(f"Strategy already registered: {key}")
        self._strategies[key] = strategy

    def get(self, key: str) -> ResolutionStrategy:
        if key not in self._strategies:
            raise StrategyNotFoundError(key, tuple(sorted(self._strategies)))
        return self._strategies[key]

    def has(self, key: str) -> bool:
        return key in self._strategies

    @property
    def keys(self) -> tuple[str, ...]:
        return tuple(sorted(self._strategies))

    def for_request(self, request: ApprovalRequest) -> ResolutionStrategy:
        return self.get(strategy_key(request.strategy, request.custom_strategy))


def default_strategy_registry() -> StrategyRegistry:
    registry = StrategyRegistry()
    registry.register(AnyOneStrategy())
    registry.register(UnanimousStrategy())
    registry.register(MajorityStrategy())
    registry.register(HierarchicalStrategy())
    registry.register(WeightedThresholdStrategy("0.5", name="weighted_majority"))
    return registry


# =============================================================================
# Entry points used by the state machine
# =============================================================================


@traced_engine(
    "resolution",
    "1.0",
    fingerprint_fields=("strategy_key", "approvers", "decisions"),
    summarize=lambda resolution: {"outcome": resolution.outcome, "reason": resolution.reason},
)
def resolve_decisions(
    *,
    strategy_key: str,
    approvers: Sequence[ApproverSpec],
    decisions: Sequence[DecisionRecord],
    registry: StrategyRegistry,
) -> Resolution:
    return registry.get(strategy_key).resolve(tuple(approvers), tuple(decisions))


def pending_approvers(
    strategy: ApprovalStrategy,
    approvers: Sequence[ApproverSpec],
    decisions: Sequence[DecisionRecord],
) -> tuple[ApproverSpec, ...]:
    """Active slots still expected to act.

    For the hierarchical strategy only the current level counts.
    """
    outcomes = latest_outcomes(approvers, decisions)
    undecided = [a for a in approvers if a.approver_id not in outcomes]
    if strategy is ApprovalStrategy.HIERARCHICAL:
        level = current_order(approvers, decisions)
        undecided = [a for a in undecided if a.order == level]
    return tuple(undecided)
