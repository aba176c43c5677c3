"""
Module: approval_engines
Responsibility:
    Package entrypoint that re-exports the pure calculation engines:
    strategy resolution, escalation planning and backoff arithmetic.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import approval_kernel/domain types (and sibling engine modules).
    MUST NOT import approval_dispatch or approval_services.

Invariants enforced:
    - Purity: engines NEVER read the clock.  Callers pass times in.
    - Determinism: identical inputs always produce identical outputs.
"""

from approval_engines.backoff import compute_backoff_seconds, next_attempt_at
from approval_engines.escalation import (
    EscalationPolicy,
    plan_escalation,
    resolve_escalation_policy,
    select_escalation_rule,
)
from approval_engines.strategies import (
    AnyOneStrategy,
    HierarchicalStrategy,
    MajorityStrategy,
    PredicateStrategy,
    ResolutionStrategy,
    StrategyRegistry,
    UnanimousStrategy,
    WeightedThresholdStrategy,
    current_order,
    default_strategy_registry,
    latest_outcomes,
    majority_quorum,
    pending_approvers,
    resolve_decisions,
    strategy_key,
)

__all__ = [
    "compute_backoff_seconds",
    "next_attempt_at",
    "EscalationPolicy",
    "plan_escalation",
    "resolve_escalation_policy",
    "select_escalation_rule",
    "AnyOneStrategy",
    "HierarchicalStrategy",
    "MajorityStrategy",
    "PredicateStrategy",
    "ResolutionStrategy",
    "StrategyRegistry",
    "UnanimousStrategy",
    "WeightedThresholdStrategy",
    "current_order",
    "default_strategy_registry",
    "latest_outcomes",
    "majority_quorum",
    "pending_approvers",
    "resolve_decisions",
    "strategy_key",
]
