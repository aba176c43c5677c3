"""
ActionRegistry -- declarative table of gated actions.

Responsibility:
    Answer, for an intended critical action, whether it needs approval,
    whether its context qualifies for auto-approval, and which context
    fields identify duplicates.  The calling layer consults ``evaluate``
    before invoking ``ApprovalStateMachine.create``.

Architecture position:
    Kernel > Services.  Pure lookups; no I/O.

Failure modes:
    - KeyError from ``get`` for an unregistered action type (lists the
      registered ones).
    - ValueError on duplicate registration or an unknown action type.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from decimal import Decimal, InvalidOperation
from typing import Any

from approval_kernel.domain.approval import ActionType
from approval_kernel.domain.policy import (
    ActionEvaluation,
    ActionPolicy,
    AutoApprovalRule,
)
from approval_kernel.logging_config import get_logger

logger = get_logger("services.action_registry")

AutoApprovalPredicate = Callable[[Mapping[str, Any]], bool]


def _as_decimal(value: Any) -> Decimal | None:
    if isinstance(value, bool):
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def auto_approval_matches(rule: AutoApprovalRule, context: Mapping[str, Any]) -> bool:
    """Evaluate an ``AutoApprovalRule`` against a context.  Missing field -> False."""
    if rule.field not in context:
        return False
    value = context[rule.field]

    if rule.operator == "in":
        return value in tuple(rule.threshold or ())
    if rule.operator in ("eq", "ne"):
        left, right = _as_decimal(value), _as_decimal(rule.threshold)
        equal = left == right if left is not None and right is not None else value == rule.threshold
        return equal if rule.operator == "eq" else not equal

    left, right = _as_decimal(value), _as_decimal(rule.threshold)
    if left is None or right is None:
        return False
    if rule.operator == "lt":
        return left < right
    if rule.operator == "lte":
        return left <= right
    if rule.operator == "gt":
        return left > right
    return left >= right  # gte


class ActionRegistry:
    """``ActionType`` -> ``ActionPolicy`` with optional predicate overrides."""

    def __init__(self, policies: Iterable[ActionPolicy] = ()) -> None:
        self._policies: dict[str, ActionPolicy] = {}
        self._predicates: dict[str, AutoApprovalPredicate] = {}
        for policy in policies:
            self.register(policy)

    @staticmethod
    def _key(action_type: ActionType | str) -> str:
        try:
            return ActionType(action_type).value
        except ValueError:
            raise ValueError(f"Unknown action type: {action_type!r}") from None

    def register(self, policy: ActionPolicy) -> None:
        key = self._key(policy.action_type)
        if key in self._policies:
            raise ValueError(f"Action policy already registered: {key}")
        self._policies[key] = policy

    def register_predicate(
        self, action_type: ActionType | str, predicate: AutoApprovalPredicate,
    ) -> None:
        key = self._key(action_type)
        if key in self._predicates:
            raise ValueError(f"Auto-approval predicate already registered: {key}")
        self._predicates[key] = predicate

    def get(self, action_type: ActionType | str) -> ActionPolicy:
        key = self._key(action_type)
        if key not in self._policies:
            available = ", ".join(sorted(self._policies)) or "(none)"
            raise KeyError(f"No action policy registered for '{key}'. Available: {available}")
        return self._policies[key]

    def policy_for(self, action_type: ActionType | str) -> ActionPolicy:
        """Registered policy, or the default policy for an unlisted action."""
        key = self._key(action_type)
        return self._policies.get(key) or ActionPolicy(action_type=key)

    @property
    def action_types(self) -> tuple[str, ...]:
        return tuple(sorted(self._policies))

    def evaluate(
        self,
        action_type: ActionType | str,
        context: Mapping[str, Any] | None = None,
    ) -> ActionEvaluation:
        key = self._key(action_type)
        policy = self.policy_for(key)
        context = context or {}

        if not policy.requires_approval:
            result = ActionEvaluation(key, False, False, "approval not required")
        elif key in self._predicates and self._predicates[key](context):
            result = ActionEvaluation(key, True, True, "auto-approved by predicate")
        elif policy.auto_approval is not None and auto_approval_matches(
            policy.auto_approval, context,
        ):
            rule = policy.auto_approval
            result = ActionEvaluation(
                key, True, True,
                f"auto-approved: {rule.field} {rule.operator} {rule.threshold}",
            )
        else:
            result = ActionEvaluation(key, True, False, "approval required")

        logger.debug(
            "action_evaluated",
            extra={
                "action_type": key,
                "requires_approval": result.requires_approval,
                "auto_approved": result.auto_approved,
            },
        )
        return result
