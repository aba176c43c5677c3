"""
Engine settings schema (``approval_config.schema``).

Frozen dataclasses describing everything the engine reads from
configuration.  The component-level settings types live next to the code
they configure (``EscalationSettings`` and the policy records in
``approval_kernel.domain.policy``, ``DispatcherSettings`` in
``approval_dispatch.domain.types``); this module only aggregates them.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from approval_kernel.domain.policy import (
    ActionPolicy,
    ApproverProfile,
    EscalationSettings,
    HierarchySettings,
)
from approval_dispatch.domain.types import DispatcherSettings


def _empty_hierarchy() -> HierarchySettings:
    return HierarchySettings(superiors={}, pools={})


@dataclass(frozen=True)
class EngineSettings:
    """Root configuration object returned by ``load_settings``."""

    name: str = "default"
    operation_timeout_seconds: float = 5.0
    max_write_attempts: int = 5
    dispatcher: DispatcherSettings = field(default_factory=DispatcherSettings)
    escalation: EscalationSettings = field(default_factory=EscalationSettings)
    actions: tuple[ActionPolicy, ...] = ()
    approvers: tuple[ApproverProfile, ...] = ()
    hierarchy: HierarchySettings = field(default_factory=_empty_hierarchy)

    def __post_init__(self) -> None:
        if self.operation_timeout_seconds <= 0:
            raise ValueError("operation_timeout_seconds must be > 0")
        if self.max_write_attempts < 1:
            raise ValueError("max_write_attempts must be >= 1")
        seen: set[str] = set()
        for policy in self.actions:
            if policy.action_type in seen:
                raise ValueError(f"Duplicate action policy: {policy.action_type}")
            seen.add(policy.action_type)
