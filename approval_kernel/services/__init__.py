"""
Kernel services: the imperative shell around the domain.

- ApprovalRequestStore: optimistic read-modify-write persistence
- ApprovalStateMachine: every lifecycle transition
- DelegationManager: delegations and effective approvers
- EscalationEngine: deadline scan, escalation, expiry, reminders
- ActionRegistry: which actions need approval
"""

from approval_kernel.services.action_registry import ActionRegistry, auto_approval_matches
from approval_kernel.services.approval_service import ApprovalStateMachine, EscalationResult
from approval_kernel.services.delegation_service import DelegationManager, EffectiveSlot
from approval_kernel.services.directory import ConfiguredApproverDirectory, ConfiguredOrgHierarchy
from approval_kernel.services.escalation_service import EscalationEngine, TickReport
from approval_kernel.services.request_store import ApprovalRequestStore, MutationResult

__all__ = [
    "ActionRegistry",
    "ApprovalRequestStore",
    "ApprovalStateMachine",
    "ConfiguredApproverDirectory",
    "ConfiguredOrgHierarchy",
    "DelegationManager",
    "EffectiveSlot",
    "EscalationEngine",
    "EscalationResult",
    "MutationResult",
    "TickReport",
    "auto_approval_matches",
]
