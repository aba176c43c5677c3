"""
Collaborator protocols for approver identity and organisational structure.

The engine never stores resolved identities for role / unit approvers; it
asks an ``ApproverDirectory`` at decision and notification time.  Escalation
targets come from an ``OrgHierarchyProvider``.
"""

from __future__ import annotations

from typing import Protocol

from approval_kernel.domain.approval import Priority
from approval_kernel.domain.policy import ApproverProfile


class ApproverDirectory(Protocol):
    """User / role directory.  Implementations must be side-effect free."""

    def is_valid_approver(self, approver_id: str) -> bool: ...

    def get_profile(self, approver_id: str) -> ApproverProfile | None: ...

    def has_scope_authority(self, approver_id: str, scope: str) -> bool: ...

    def is_admin(self, actor_id: str) -> bool: ...

    def resolve_recipients(self, approver_id: str) -> tuple[str, ...]:
        """Concrete user ids behind an approver reference."""
        ...


class OrgHierarchyProvider(Protocol):
    """Organisational hierarchy used to compute escalation targets."""

    def superiors_of(self, approver_id: str) -> tuple[str, ...]: ...

    def escalation_pool(self, priority: Priority) -> tuple[str, ...]: ...
