"""
Configuration-backed approver directory and org hierarchy.

Default implementations of the ``ApproverDirectory`` and
``OrgHierarchyProvider`` protocols, seeded from ``EngineSettings``.
Deployments with a real user/role service replace them at wiring time.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence

from approval_kernel.domain.approval import ApproverKind, Priority
from approval_kernel.domain.policy import ApproverProfile


class ConfiguredApproverDirectory:
    """In-memory directory built from approver profiles."""

    def __init__(self, profiles: Iterable[ApproverProfile] = ()) -> None:
        self._profiles: dict[str, ApproverProfile] = {}
        for profile in profiles:
            if profile.approver_id in self._profiles:
                raise ValueError(f"Duplicate approver profile: {profile.approver_id}")
            self._profiles[profile.approver_id] = profile

    def is_valid_approver(self, approver_id: str) -> bool:
        return approver_id in self._profiles

    def get_profile(self, approver_id: str) -> ApproverProfile | None:
        return self._profiles.get(approver_id)

    def has_scope_authority(self, approver_id: str, scope: str) -> bool:
        profile = self._profiles.get(approver_id)
        if profile is None:
            return False
        return not profile.scopes or scope in profile.scopes

    def is_admin(self, actor_id: str) -> bool:
        profile = self._profiles.get(actor_id)
        return profile is not None and profile.is_admin

    def resolve_recipients(self, approver_id: str) -> tuple[str, ...]:
        profile = self._profiles.get(approver_id)
        if profile is None or profile.kind is ApproverKind.USER:
            return (approver_id,)
        return profile.members


class ConfiguredOrgHierarchy:
    """Superior chains and per-priority escalation pools."""

    def __init__(
        self,
        superiors: Mapping[str, Sequence[str]] | None = None,
        pools: Mapping[Priority, Sequence[str]] | None = None,
    ) -> None:
        self._superiors = {k: tuple(v) for k, v in (superiors or {}).items()}
        self._pools = {Priority(k): tuple(v) for k, v in (pools or {}).items()}

    def superiors_of(self, approver_id: str) -> tuple[str, ...]:
        return self._superiors.get(approver_id, ())

    def escalation_pool(self, priority: Priority) -> tuple[str, ...]:
        """Pool for ``priority``, else the closest lower configured priority."""
        candidates = [p for p in self._pools if p <= priority]
        if not candidates:
            return ()
        return self._pools[max(candidates)]
