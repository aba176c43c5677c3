"""
DelegationManager -- temporary transfer of approval authority.

Responsibility:
    Validates and stores delegations, and answers "on whose behalf may this
    actor decide on this request right now?".

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/.

Invariants enforced:
    - from <> to; valid_from < valid_until; span <= 90 days.
    - Both parties are valid approvers; the delegator may delegate and has
      authority over the scope; a delegation never carries a higher value
      limit than the delegator holds.
    - One hop only: a delegate acts for approvers DIRECTLY listed on the
      request, never for someone who is themselves only a delegate.
    - Windows are closed intervals: active iff valid_from <= at <= valid_until.
    - The requester is never an effective approver of their own request.

Failure modes:
    - InvalidDelegationError for any violated constraint above.
    - ValidationError for naive datetimes or an unknown scope.
    - NotFoundError when revoking an unknown delegation.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from approval_kernel.domain.approval import (
    MAX_DELEGATION_SPAN,
    ActionType,
    ApprovalRequest,
    ApproverKind,
    ApproverSpec,
    Delegation,
)
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.directory import ApproverDirectory
from approval_kernel.exceptions import (
    InvalidDelegationError,
    NotFoundError,
    UnauthenticatedError,
    ValidationError,
)
from approval_kernel.logging_config import get_logger
from approval_kernel.models.delegation import DelegationModel

logger = get_logger("services.delegation")


@dataclass(frozen=True)
class EffectiveSlot:
    """An approver slot an actor may decide for, and the delegation used (if any)."""

    slot: ApproverSpec
    delegation: Delegation | None = None

    @property
    def is_direct(self) -> bool:
        return self.delegation is None


class DelegationManager:
    """
    Creates delegations and resolves effective approvers.

    Contract:
        ``effective_slots`` is the single authority for "may X decide on
        request R at time T".  The state machine calls it inside its own
        optimistic write session so the check and the write see the same
        snapshot.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        directory: ApproverDirectory,
        clock: Clock | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._directory = directory
        self._clock = clock or SystemClock()

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    def create_delegation(
        self,
        from_approver_id: str,
        to_approver_id: str,
        valid_from: datetime,
        valid_until: datetime,
        *,
        actor_id: str,
        scope: str | None = None,
        max_value: Decimal | None = None,
    ) -> Delegation:
        """Validate and persist a delegation.

        Raises:
            InvalidDelegationError: on any constraint violation.
            ValidationError: on naive datetimes or an unknown scope.
        """
        if not actor_id:
            raise UnauthenticatedError("create_delegation")
        if valid_from.tzinfo is None or valid_until.tzinfo is None:
            raise ValidationError("Delegation window must be timezone-aware", field="valid_from")

        def invalid(reason: str) -> InvalidDelegationError:
            return InvalidDelegationError(from_approver_id, to_approver_id, reason)

        if from_approver_id == to_approver_id:
            raise invalid("an approver cannot delegate to themselves")
        if valid_from >= valid_until:
            raise invalid("valid_from must be before valid_until")
        if valid_until - valid_from > MAX_DELEGATION_SPAN:
            raise invalid(f"span exceeds {MAX_DELEGATION_SPAN.days} days")
        if actor_id != from_approver_id and not self._directory.is_admin(actor_id):
            raise invalid("only the delegator or an administrator may delegate")
        for party in (from_approver_id, to_approver_id):
            if not self._directory.is_valid_approver(party):
                raise invalid(f"'{party}' is not a valid approver")

        profile = self._directory.get_profile(from_approver_id)
        if profile is not None and not profile.can_delegate:
            raise invalid(f"'{from_approver_id}' is not allowed to delegate")

        if scope is not None:
            try:
                scope = ActionType(scope).value
            except ValueError:
                raise ValidationError(f"Unknown delegation scope: {scope!r}", field="scope") from None
            if not self._directory.has_scope_authority(from_approver_id, scope):
                raise invalid(f"'{from_approver_id}' has no authority over scope '{scope}'")

        if max_value is not None:
            max_value = Decimal(str(max_value))
        held = profile.max_value if profile is not None else None
        if held is not None:
            if max_value is None:
                max_value = held
            elif max_value > held:
                raise invalid(f"value limit {max_value} exceeds delegator's limit {held}")

        delegation = Delegation(
            delegation_id=uuid4(),
            from_approver_id=from_approver_id,
            to_approver_id=to_approver_id,
            valid_from=valid_from,
            valid_until=valid_until,
            max_value=max_value,
            scope=scope,
            created_by=actor_id,
            created_at=self._clock.now(),
        )
        with self._session_factory() as session:
            session.add(DelegationModel.from_dto(delegation))
            session.commit()

        logger.info(
            "delegation_created",
            extra={
                "delegation_id": str(delegation.delegation_id),
                "from_approver_id": from_approver_id,
                "to_approver_id": to_approver_id,
                "valid_from": valid_from,
                "valid_until": valid_until,
                "scope": scope,
            },
        )
        return delegation

    def revoke_delegation(self, delegation_id: UUID, *, actor_id: str) -> Delegation:
        if not actor_id:
            raise UnauthenticatedError("revoke_delegation")
        with self._session_factory() as session:
            model = session.get(DelegationModel, delegation_id)
            if model is None:
                raise NotFoundError("Delegation", str(delegation_id))
            if actor_id != model.from_approver_id and not self._directory.is_admin(actor_id):
                raise InvalidDelegationError(
                    model.from_approver_id, model.to_approver_id,
                    "only the delegator or an administrator may revoke",
                )
            if model.revoked_at is None:
                model.revoked_at = self._clock.now()
            dto = model.to_dto()
            session.commit()
        logger.info("delegation_revoked", extra={"delegation_id": str(delegation_id)})
        return dto

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get(self, delegation_id: UUID) -> Delegation:
        with self._session_factory() as session:
            model = session.get(DelegationModel, delegation_id)
            if model is None:
                raise NotFoundError("Delegation", str(delegation_id))
            return model.to_dto()

    def active_delegations_to(
        self,
        delegate_id: str,
        at: datetime | None = None,
        session: Session | None = None,
    ) -> list[Delegation]:
        at = at or self._clock.now()
        stmt = select(DelegationModel).where(
            DelegationModel.to_approver_id == delegate_id,
            DelegationModel.valid_from <= at,
            DelegationModel.valid_until >= at,
        ).order_by(DelegationModel.created_at)
        if session is not None:
            rows = list(session.scalars(stmt))
        else:
            with self._session_factory() as own:
                rows = list(own.scalars(stmt))
        return [d for d in (m.to_dto() for m in rows) if d.is_active(at)]

    def find_active(
        self,
        from_approver_id: str,
        to_approver_id: str,
        at: datetime | None = None,
        session: Session | None = None,
    ) -> Delegation | None:
        for delegation in self.active_delegations_to(to_approver_id, at, session):
            if delegation.from_approver_id == from_approver_id:
                return delegation
        return None

    def _direct_match(self, actor_id: str, slot: ApproverSpec) -> bool:
        if slot.approver_id == actor_id:
            return True
        if slot.kind is ApproverKind.USER:
            return False
        return actor_id in self._directory.resolve_recipients(slot.approver_id)

    def effective_slots(
        self,
        actor_id: str,
        request: ApprovalRequest,
        at: datetime | None = None,
        session: Session | None = None,
    ) -> tuple[EffectiveSlot, ...]:
        """Slots ``actor_id`` may decide for; direct slots first."""
        if actor_id == request.requester_id:
            return ()
        at = at or self._clock.now()

        direct = [EffectiveSlot(s) for s in request.approvers if self._direct_match(actor_id, s)]

        delegated: list[EffectiveSlot] = []
        direct_ids = {e.slot.approver_id for e in direct}
        for delegation in self.active_delegations_to(actor_id, at, session):
            if delegation.from_approver_id == request.requester_id:
                continue
            if not delegation.covers(request.action_type.value, request.value):
                continue
            slot = request.approver(delegation.from_approver_id)
            if slot is None or slot.approver_id in direct_ids:
                continue
            if slot.delegated_from is not None:
                # one hop only
                continue
            delegated.append(EffectiveSlot(slot, delegation))
            direct_ids.add(slot.approver_id)

        return tuple(direct + delegated)

    def is_effective_approver(
        self,
        approver_id: str,
        request: ApprovalRequest,
        at: datetime | None = None,
        session: Session | None = None,
    ) -> bool:
        return bool(self.effective_slots(approver_id, request, at, session))
