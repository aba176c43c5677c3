"""
approval_kernel.services.approval_service -- The approval state machine.

Responsibility:
    Owns every legal transition of an approval request: create, decide,
    delegate, request-info, escalate, cancel, expire.  Records decisions,
    runs the configured resolution strategy, writes the transition history
    and hands outbound events to the publisher once the change is durable.

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/, services/
    and the pure approval_engines.  Talks to the dispatch layer only
    through the ``EventPublisher`` protocol.

Invariants enforced:
    - ``APPROVAL_TRANSITIONS`` is checked before every status change.
    - Terminal requests never change: decisions, approvers and status are
      frozen once approved / rejected / cancelled / expired.
    - The decision log only grows (append-only model + listeners).
    - Open requests always have at least one active approver.
    - One decision per approver slot and per acting person; an identical
      resubmission is a no-op.
    - Events are enqueued only after commit, so a retried write never
      publishes twice.  Publisher failures never fail the operation.
    - Time-driven escalation / expiry re-checks the deadline inside the
      optimistic write, so a breach is escalated at most once.

Failure modes:
    - UnauthenticatedError when an operation arrives without an actor.
    - ValidationError, NotFoundError, InvalidStateError,
      UnauthorizedDecisionError, AlreadyDecidedError, DuplicateRequestError,
      InvalidDelegationError, StrategyNotFoundError as documented per method.
    - ConcurrentModificationError when the optimistic write keeps losing.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from approval_kernel.domain.approval import (
    SYSTEM_ACTOR,
    ActionType,
    ApprovalRequest,
    ApprovalStatus,
    ApprovalStrategy,
    ApproverKind,
    ApproverSpec,
    DecisionOutcome,
    DecisionRecord,
    EscalationEvent,
    EscalationReason,
    EscalationStrategy,
    Priority,
    can_transition,
)
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.directory import ApproverDirectory
from approval_kernel.domain import events as topics
from approval_kernel.domain.events import EventPublisher
from approval_kernel.exceptions import (
    AlreadyDecidedError,
    DuplicateRequestError,
    InvalidDelegationError,
    InvalidStateError,
    UnauthenticatedError,
    UnauthorizedDecisionError,
    ValidationError,
)
from approval_kernel.logging_config import LogContext, get_logger
from approval_kernel.models.approval import (
    ApprovalApproverModel,
    ApprovalDecisionModel,
    ApprovalHistoryModel,
    ApprovalRequestModel,
)
from approval_kernel.models.escalation import EscalationEventModel
from approval_kernel.services.action_registry import ActionRegistry
from approval_kernel.services.delegation_service import DelegationManager
from approval_kernel.services.request_store import ApprovalRequestStore
from approval_kernel.utils.hashing import canonicalize_json, compute_fingerprint
from approval_engines.strategies import (
    StrategyRegistry,
    current_order,
    pending_approvers,
    resolve_decisions,
    strategy_key,
)

logger = get_logger("services.approval")

Outbound = list[tuple[str, dict[str, Any]]]
ApproverPlanner = Callable[[ApprovalRequest], Sequence[ApproverSpec]]


@dataclass(frozen=True)
class EscalationResult:
    request: ApprovalRequest
    event: EscalationEvent | None

    @property
    def escalated(self) -> bool:
        return self.event is not None


def _require_actor(actor_id: str | None, operation: str) -> str:
    if not actor_id or not str(actor_id).strip():
        raise UnauthenticatedError(operation)
    return str(actor_id)


def _unique(ids: Sequence[str]) -> list[str]:
    seen: dict[str, None] = {}
    for i in ids:
        seen.setdefault(i, None)
    return list(seen)


class ApprovalStateMachine:
    """Manages the approval request lifecycle."""

    def __init__(
        self,
        store: ApprovalRequestStore,
        strategies: StrategyRegistry,
        delegations: DelegationManager,
        directory: ApproverDirectory,
        publisher: EventPublisher,
        actions: ActionRegistry | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._strategies = strategies
        self._delegations = delegations
        self._directory = directory
        self._publisher = publisher
        self._actions = actions or ActionRegistry()
        self._clock = clock or SystemClock()

    @property
    def store(self) -> ApprovalRequestStore:
        return self._store

    # =========================================================================
    # create
    # =========================================================================

    def create(
        self,
        actor_id: str,
        action_type: ActionType | str,
        approvers: Sequence[ApproverSpec | str],
        strategy: ApprovalStrategy | str | None = None,
        deadline_at: datetime | None = None,
        context: dict[str, Any] | None = None,
        *,
        target_entity: str = "",
        target_entity_id: str = "",
        priority: Priority | int | None = None,
        value: Decimal | str | int | None = None,
        custom_strategy: str | None = None,
    ) -> ApprovalRequest:
        """Open a new approval request on behalf of ``actor_id`` (the requester).

        Raises:
            ValidationError: malformed approvers, strategy, deadline or context.
            StrategyNotFoundError: the strategy is not registered.
            DuplicateRequestError: an open request has the same fingerprint.
        """
        requester_id = _require_actor(actor_id, "create")
        now = self._clock.now()

        try:
            action = ActionType(action_type)
        except ValueError:
            raise ValidationError(f"Unknown action type: {action_type!r}", field="action_type") from None
        policy = self._actions.policy_for(action)

        specs = self._validate_approvers(approvers, requester_id)

        try:
            strategy_enum = ApprovalStrategy(strategy or policy.default_strategy)
        except ValueError:
            raise ValidationError(f"Unknown strategy: {strategy!r}", field="strategy") from None
        # Raises StrategyNotFoundError for unknown / unregistered keys
        self._strategies.get(strategy_key(strategy_enum, custom_strategy))
        if strategy_enum is not ApprovalStrategy.CUSTOM:
            custom_strategy = None

        if deadline_at is None:
            deadline_at = now + timedelta(hours=policy.default_deadline_hours)
        elif deadline_at.tzinfo is None:
            raise ValidationError("deadline_at must be timezone-aware", field="deadline_at")

        try:
            priority_enum = Priority(priority if priority is not None else policy.default_priority)
        except ValueError:
            raise ValidationError(f"Unknown priority: {priority!r}", field="priority") from None

        if value is not None:
            try:
                value = Decimal(str(value))
            except InvalidOperation:
                raise ValidationError(f"Invalid value: {value!r}", field="value") from None
            if value < 0:
                raise ValidationError("value must not be negative", field="value")

        try:
            # Decimals, datetimes and UUIDs are stored in their canonical string form
            context = json.loads(canonicalize_json(dict(context or {})))
        except TypeError as exc:
            raise ValidationError(f"context is not serializable: {exc}", field="context") from None

        fingerprint = compute_fingerprint(
            requester_id,
            action.value,
            {**context, "target_entity": target_entity, "target_entity_id": target_entity_id},
            policy.fingerprint_fields,
        )
        existing = self._store.find_open_by_fingerprint(fingerprint)
        if existing is not None:
            raise DuplicateRequestError(
                existing_request_id=str(existing.request_id),
                action_type=action.value,
                requester_id=requester_id,
            )

        request_id = uuid4()
        model = ApprovalRequestModel(
            id=request_id,
            action_type=action.value,
            target_entity=target_entity,
            target_entity_id=target_entity_id,
            requester_id=requester_id,
            status=ApprovalStatus.PENDING.value,
            strategy=strategy_enum.value,
            custom_strategy=custom_strategy,
            priority=int(priority_enum),
            value=value,
            context_data=context,
            fingerprint=fingerprint,
            open_fingerprint=fingerprint,
            deadline_at=deadline_at,
            original_deadline_at=deadline_at,
            escalation_count=0,
            created_at=now,
            updated_at=now,
            version=1,
        )
        for position, spec in enumerate(specs):
            model.approvers.append(
                ApprovalApproverModel.from_dto(spec, position=position, added_at=now)
            )
        model.history.append(
            ApprovalHistoryModel(
                sequence=1,
                previous_status=None,
                new_status=ApprovalStatus.PENDING.value,
                actor_id=requester_id,
                reason="created",
                details={"strategy": strategy_enum.value, "approvers": [s.approver_id for s in specs]},
                occurred_at=now,
            )
        )

        request = self._store.insert(model)

        first_level = pending_approvers(request.strategy, request.approvers, ())
        outbound: Outbound = [
            self._notification(
                topics.REQUEST_CREATED, request,
                recipients=[a.approver_id for a in first_level],
                summary=f"Approval requested by {requester_id} for {action.value}",
            ),
            self._audit(request, None, requester_id, "created", now),
        ]
        self._publish(request, outbound)

        logger.info(
            "approval_request_created",
            extra={
                "request_id": str(request_id),
                "action_type": action.value,
                "requester_id": requester_id,
                "strategy": strategy_enum.value,
                "approver_count": len(specs),
                "deadline_at": deadline_at,
            },
        )
        return request

    def _validate_approvers(
        self, approvers: Sequence[ApproverSpec | str], requester_id: str,
    ) -> list[ApproverSpec]:
        if not approvers:
            raise ValidationError("At least one approver is required", field="approvers")
        specs: list[ApproverSpec] = []
        seen: set[str] = set()
        for item in approvers:
            spec = ApproverSpec(approver_id=item) if isinstance(item, str) else item
            if not spec.approver_id:
                raise ValidationError("Approver id must not be empty", field="approvers")
            if spec.approver_id in seen:
                raise ValidationError(f"Duplicate approver: {spec.approver_id}", field="approvers")
            if spec.approver_id == requester_id:
                raise ValidationError("The requester cannot approve their own request", field="approvers")
            if spec.order < 1 or spec.weight < 1:
                raise ValidationError(
                    f"Approver {spec.approver_id} needs order >= 1 and weight >= 1",
                    field="approvers",
                )
            if not self._directory.is_valid_approver(spec.approver_id):
                raise ValidationError(f"Unknown approver: {spec.approver_id}", field="approvers")
            seen.add(spec.approver_id)
            specs.append(spec)
        return specs

    # =========================================================================
    # decide
    # =========================================================================

    def decide(
        self,
        request_id: UUID,
        approver_id: str,
        outcome: DecisionOutcome | str,
        comment: str = "",
    ) -> ApprovalRequest:
        """Record ``approver_id``'s decision and resolve the request if possible.

        Raises:
            NotFoundError, InvalidStateError, UnauthorizedDecisionError,
            AlreadyDecidedError (different outcome than before).
        """
        actor_id = _require_actor(approver_id, "decide")
        try:
            outcome = DecisionOutcome(outcome)
        except ValueError:
            raise ValidationError(f"Unknown outcome: {outcome!r}", field="outcome") from None

        def apply(model: ApprovalRequestModel, session: Session) -> Outbound:
            now = self._clock.now()
            request = model.to_dto()

            previous = next(
                (d for d in reversed(request.decisions) if d.actor_id == actor_id), None,
            )
            if previous is not None and previous.outcome is outcome:
                return []

            self._require_open(request, "decide")

            if previous is not None:
                raise AlreadyDecidedError(str(request.request_id), actor_id, previous.outcome.value)

            slots = self._delegations.effective_slots(actor_id, request, now, session)
            if not slots:
                raise UnauthorizedDecisionError(
                    str(request.request_id), actor_id, "not an effective approver",
                )

            undecided = [e for e in slots if request.decision_for(e.slot.approver_id) is None]
            if not undecided:
                earlier = request.decision_for(slots[0].slot.approver_id)
                if earlier.outcome is outcome:
                    return []
                raise AlreadyDecidedError(
                    str(request.request_id), slots[0].slot.approver_id, earlier.outcome.value,
                )

            if request.strategy is ApprovalStrategy.HIERARCHICAL:
                level = current_order(request.approvers, request.decisions)
                in_turn = [e for e in undecided if e.slot.order == level]
                if not in_turn:
                    raise UnauthorizedDecisionError(
                        str(request.request_id), actor_id,
                        f"not their turn; level {level} has not decided",
                    )
                undecided = in_turn

            chosen = undecided[0]
            if outcome is DecisionOutcome.APPROVE:
                self._check_value_limit(request, actor_id, chosen.slot)

            record = DecisionRecord(
                decision_id=uuid4(),
                request_id=request.request_id,
                sequence=len(request.decisions) + 1,
                approver_id=chosen.slot.approver_id,
                actor_id=actor_id,
                outcome=outcome,
                comment=comment or "",
                decided_at=now,
            )
            model.decisions.append(
                ApprovalDecisionModel(
                    id=record.decision_id,
                    sequence=record.sequence,
                    approver_id=record.approver_id,
                    actor_id=record.actor_id,
                    outcome=record.outcome.value,
                    comment=record.comment,
                    decided_at=record.decided_at,
                )
            )

            decisions = request.decisions + (record,)
            resolution = resolve_decisions(
                strategy_key=strategy_key(request.strategy, request.custom_strategy),
                approvers=request.approvers,
                decisions=decisions,
                registry=self._strategies,
            )

            previous_status = request.status
            details = {
                "approver_id": record.approver_id,
                "outcome": outcome.value,
                "delegated_from": (
                    chosen.delegation.from_approver_id if chosen.delegation else None
                ),
                "resolution": resolution.reason,
            }
            if resolution.is_resolved:
                new_status = (
                    ApprovalStatus.APPROVED
                    if resolution.outcome is DecisionOutcome.APPROVE
                    else ApprovalStatus.REJECTED
                )
                self._transition(model, new_status, now, "decide")
                self._close(model, now)
                topic = (
                    topics.DECISION_APPROVED
                    if new_status is ApprovalStatus.APPROVED
                    else topics.DECISION_REJECTED
                )
                recipients = [request.requester_id] + list(request.approver_ids)
                summary = f"Request {new_status.value}: {resolution.reason}"
            else:
                new_status = ApprovalStatus.IN_ANALYSIS
                self._transition(model, new_status, now, "decide")
                topic = topics.DECISION_RECORDED
                still_pending = pending_approvers(request.strategy, request.approvers, decisions)
                recipients = [request.requester_id] + [a.approver_id for a in still_pending]
                summary = f"{actor_id} decided {outcome.value}; {resolution.reason}"

            self._record_history(model, previous_status, new_status, actor_id, "decision", details, now)
            after = model.to_dto()
            return [
                self._notification(
                    topic, after, recipients=recipients, summary=summary,
                    approver_id=record.approver_id, actor_id=actor_id,
                    outcome=outcome.value, comment=record.comment,
                ),
                self._audit(after, previous_status, actor_id, "decision", now, details),
            ]

        with LogContext.bind(request_id=str(request_id), actor_id=actor_id):
            result = self._store.mutate(request_id, apply)
            self._publish(result.request, result.value)
            if result.changed:
                logger.info(
                    "approval_decision_recorded",
                    extra={
                        "outcome": outcome.value,
                        "status": result.request.status.value,
                        "attempts": result.attempts,
                    },
                )
            else:
                logger.info("approval_decision_resubmitted", extra={"outcome": outcome.value})
        return result.request

    def _check_value_limit(self, request: ApprovalRequest, actor_id: str, slot: ApproverSpec) -> None:
        if request.value is None:
            return
        limits = [slot.max_value]
        profile = self._directory.get_profile(actor_id)
        if profile is not None:
            limits.append(profile.max_value)
        bounded = [limit for limit in limits if limit is not None]
        if bounded and request.value > min(bounded):
            raise UnauthorizedDecisionError(
                str(request.request_id), actor_id,
                f"value {request.value} exceeds approval limit {min(bounded)}",
            )

    # =========================================================================
    # delegate
    # =========================================================================

    def delegate(
        self,
        request_id: UUID,
        actor_id: str,
        from_approver_id: str,
        to_approver_id: str,
        scope_override: str | None = None,
    ) -> ApprovalRequest:
        """Hand ``from_approver_id``'s slot on this request to ``to_approver_id``.

        Requires an active delegation from -> to covering the request.

        Raises:
            InvalidStateError, UnauthorizedDecisionError, InvalidDelegationError.
        """
        actor_id = _require_actor(actor_id, "delegate")

        def invalid(reason: str) -> InvalidDelegationError:
            return InvalidDelegationError(from_approver_id, to_approver_id, reason)

        def apply(model: ApprovalRequestModel, session: Session) -> Outbound:
            now = self._clock.now()
            request = model.to_dto()
            self._require_open(request, "delegate")

            if actor_id != from_approver_id and not self._directory.is_admin(actor_id):
                raise UnauthorizedDecisionError(
                    str(request.request_id), actor_id,
                    "only the delegating approver or an administrator may delegate",
                )
            slot = request.approver(from_approver_id)
            if slot is None:
                raise UnauthorizedDecisionError(
                    str(request.request_id), from_approver_id,
                    "not an approver on this request",
                )
            if request.decision_for(from_approver_id) is not None:
                raise invalid("the approver has already decided")
            if not slot.can_delegate:
                raise invalid("this approver slot may not be delegated")
            if to_approver_id == request.requester_id:
                raise invalid("cannot delegate to the requester")
            if request.approver(to_approver_id) is not None:
                raise invalid(f"'{to_approver_id}' is already an approver on this request")

            delegation = self._delegations.find_active(from_approver_id, to_approver_id, now, session)
            if delegation is None:
                raise invalid("no active delegation for this pair")
            if scope_override is not None:
                if scope_override != request.action_type.value:
                    raise invalid(f"scope '{scope_override}' does not cover '{request.action_type.value}'")
                if not self._directory.has_scope_authority(from_approver_id, scope_override):
                    raise invalid(f"no authority over scope '{scope_override}'")
                covered = delegation.max_value is None or request.value is None or (
                    request.value <= delegation.max_value
                )
            else:
                covered = delegation.covers(request.action_type.value, request.value)
            if not covered:
                raise invalid("delegation does not cover this request")

            replacement = ApproverSpec(
                approver_id=to_approver_id,
                kind=ApproverKind.USER,
                weight=slot.weight,
                order=slot.order,
                max_value=delegation.max_value,
                can_delegate=False,
                delegated_from=from_approver_id,
            )
            self._swap_slot(model, from_approver_id, replacement, now)

            details = {
                "from_approver_id": from_approver_id,
                "to_approver_id": to_approver_id,
                "delegation_id": str(delegation.delegation_id),
            }
            status = request.status
            self._record_history(model, status, status, actor_id, "delegated", details, now)
            after = model.to_dto()
            return [
                self._notification(
                    topics.APPROVAL_DELEGATED, after,
                    recipients=[to_approver_id, from_approver_id, request.requester_id],
                    summary=f"{from_approver_id} delegated their approval to {to_approver_id}",
                    **details,
                ),
                self._audit(after, status, actor_id, "delegated", now, details),
            ]

        with LogContext.bind(request_id=str(request_id), actor_id=actor_id):
            result = self._store.mutate(request_id, apply)
            self._publish(result.request, result.value)
            logger.info(
                "approval_delegated",
                extra={"from_approver_id": from_approver_id, "to_approver_id": to_approver_id},
            )
        return result.request

    # =========================================================================
    # request_info
    # =========================================================================

    def request_info(self, request_id: UUID, approver_id: str, message: str) -> ApprovalRequest:
        """Ask the requester for more information.  Pending -> InAnalysis."""
        actor_id = _require_actor(approver_id, "request_info")
        if not message or not message.strip():
            raise ValidationError("message must not be empty", field="message")

        def apply(model: ApprovalRequestModel, session: Session) -> Outbound:
            now = self._clock.now()
            request = model.to_dto()
            self._require_open(request, "request information")
            if not self._delegations.effective_slots(actor_id, request, now, session):
                raise UnauthorizedDecisionError(
                    str(request.request_id), actor_id, "not an effective approver",
                )
            previous_status = request.status
            if previous_status is ApprovalStatus.PENDING:
                self._transition(model, ApprovalStatus.IN_ANALYSIS, now, "request information")
            new_status = ApprovalStatus(model.status)
            details = {"message": message}
            self._record_history(model, previous_status, new_status, actor_id, "info_requested", details, now)
            after = model.to_dto()
            return [
                self._notification(
                    topics.INFO_REQUESTED, after,
                    recipients=[request.requester_id],
                    summary=f"{actor_id} requested more information",
                    message=message, approver_id=actor_id,
                ),
                self._audit(after, previous_status, actor_id, "info_requested", now, details),
            ]

        with LogContext.bind(request_id=str(request_id), actor_id=actor_id):
            result = self._store.mutate(request_id, apply)
            self._publish(result.request, result.value)
            logger.info("approval_info_requested")
        return result.request

    # =========================================================================
    # cancel
    # =========================================================================

    def cancel(self, request_id: UUID, actor_id: str, reason: str = "") -> None:
        """Cancel an open request.

        The requester may cancel until the first decision is recorded; an
        administrator may cancel any open request.
        """
        actor_id = _require_actor(actor_id, "cancel")

        def apply(model: ApprovalRequestModel, session: Session) -> Outbound:
            now = self._clock.now()
            request = model.to_dto()
            self._require_open(request, "cancel")
            is_admin = self._directory.is_admin(actor_id)
            if not is_admin:
                if actor_id != request.requester_id:
                    raise UnauthorizedDecisionError(
                        str(request.request_id), actor_id,
                        "only the requester or an administrator may cancel",
                    )
                if request.decisions:
                    raise InvalidStateError(
                        str(request.request_id), request.status.value,
                        "cancel after decisions were recorded (administrator required)",
                    )
            previous_status = request.status
            self._transition(model, ApprovalStatus.CANCELLED, now, "cancel")
            self._close(model, now)
            details = {"reason": reason, "by_admin": is_admin}
            self._record_history(model, previous_status, ApprovalStatus.CANCELLED, actor_id, "cancelled", details, now)
            after = model.to_dto()
            return [
                self._notification(
                    topics.REQUEST_CANCELLED, after,
                    recipients=list(request.approver_ids),
                    summary=f"Request cancelled by {actor_id}" + (f": {reason}" if reason else ""),
                    reason=reason,
                ),
                self._audit(after, previous_status, actor_id, "cancelled", now, details),
            ]

        with LogContext.bind(request_id=str(request_id), actor_id=actor_id):
            result = self._store.mutate(request_id, apply)
            self._publish(result.request, result.value)
            logger.info("approval_request_cancelled", extra={"reason": reason})

    # =========================================================================
    # escalate
    # =========================================================================

    def escalate(
        self,
        request_id: UUID,
        new_approvers: Sequence[ApproverSpec] | None = None,
        strategy: EscalationStrategy = EscalationStrategy.MANUAL,
        reason: EscalationReason = EscalationReason.TIME,
        actor_id: str = SYSTEM_ACTOR,
        *,
        grace_period: timedelta = timedelta(hours=24),
        planner: ApproverPlanner | None = None,
    ) -> EscalationResult:
        """Escalate an open request.

        ``planner`` (preferred) computes the new approver set from the freshly
        loaded request on every write attempt; ``new_approvers`` is a fixed
        replacement; with neither, approvers are unchanged (flag only).

        For ``EscalationReason.TIME`` the escalation is skipped (no event)
        unless the deadline is still in the past when the write commits.
        """
        actor_id = _require_actor(actor_id, "escalate")
        reason = EscalationReason(reason)
        strategy = EscalationStrategy(strategy)

        def apply(model: ApprovalRequestModel, session: Session) -> tuple[Outbound, EscalationEvent | None]:
            now = self._clock.now()
            request = model.to_dto()
            self._require_open(request, "escalate")
            if reason is EscalationReason.TIME and request.deadline_at > now:
                return [], None

            if planner is not None:
                target = list(planner(request))
            elif new_approvers is not None:
                target = list(new_approvers)
            else:
                target = list(request.approvers)
            if not target:
                raise ValidationError("Escalation would leave the request without approvers", field="new_approvers")
            if any(a.approver_id == request.requester_id for a in target):
                raise ValidationError("The requester cannot be an escalation target", field="new_approvers")

            previous_ids = list(request.approver_ids)
            added = self._replace_active(model, [a.approver_id for a in target], target, now)

            level = request.escalation_count + 1
            new_deadline = now + grace_period
            event = EscalationEvent(
                event_id=uuid4(),
                request_id=request.request_id,
                level=level,
                triggered_at=now,
                reason=reason,
                strategy_used=strategy,
                previous_approvers=tuple(previous_ids),
                new_approvers=tuple(a.approver_id for a in target),
                actor_id=actor_id,
                previous_deadline_at=request.deadline_at,
                new_deadline_at=new_deadline,
            )
            session.add(EscalationEventModel.from_dto(event))

            model.escalation_count = level
            model.deadline_at = new_deadline
            previous_status = request.status
            self._transition(model, ApprovalStatus.ESCALATED, now, "escalate")

            details = {
                "level": level,
                "reason": reason.value,
                "strategy": strategy.value,
                "previous_approvers": previous_ids,
                "new_approvers": list(event.new_approvers),
                "new_deadline_at": new_deadline.isoformat(),
            }
            self._record_history(model, previous_status, ApprovalStatus.ESCALATED, actor_id, "escalated", details, now)
            after = model.to_dto()
            notify = added or [
                a.approver_id
                for a in pending_approvers(after.strategy, after.approvers, after.decisions)
            ]
            outbound = [
                self._notification(
                    topics.ESCALATION_TRIGGERED, after,
                    recipients=list(notify) + [request.requester_id],
                    summary=f"Escalated to level {level} ({reason.value}, {strategy.value})",
                    **details,
                ),
                self._audit(after, previous_status, actor_id, "escalated", now, details),
            ]
            return outbound, event

        with LogContext.bind(request_id=str(request_id), actor_id=actor_id):
            result = self._store.mutate(request_id, apply)
            outbound, event = result.value
            self._publish(result.request, outbound)
            if event is not None:
                logger.info(
                    "approval_request_escalated",
                    extra={
                        "observability_event": "escalation_triggered",
                        "level": event.level,
                        "reason": event.reason.value,
                        "strategy": event.strategy_used.value,
                    },
                )
        return EscalationResult(request=result.request, event=event)

    def escalate_manually(
        self,
        request_id: UUID,
        actor_id: str,
        new_approvers: Sequence[ApproverSpec] | None = None,
        *,
        reason: EscalationReason = EscalationReason.MANUAL,
        strategy: EscalationStrategy = EscalationStrategy.MANUAL,
        grace_period: timedelta = timedelta(hours=24),
    ) -> EscalationResult:
        """Caller-initiated escalation by an administrator, the requester or an approver."""
        actor_id = _require_actor(actor_id, "escalate_manually")
        request = self._store.get(request_id)
        allowed = (
            self._directory.is_admin(actor_id)
            or actor_id == request.requester_id
            or self._delegations.is_effective_approver(actor_id, request)
        )
        if not allowed:
            raise UnauthorizedDecisionError(str(request_id), actor_id, "may not escalate this request")
        if reason is EscalationReason.TIME:
            raise ValidationError("Manual escalation cannot use the time reason", field="reason")
        if new_approvers is not None:
            self._validate_approvers(new_approvers, request.requester_id)
        return self.escalate(
            request_id,
            new_approvers=new_approvers,
            strategy=strategy,
            reason=reason,
            actor_id=actor_id,
            grace_period=grace_period,
        )

    # =========================================================================
    # expire / remind
    # =========================================================================

    def expire(
        self,
        request_id: UUID,
        actor_id: str = SYSTEM_ACTOR,
        reason: str = "escalation_exhausted",
    ) -> ApprovalRequest | None:
        """Move an open, past-deadline request to Expired.

        Returns None (no change) when the deadline has moved into the future.
        """
        actor_id = _require_actor(actor_id, "expire")

        def apply(model: ApprovalRequestModel, session: Session) -> Outbound | None:
            now = self._clock.now()
            request = model.to_dto()
            self._require_open(request, "expire")
            if request.deadline_at > now:
                return None
            previous_status = request.status
            self._transition(model, ApprovalStatus.EXPIRED, now, "expire")
            self._close(model, now)
            details = {"reason": reason, "escalation_count": request.escalation_count}
            self._record_history(model, previous_status, ApprovalStatus.EXPIRED, actor_id, "expired", details, now)
            after = model.to_dto()
            return [
                self._notification(
                    topics.REQUEST_EXPIRED, after,
                    recipients=[request.requester_id] + list(request.approver_ids),
                    summary="Request expired without a decision",
                    reason=reason,
                ),
                self._audit(after, previous_status, actor_id, "expired", now, details),
            ]

        with LogContext.bind(request_id=str(request_id), actor_id=actor_id):
            result = self._store.mutate(request_id, apply)
            if result.value is None:
                return None
            self._publish(result.request, result.value)
            logger.info("approval_request_expired", extra={"reason": reason})
        return result.request

    def remind(self, request_id: UUID) -> bool:
        """Send ``deadline.approaching`` once per deadline value."""

        def apply(model: ApprovalRequestModel, session: Session) -> Outbound:
            request = model.to_dto()
            if not request.is_open or model.reminded_for_deadline == model.deadline_at:
                return []
            model.reminded_for_deadline = model.deadline_at
            pending = pending_approvers(request.strategy, request.approvers, request.decisions)
            return [
                self._notification(
                    topics.DEADLINE_APPROACHING, request,
                    recipients=[a.approver_id for a in pending],
                    summary=f"Decision due by {request.deadline_at.isoformat()}",
                    deadline_at=request.deadline_at.isoformat(),
                )
            ]

        result = self._store.mutate(request_id, apply)
        self._publish(result.request, result.value)
        return bool(result.value)

    # =========================================================================
    # Internals
    # =========================================================================

    @staticmethod
    def _require_open(request: ApprovalRequest, attempted: str) -> None:
        if request.is_terminal:
            raise InvalidStateError(str(request.request_id), request.status.value, attempted)

    @staticmethod
    def _transition(
        model: ApprovalRequestModel, target: ApprovalStatus, now: datetime, attempted: str,
    ) -> None:
        current = ApprovalStatus(model.status)
        if not can_transition(current, target):
            raise InvalidStateError(str(model.id), current.value, attempted)
        model.status = target.value

    @staticmethod
    def _close(model: ApprovalRequestModel, now: datetime) -> None:
        model.resolved_at = now
        model.open_fingerprint = None

    @staticmethod
    def _record_history(
        model: ApprovalRequestModel,
        previous: ApprovalStatus | None,
        new: ApprovalStatus,
        actor_id: str,
        reason: str,
        details: dict[str, Any],
        now: datetime,
    ) -> None:
        model.history.append(
            ApprovalHistoryModel(
                sequence=len(model.history) + 1,
                previous_status=previous.value if previous else None,
                new_status=new.value,
                actor_id=actor_id,
                reason=reason,
                details=details,
                occurred_at=now,
            )
        )

    @staticmethod
    def _replace_active(
        model: ApprovalRequestModel,
        keep_ids: Sequence[str],
        target: Sequence[ApproverSpec],
        now: datetime,
    ) -> list[str]:
        """Make the active slots equal ``target``; returns the added ids.

        Slots that already decided stay active so their decisions keep counting.
        """
        keep = set(keep_ids)
        decided = {d.approver_id for d in model.decisions}
        active = {a.approver_id: a for a in model.approvers if a.active}
        for approver_id, slot in active.items():
            if approver_id in keep or approver_id in decided:
                continue
            slot.active = False
            slot.deactivated_at = now

        added: list[str] = []
        position = len(model.approvers)
        for spec in target:
            if spec.approver_id in active:
                continue
            model.approvers.append(
                ApprovalApproverModel.from_dto(spec, position=position, added_at=now)
            )
            position += 1
            added.append(spec.approver_id)
        return added

    @staticmethod
    def _swap_slot(
        model: ApprovalRequestModel, old_id: str, replacement: ApproverSpec, now: datetime,
    ) -> None:
        position = len(model.approvers)
        for slot in model.approvers:
            if slot.active and slot.approver_id == old_id:
                slot.active = False
                slot.deactivated_at = now
        model.approvers.append(
            ApprovalApproverModel.from_dto(replacement, position=position, added_at=now)
        )

    def _notification(
        self,
        topic: str,
        request: ApprovalRequest,
        *,
        recipients: Sequence[str],
        summary: str,
        **extra: Any,
    ) -> tuple[str, dict[str, Any]]:
        payload: dict[str, Any] = {
            "request_id": str(request.request_id),
            "action_type": request.action_type.value,
            "status": request.status.value,
            "recipients": _unique([r for r in recipients if r]),
            "summary": summary,
            "priority": int(request.priority),
            "target_entity": request.target_entity,
            "target_entity_id": request.target_entity_id,
            "context": request.context_data,
        }
        payload.update(extra)
        return topic, payload

    def _audit(
        self,
        request: ApprovalRequest,
        previous: ApprovalStatus | None,
        actor_id: str,
        transition_reason: str,
        at: datetime,
        details: dict[str, Any] | None = None,
    ) -> tuple[str, dict[str, Any]]:
        return topics.AUDIT_RECORDED, {
            "request_id": str(request.request_id),
            "action_type": request.action_type.value,
            "previous_status": previous.value if previous else None,
            "new_status": request.status.value,
            "actor_id": actor_id,
            "timestamp": at.isoformat(),
            "transition_reason": transition_reason,
            "details": details or {},
        }

    def _publish(self, request: ApprovalRequest, outbound: Outbound | None) -> None:
        for topic, payload in outbound or ():
            try:
                self._publisher.enqueue(
                    topic, payload,
                    ordering_key=str(request.request_id),
                    priority=request.priority,
                )
            except Exception:
                # The transition is already durable; delivery problems stay in
                # the dispatch layer.
                logger.exception(
                    "approval_event_enqueue_failed",
                    extra={"topic": topic, "request_id": str(request.request_id)},
                )
