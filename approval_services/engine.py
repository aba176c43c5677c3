"""
ApprovalEngine -- wiring and the inbound command surface.

Responsibility:
    Builds every engine component exactly once, in dependency order, from
    ``EngineSettings`` and injected collaborators, and exposes the command
    and query surface the (excluded) HTTP layer calls: create, decide,
    delegate, request_info, cancel, escalate_manually, list_by_filter,
    get_by_id, get_history.

Architecture position:
    Services -- the outermost layer.  May import from every package.
    No ambient global state: all collaborators are constructor arguments.

Invariants enforced:
    - Single-instance lifecycle for every component within one engine.
    - All components share one Clock, one session factory and one
      DispatchStats counter.
    - Every inbound call carries a caller identity; a missing identity is
      rejected with UnauthenticatedError before any work is done.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from approval_config.schema import EngineSettings
from approval_dispatch.consumers import (
    AuditConsumer,
    AuditSink,
    ConsumerRegistry,
    LoggingAuditSink,
    LoggingNotifier,
    NotificationConsumer,
    Notifier,
)
from approval_dispatch.domain.types import DeliveryReport
from approval_dispatch.services import (
    DeliveryWorker,
    DispatchStats,
    EventDispatcher,
    FallbackLog,
    SqlQueueBroker,
)
from approval_dispatch.services.worker import AlertHook
from approval_engines.strategies import StrategyRegistry, default_strategy_registry
from approval_kernel.db.engine import build_engine, build_session_factory, create_tables
from approval_kernel.domain.approval import (
    ActionType,
    ApprovalMetrics,
    ApprovalRequest,
    ApprovalStrategy,
    ApproverSpec,
    DecisionOutcome,
    Delegation,
    EscalationReason,
    RequestHistory,
)
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.directory import ApproverDirectory, OrgHierarchyProvider
from approval_kernel.domain.events import AUDIT_RECORDED, NOTIFICATION_TOPICS
from approval_kernel.domain.policy import ActionEvaluation
from approval_kernel.exceptions import UnauthenticatedError
from approval_kernel.logging_config import LogContext, get_logger
from approval_kernel.selectors import ApprovalSelector, RequestFilter
from approval_kernel.services import (
    ActionRegistry,
    ApprovalRequestStore,
    ApprovalStateMachine,
    ConfiguredApproverDirectory,
    ConfiguredOrgHierarchy,
    DelegationManager,
    EscalationEngine,
    EscalationResult,
    TickReport,
)

logger = get_logger("services.engine")


def _caller(actor_id: str | None, operation: str) -> str:
    if not actor_id or not str(actor_id).strip():
        raise UnauthenticatedError(operation)
    return str(actor_id)


class ApprovalEngine:
    """Central factory and facade for the approval engine.

    Contract:
        Receives a session factory, settings and optional collaborators.
        Constructs every component once and exposes them as public
        attributes (``store``, ``machine``, ``delegations``, ``escalation``,
        ``dispatcher``, ``worker``, ...).

    Guarantees:
        - Commands return as soon as the state change is durable; event
          delivery happens through the dispatcher and worker.
        - ``start()`` / ``stop()`` control every background thread.

    Non-goals:
        - Does NOT authorize callers beyond requiring an identity; role
          checks belong to the calling layer and the state machine rules.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        settings: EngineSettings | None = None,
        *,
        clock: Clock | None = None,
        directory: ApproverDirectory | None = None,
        hierarchy: OrgHierarchyProvider | None = None,
        strategies: StrategyRegistry | None = None,
        notifier: Notifier | None = None,
        audit_sink: AuditSink | None = None,
        alert_hook: AlertHook | None = None,
        fallback_log_path: str | Path | None = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.session_factory = session_factory
        self.clock = clock or SystemClock()

        # Collaborators (configuration-backed defaults)
        self.directory = directory or ConfiguredApproverDirectory(self.settings.approvers)
        self.hierarchy = hierarchy or ConfiguredOrgHierarchy(
            self.settings.hierarchy.superiors, self.settings.hierarchy.pools,
        )
        self.strategies = strategies or default_strategy_registry()
        self.actions = ActionRegistry(self.settings.actions)

        # Dispatch (depends on nothing in the kernel)
        dispatch_settings = self.settings.dispatcher
        self.stats = DispatchStats()
        self.broker = SqlQueueBroker(session_factory, self.clock)
        self.fallback = FallbackLog(fallback_log_path or dispatch_settings.fallback_log_path)
        self.dispatcher = EventDispatcher(
            self.broker, self.fallback, dispatch_settings, self.clock, self.stats,
        )
        self.notifier = notifier or LoggingNotifier()
        self.audit_sink = audit_sink or LoggingAuditSink()
        self.consumers = ConsumerRegistry()
        self.consumers.register_many(
            NOTIFICATION_TOPICS, NotificationConsumer(self.notifier, self.directory),
        )
        self.consumers.register(AUDIT_RECORDED, AuditConsumer(self.audit_sink))
        self.worker = DeliveryWorker(
            self.broker, self.consumers, dispatch_settings, self.clock,
            alert_hook=alert_hook, stats=self.stats,
        )

        # Kernel services (the dispatcher is the machine's publisher)
        self.store = ApprovalRequestStore(
            session_factory,
            self.clock,
            max_attempts=self.settings.max_write_attempts,
            timeout_seconds=self.settings.operation_timeout_seconds,
        )
        self.delegations = DelegationManager(session_factory, self.directory, self.clock)
        self.machine = ApprovalStateMachine(
            store=self.store,
            strategies=self.strategies,
            delegations=self.delegations,
            directory=self.directory,
            publisher=self.dispatcher,
            actions=self.actions,
            clock=self.clock,
        )
        self.escalation = EscalationEngine(
            self.machine, self.store, self.hierarchy, self.settings.escalation, self.clock,
        )

        logger.info(
            "approval_engine_built",
            extra={
                "config_name": self.settings.name,
                "strategies": list(self.strategies.keys),
                "consumer_topics": list(self.consumers.topics()),
            },
        )

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    def evaluate_action(
        self, action_type: ActionType | str, context: dict[str, Any] | None = None,
    ) -> ActionEvaluation:
        return self.actions.evaluate(action_type, context)

    def create(
        self,
        actor_id: str,
        action_type: ActionType | str,
        approvers: Sequence[ApproverSpec | str],
        strategy: ApprovalStrategy | str | None = None,
        deadline_at: datetime | None = None,
        context: dict[str, Any] | None = None,
        **options: Any,
    ) -> ApprovalRequest:
        actor_id = _caller(actor_id, "create")
        with LogContext.bind(actor_id=actor_id):
            return self.machine.create(
                actor_id, action_type, approvers, strategy, deadline_at, context, **options,
            )

    def decide(
        self,
        request_id: UUID,
        actor_id: str,
        outcome: DecisionOutcome | str,
        comment: str = "",
    ) -> ApprovalRequest:
        return self.machine.decide(request_id, _caller(actor_id, "decide"), outcome, comment)

    def approve(self, request_id: UUID, actor_id: str, comment: str = "") -> ApprovalRequest:
        return self.decide(request_id, actor_id, DecisionOutcome.APPROVE, comment)

    def reject(self, request_id: UUID, actor_id: str, comment: str = "") -> ApprovalRequest:
        return self.decide(request_id, actor_id, DecisionOutcome.REJECT, comment)

    def delegate(
        self,
        request_id: UUID,
        actor_id: str,
        from_approver_id: str,
        to_approver_id: str,
        scope_override: str | None = None,
    ) -> ApprovalRequest:
        return self.machine.delegate(
            request_id, _caller(actor_id, "delegate"),
            from_approver_id, to_approver_id, scope_override,
        )

    def request_info(self, request_id: UUID, actor_id: str, message: str) -> ApprovalRequest:
        return self.machine.request_info(request_id, _caller(actor_id, "request_info"), message)

    def cancel(self, request_id: UUID, actor_id: str, reason: str = "") -> None:
        self.machine.cancel(request_id, _caller(actor_id, "cancel"), reason)

    def escalate_manually(
        self,
        request_id: UUID,
        actor_id: str,
        new_approvers: Sequence[ApproverSpec | str] | None = None,
        reason: EscalationReason = EscalationReason.MANUAL,
    ) -> EscalationResult:
        actor_id = _caller(actor_id, "escalate_manually")
        specs = None
        if new_approvers is not None:
            specs = [ApproverSpec(approver_id=a) if isinstance(a, str) else a for a in new_approvers]
        return self.machine.escalate_manually(
            request_id, actor_id, specs,
            reason=reason,
            grace_period=timedelta(hours=self.settings.escalation.grace_period_hours),
        )

    def create_delegation(
        self,
        actor_id: str,
        from_approver_id: str,
        to_approver_id: str,
        valid_from: datetime,
        valid_until: datetime,
        scope: str | None = None,
        max_value: Decimal | None = None,
    ) -> Delegation:
        return self.delegations.create_delegation(
            from_approver_id, to_approver_id, valid_from, valid_until,
            actor_id=_caller(actor_id, "create_delegation"),
            scope=scope, max_value=max_value,
        )

    def revoke_delegation(self, actor_id: str, delegation_id: UUID) -> Delegation:
        return self.delegations.revoke_delegation(
            delegation_id, actor_id=_caller(actor_id, "revoke_delegation"),
        )

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_by_id(self, actor_id: str, request_id: UUID) -> ApprovalRequest:
        _caller(actor_id, "get_by_id")
        with self.session_factory() as session:
            return ApprovalSelector(session).get_by_id(request_id)

    def list_by_filter(
        self, actor_id: str, criteria: RequestFilter | None = None,
    ) -> list[ApprovalRequest]:
        _caller(actor_id, "list_by_filter")
        with self.session_factory() as session:
            return ApprovalSelector(session).list_by_filter(criteria)

    def get_history(self, actor_id: str, request_id: UUID) -> RequestHistory:
        _caller(actor_id, "get_history")
        with self.session_factory() as session:
            return ApprovalSelector(session).get_history(request_id)

    def metrics(self, actor_id: str, since: datetime, until: datetime) -> ApprovalMetrics:
        _caller(actor_id, "metrics")
        with self.session_factory() as session:
            return ApprovalSelector(session).metrics(since, until)

    # -------------------------------------------------------------------------
    # Background processing
    # -------------------------------------------------------------------------

    def tick(self) -> TickReport:
        return self.escalation.tick()

    def deliver_pending(self, max_polls: int = 100) -> DeliveryReport:
        """Synchronously flush, sweep and drain: buffer -> queue -> consumers."""
        self.dispatcher.flush()
        self.dispatcher.sweep_fallback()
        return self.worker.drain(max_polls=max_polls)

    def start(self) -> None:
        self.dispatcher.start()
        self.worker.start()
        self.escalation.start()

    def stop(self, timeout: float = 30.0) -> None:
        self.escalation.stop(timeout)
        self.worker.stop(timeout)
        self.dispatcher.stop(timeout)


def build_approval_engine(
    settings: EngineSettings | None = None,
    *,
    database_url: str | None = None,
    session_factory: sessionmaker[Session] | None = None,
    create_schema: bool = True,
    **collaborators: Any,
) -> ApprovalEngine:
    """Build an engine on ``session_factory`` or a fresh engine for ``database_url``.

    ``collaborators`` are forwarded to ``ApprovalEngine`` (clock, directory,
    hierarchy, strategies, notifier, audit_sink, alert_hook,
    fallback_log_path).
    """
    if session_factory is None:
        if database_url is None:
            raise ValueError("build_approval_engine needs database_url or session_factory")
        engine = build_engine(database_url)
        if create_schema:
            create_tables(engine)
        session_factory = build_session_factory(engine)
    elif create_schema:
        create_tables(session_factory.kw["bind"])
    return ApprovalEngine(session_factory, settings, **collaborators)


__all__ = [
    "ApprovalEngine",
    "build_approval_engine",
]
