"""
EscalationEngine -- periodic deadline scan.

Contract:
    Each ``tick()`` finds open requests whose deadline has passed and either
    escalates them (while the governing rule still allows another level) or
    expires them.  It also sends one ``deadline.approaching`` reminder per
    deadline value for requests inside the reminder window.

Architecture: approval_kernel/services.  Rule selection and approver
    planning are pure (approval_engines.escalation); every write goes
    through ``ApprovalStateMachine`` so the optimistic version check
    decides races with concurrent decisions and other ticks.

Invariants enforced:
    - All timestamps come from the injected Clock.
    - A breach is escalated at most once: the state machine re-checks the
      deadline inside the write, and UNIQUE(request_id, level) backs it up.
    - One failing request never stops the tick (per-item isolation).
    - Graceful shutdown: the stop signal is honoured between items.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import timedelta

from approval_kernel.domain.approval import (
    SYSTEM_ACTOR,
    ApprovalRequest,
    EscalationReason,
)
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.directory import OrgHierarchyProvider
from approval_kernel.domain.policy import EscalationSettings
from approval_kernel.exceptions import InvalidStateError, NotFoundError
from approval_kernel.logging_config import get_logger
from approval_kernel.services.approval_service import ApprovalStateMachine
from approval_kernel.services.request_store import ApprovalRequestStore
from approval_engines.escalation import plan_escalation, resolve_escalation_policy

logger = get_logger("services.escalation")


@dataclass
class TickReport:
    """Counters for one scan."""

    scanned: int = 0
    escalated: int = 0
    expired: int = 0
    skipped: int = 0
    failed: int = 0
    reminded: int = 0
    failures: list[str] = field(default_factory=list)


class EscalationEngine:
    """Deadline-driven escalation and expiry.

    Contract:
        - ``tick()`` processes every breached request once and returns a
          ``TickReport``; it never raises for a single bad request.
        - ``start()`` / ``stop()`` run ticks on a background thread every
          ``settings.tick_interval_seconds``.

    Non-goals:
        - NOT a distributed scheduler; several engines may tick the same
          database and rely on the optimistic write for exclusion.
    """

    def __init__(
        self,
        machine: ApprovalStateMachine,
        store: ApprovalRequestStore,
        hierarchy: OrgHierarchyProvider,
        settings: EscalationSettings | None = None,
        clock: Clock | None = None,
        batch_limit: int | None = None,
    ):
        self._machine = machine
        self._store = store
        self._hierarchy = hierarchy
        self._settings = settings or EscalationSettings()
        self._clock = clock or SystemClock()
        self._batch_limit = batch_limit
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def settings(self) -> EscalationSettings:
        return self._settings

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def tick(self) -> TickReport:
        """Run one scan (public for testing and for external schedulers)."""
        report = TickReport()
        now = self._clock.now()
        candidates = self._store.find_breached(now, limit=self._batch_limit)
        report.scanned = len(candidates)

        for candidate in candidates:
            if self._stop_event.is_set():
                break
            try:
                outcome = self.process_candidate(candidate)
            except (InvalidStateError, NotFoundError):
                # Resolved or cancelled since the scan
                outcome = "skipped"
            except Exception:
                report.failed += 1
                report.failures.append(str(candidate.request_id))
                logger.exception(
                    "escalation_candidate_failed",
                    extra={"request_id": str(candidate.request_id)},
                )
                continue
            setattr(report, outcome, getattr(report, outcome) + 1)

        report.reminded = self.send_reminders()

        logger.info(
            "escalation_tick_completed",
            extra={
                "observability_event": "escalation_tick",
                "scanned": report.scanned,
                "escalated": report.escalated,
                "expired": report.expired,
                "skipped": report.skipped,
                "failed": report.failed,
                "reminded": report.reminded,
            },
        )
        return report

    def process_candidate(self, candidate: ApprovalRequest) -> str:
        """Escalate or expire one breached request.

        Returns ``"escalated"``, ``"expired"`` or ``"skipped"``.
        """
        policy = resolve_escalation_policy(self._settings, candidate)

        if candidate.escalation_count >= policy.max_escalations:
            expired = self._machine.expire(
                candidate.request_id,
                actor_id=SYSTEM_ACTOR,
                reason="escalation_exhausted",
            )
            return "expired" if expired is not None else "skipped"

        def planner(request: ApprovalRequest):
            return plan_escalation(
                request=request,
                strategy=policy.strategy,
                superiors_of=self._hierarchy.superiors_of,
                pool=self._hierarchy.escalation_pool(request.priority),
            )

        result = self._machine.escalate(
            candidate.request_id,
            strategy=policy.strategy,
            reason=EscalationReason.TIME,
            actor_id=SYSTEM_ACTOR,
            grace_period=policy.grace_period,
            planner=planner,
        )
        if not result.escalated:
            return "skipped"
        logger.info(
            "escalation_rule_applied",
            extra={
                "request_id": str(candidate.request_id),
                "rule": policy.rule_name,
                "strategy": policy.strategy.value,
                "level": result.event.level,
            },
        )
        return "escalated"

    def send_reminders(self) -> int:
        window = timedelta(hours=self._settings.reminder_window_hours)
        if window <= timedelta(0):
            return 0
        sent = 0
        for request in self._store.find_approaching_deadline(self._clock.now(), window):
            if self._stop_event.is_set():
                break
            try:
                if self._machine.remind(request.request_id):
                    sent += 1
            except Exception:
                logger.exception(
                    "deadline_reminder_failed",
                    extra={"request_id": str(request.request_id)},
                )
        return sent

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="approval-escalation",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            "escalation_engine_started",
            extra={"tick_interval": self._settings.tick_interval_seconds},
        )

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop and wait for the current tick to finish."""
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("escalation_engine_stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("escalation_tick_exception")
            self._stop_event.wait(timeout=self._settings.tick_interval_seconds)
