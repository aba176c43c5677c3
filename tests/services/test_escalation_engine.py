"""
EscalationEngine tests: deadline scans, escalation levels, expiry,
reminders, per-item isolation and the background thread.
"""

import threading
import time
from datetime import timedelta

import pytest

from approval_kernel.domain import events as topics
from approval_kernel.domain.approval import (
    ApprovalStatus,
    EscalationReason,
    EscalationStrategy,
    Priority,
)
from approval_kernel.domain.policy import EscalationRule, EscalationSettings
from approval_kernel.exceptions import InvalidStateError
from approval_kernel.selectors import ApprovalSelector
from approval_kernel.services import ConfiguredOrgHierarchy, EscalationEngine

ADMIN = "director.dora"
ANA = "analyst.ana"
BRUNO = "analyst.bruno"
SAM = "supervisor.sam"
SUE = "supervisor.sue"

HOUR = 3600


def history_of(store, request_id):
    with store.session_factory() as session:
        return ApprovalSelector(session).get_history(request_id)


# =============================================================================
# Tick lifecycle
# =============================================================================


class TestTick:
    def test_nothing_breached(self, make_request, escalation_engine):
        make_request()
        report = escalation_engine.tick()
        assert (report.scanned, report.escalated, report.expired) == (0, 0, 0)

    def test_breach_escalates_to_superior(self, make_request, escalation_engine, store, clock, publisher):
        request = make_request()
        clock.advance(8 * HOUR)

        report = escalation_engine.tick()
        assert report.scanned == 1
        assert report.escalated == 1

        after = store.get(request.request_id)
        assert after.status is ApprovalStatus.ESCALATED
        assert after.escalation_count == 1
        assert SAM in after.approver_ids
        assert ANA not in after.approver_ids
        assert after.deadline_at == clock.now() + timedelta(hours=24)

        payload = publisher.of(topics.ESCALATION_TRIGGERED)[0]
        assert payload["reason"] == EscalationReason.TIME.value
        assert payload["strategy"] == EscalationStrategy.HIERARCHICAL.value
        assert SAM in payload["recipients"]

    def test_breach_escalated_once(self, make_request, escalation_engine, store, clock):
        request = make_request()
        clock.advance(9 * HOUR)
        escalation_engine.tick()

        second = escalation_engine.tick()
        assert second.scanned == 0
        assert store.get(request.request_id).escalation_count == 1

    def test_stale_candidate_is_skipped(self, make_request, escalation_engine, store, clock):
        request = make_request()
        clock.advance(9 * HOUR)
        candidate = store.find_breached(clock.now())[0]

        assert escalation_engine.process_candidate(candidate) == "escalated"
        # same snapshot again: the deadline moved, so no second event
        assert escalation_engine.process_candidate(candidate) == "skipped"
        assert len(history_of(store, request.request_id).escalations) == 1

    def test_levels_then_expiry(self, make_request, escalation_engine, store, clock, publisher):
        request = make_request()
        clock.advance(8 * HOUR)
        assert escalation_engine.tick().escalated == 1
        clock.advance(24 * HOUR)
        assert escalation_engine.tick().escalated == 1
        assert store.get(request.request_id).escalation_count == 2

        clock.advance(24 * HOUR)
        report = escalation_engine.tick()
        assert report.expired == 1
        expired = store.get(request.request_id)
        assert expired.status is ApprovalStatus.EXPIRED
        assert expired.resolved_at == clock.now()
        assert publisher.of(topics.REQUEST_EXPIRED)[0]["reason"] == "escalation_exhausted"

        events = history_of(store, request.request_id).escalations
        assert [e.level for e in events] == [1, 2]

    def test_decided_request_not_scanned(self, make_request, machine, escalation_engine, clock):
        request = make_request(approvers=[ANA])
        machine.decide(request.request_id, ANA, "approve")
        clock.advance(48 * HOUR)
        assert escalation_engine.tick().scanned == 0

    def test_escalated_request_can_still_be_decided(self, make_request, machine, escalation_engine, clock):
        request = make_request(approvers=[ANA])
        clock.advance(8 * HOUR)
        escalation_engine.tick()
        final = machine.decide(request.request_id, SAM, "approve")
        assert final.status is ApprovalStatus.APPROVED


# =============================================================================
# Rules
# =============================================================================


class TestRules:
    @pytest.fixture
    def ruled_engine(self, machine, store, hierarchy, clock):
        settings = EscalationSettings(
            grace_period_hours=24,
            max_escalations=3,
            reminder_window_hours=0,
            rules=(
                EscalationRule(
                    "urgent", priority=1, strategy=EscalationStrategy.BY_PRIORITY,
                    min_priority=Priority.HIGH, max_escalations=1, grace_period_hours=2,
                ),
            ),
        )
        return EscalationEngine(machine, store, hierarchy, settings, clock)

    def test_matching_rule_governs(self, make_request, ruled_engine, store, clock):
        request = make_request(priority=Priority.HIGH)
        clock.advance(8 * HOUR)
        ruled_engine.tick()

        after = store.get(request.request_id)
        assert set(after.approver_ids) == {ANA, BRUNO, SAM, SUE}
        assert after.deadline_at == clock.now() + timedelta(hours=2)

        clock.advance(2 * HOUR)
        assert ruled_engine.tick().expired == 1

    def test_unmatched_request_uses_settings(self, make_request, ruled_engine, store, clock):
        request = make_request(priority=Priority.NORMAL)
        clock.advance(8 * HOUR)
        ruled_engine.tick()
        after = store.get(request.request_id)
        assert after.deadline_at == clock.now() + timedelta(hours=24)
        assert SAM in after.approver_ids

    def test_highest_priority_processed_first(self, make_request, ruled_engine, store, clock, publisher):
        low = make_request(priority=Priority.LOW)
        high = make_request(priority=Priority.HIGH)
        clock.advance(8 * HOUR)
        ruled_engine.tick()
        escalated = [p["request_id"] for p in publisher.of(topics.ESCALATION_TRIGGERED)]
        assert escalated == [str(high.request_id), str(low.request_id)]


# =============================================================================
# Isolation
# =============================================================================


class ExplodingHierarchy(ConfiguredOrgHierarchy):
    def superiors_of(self, approver_id):
        if approver_id == "analyst.eve":
            raise RuntimeError("directory timeout")
        return super().superiors_of(approver_id)


class FrozenScanStore:
    """Store wrapper whose scan returns a fixed snapshot."""

    def __init__(self, store, snapshot):
        self._store = store
        self._snapshot = snapshot

    def find_breached(self, now, limit=None):
        return list(self._snapshot)

    def find_approaching_deadline(self, now, window):
        return []

    def __getattr__(self, name):
        return getattr(self._store, name)


class TestIsolation:
    def test_one_failure_does_not_stop_the_tick(
        self, make_request, machine, store, escalation_settings, clock,
    ):
        hierarchy = ExplodingHierarchy(superiors={ANA: (SAM,)})
        engine = EscalationEngine(machine, store, hierarchy, escalation_settings, clock)
        broken = make_request(approvers=["analyst.eve"])
        healthy = make_request(approvers=[ANA])
        clock.advance(8 * HOUR)

        report = engine.tick()
        assert report.failed == 1
        assert report.failures == [str(broken.request_id)]
        assert report.escalated == 1
        assert store.get(healthy.request_id).status is ApprovalStatus.ESCALATED
        assert store.get(broken.request_id).status is ApprovalStatus.PENDING

    def test_request_closed_after_scan_is_skipped(
        self, make_request, machine, store, hierarchy, escalation_settings, clock,
    ):
        request = make_request()
        clock.advance(8 * HOUR)
        snapshot = store.find_breached(clock.now())
        machine.cancel(request.request_id, ADMIN)

        engine = EscalationEngine(
            machine, FrozenScanStore(store, snapshot), hierarchy, escalation_settings, clock,
        )
        with pytest.raises(InvalidStateError):
            engine.process_candidate(snapshot[0])
        report = engine.tick()
        assert (report.skipped, report.failed) == (1, 0)

    def test_batch_limit(self, make_request, machine, store, hierarchy, escalation_settings, clock):
        for _ in range(3):
            make_request()
        clock.advance(8 * HOUR)
        engine = EscalationEngine(machine, store, hierarchy, escalation_settings, clock, batch_limit=2)
        assert engine.tick().scanned == 2
        assert engine.tick().scanned == 1

    @pytest.mark.slow
    def test_concurrent_ticks_escalate_once(
        self, make_request, machine, store, hierarchy, escalation_settings, clock,
    ):
        request = make_request()
        clock.advance(8 * HOUR)
        engines = [
            EscalationEngine(machine, store, hierarchy, escalation_settings, clock)
            for _ in range(4)
        ]
        barrier = threading.Barrier(len(engines))
        reports = []

        def run(engine):
            barrier.wait()
            reports.append(engine.tick())

        threads = [threading.Thread(target=run, args=(engine,)) for engine in engines]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert len(reports) == len(engines)
        assert sum(report.escalated for report in reports) == 1
        assert store.get(request.request_id).escalation_count == 1
        assert len(history_of(store, request.request_id).escalations) == 1


# =============================================================================
# Reminders
# =============================================================================


class TestReminders:
    def test_reminder_inside_window(self, make_request, escalation_engine, clock, publisher):
        make_request()
        assert escalation_engine.tick().reminded == 0

        clock.advance(5 * HOUR)
        assert escalation_engine.tick().reminded == 1
        assert escalation_engine.tick().reminded == 0
        payload = publisher.of(topics.DEADLINE_APPROACHING)[0]
        assert payload["recipients"] == [ANA, BRUNO]

    def test_reminder_rearmed_by_escalation(self, make_request, escalation_engine, clock, publisher):
        make_request()
        clock.advance(5 * HOUR)
        escalation_engine.tick()
        clock.advance(3 * HOUR)
        escalation_engine.tick()

        clock.advance(21 * HOUR)
        assert escalation_engine.tick().reminded == 1
        assert len(publisher.of(topics.DEADLINE_APPROACHING)) == 2


# =============================================================================
# Background loop
# =============================================================================


class TestBackgroundLoop:
    def test_start_and_stop(self, make_request, machine, store, hierarchy, clock):
        settings = EscalationSettings(tick_interval_seconds=0.01, reminder_window_hours=0)
        engine = EscalationEngine(machine, store, hierarchy, settings, clock)
        request = make_request()
        clock.advance(8 * HOUR)

        engine.start()
        try:
            assert engine.is_running
            deadline = time.monotonic() + 5
            while time.monotonic() < deadline:
                if store.get(request.request_id).status is ApprovalStatus.ESCALATED:
                    break
                time.sleep(0.01)
        finally:
            engine.stop(timeout=5)

        assert not engine.is_running
        assert store.get(request.request_id).escalation_count == 1
