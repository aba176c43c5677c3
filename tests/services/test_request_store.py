"""
ApprovalRequestStore tests: queries and the optimistic read-modify-write loop.

The conflict tests interleave two writers deterministically: the outer
mutator commits a competing write through a second session before making
its own change, so its UPDATE carries a stale version and must retry.
"""

import threading
from datetime import timedelta
from uuid import uuid4

import pytest

from approval_kernel.domain.approval import ApprovalStatus, Priority
from approval_kernel.exceptions import ConcurrentModificationError, NotFoundError
from approval_kernel.services import ApprovalRequestStore

ANA = "analyst.ana"
BRUNO = "analyst.bruno"


# =============================================================================
# Reads
# =============================================================================


class TestQueries:
    def test_get_unknown(self, store):
        with pytest.raises(NotFoundError):
            store.get(uuid4())

    def test_get_malformed_id(self, store):
        with pytest.raises(NotFoundError):
            store.get("not-a-uuid")

    def test_find_open_by_fingerprint(self, make_request, machine, store):
        request = make_request()
        assert store.find_open_by_fingerprint(request.fingerprint).request_id == request.request_id
        machine.cancel(request.request_id, "clerk.carla")
        assert store.find_open_by_fingerprint(request.fingerprint) is None

    def test_find_breached_order(self, make_request, store, clock):
        later = make_request(deadline_at=clock.now() + timedelta(hours=2))
        earlier = make_request(deadline_at=clock.now() + timedelta(hours=1))
        urgent = make_request(deadline_at=clock.now() + timedelta(hours=3), priority=Priority.HIGH)
        not_yet = make_request(deadline_at=clock.now() + timedelta(hours=5))

        clock.advance(3 * 3600)
        found = [r.request_id for r in store.find_breached(clock.now())]
        assert found == [urgent.request_id, earlier.request_id, later.request_id]
        assert not_yet.request_id not in found
        assert len(store.find_breached(clock.now(), limit=1)) == 1

    def test_find_approaching_deadline(self, make_request, machine, store, clock):
        soon = make_request(deadline_at=clock.now() + timedelta(hours=2))
        make_request(deadline_at=clock.now() + timedelta(hours=10))

        window = timedelta(hours=4)
        assert [r.request_id for r in store.find_approaching_deadline(clock.now(), window)] == [
            soon.request_id
        ]
        machine.remind(soon.request_id)
        assert store.find_approaching_deadline(clock.now(), window) == []


# =============================================================================
# mutate
# =============================================================================


class TestMutate:
    def test_noop_keeps_version(self, make_request, store):
        request = make_request()
        result = store.mutate(request.request_id, lambda model, session: "read only")
        assert result.value == "read only"
        assert result.changed is False
        assert result.request.version == request.version

    def test_change_bumps_version(self, make_request, store, clock):
        request = make_request()
        clock.advance(60)

        def rename(model, session):
            model.target_entity = "household"

        result = store.mutate(request.request_id, rename)
        assert result.changed is True
        assert result.attempts == 1
        assert result.request.version == request.version + 1
        assert result.request.updated_at == clock.now()
        assert store.get(request.request_id).target_entity == "household"

    def test_mutator_error_rolls_back(self, make_request, store):
        request = make_request()

        def broken(model, session):
            model.target_entity = "half-written"
            raise RuntimeError("mutator failed")

        with pytest.raises(RuntimeError):
            store.mutate(request.request_id, broken)
        assert store.get(request.request_id).target_entity == "citizen"

    def test_unknown_request(self, store):
        with pytest.raises(NotFoundError):
            store.mutate(uuid4(), lambda model, session: None)

    def test_max_attempts_must_be_positive(self, session_factory, clock):
        with pytest.raises(ValueError):
            ApprovalRequestStore(session_factory, clock, max_attempts=0)


# =============================================================================
# Conflicts
# =============================================================================


class TestOptimisticConflicts:
    def test_lost_race_retries_and_keeps_both_writes(self, make_request, store):
        request = make_request()
        calls = {"outer": 0}

        def competing(model, session):
            model.context_data = {"competing": True}

        def outer(model, session):
            calls["outer"] += 1
            if calls["outer"] == 1:
                store.mutate(request.request_id, competing)
            model.target_entity = "household"

        result = store.mutate(request.request_id, outer)

        assert result.attempts == 2
        assert calls["outer"] == 2
        final = store.get(request.request_id)
        assert final.version == request.version + 2
        assert final.target_entity == "household"
        assert final.context_data == {"competing": True}

    def test_gives_up_after_bounded_attempts(self, make_request, store, session_factory, clock):
        request = make_request()
        impatient = ApprovalRequestStore(session_factory, clock, max_attempts=2)
        counter = {"n": 0}

        def competing(model, session):
            counter["n"] += 1
            model.context_data = {"bump": counter["n"]}

        def always_loses(model, session):
            store.mutate(request.request_id, competing)
            model.target_entity = "never"

        with pytest.raises(ConcurrentModificationError) as exc_info:
            impatient.mutate(request.request_id, always_loses)
        assert exc_info.value.attempts == 2
        assert store.get(request.request_id).target_entity == "citizen"

    def test_concurrent_decisions_both_recorded(self, make_request, machine, store):
        request = make_request()
        barrier = threading.Barrier(2)
        errors = []

        def decide(approver_id):
            barrier.wait()
            try:
                machine.decide(request.request_id, approver_id, "approve")
            except Exception as exc:  # surfaced by the assertion below
                errors.append(exc)

        threads = [threading.Thread(target=decide, args=(a,)) for a in (ANA, BRUNO)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert errors == []
        final = store.get(request.request_id)
        assert final.status is ApprovalStatus.APPROVED
        assert sorted(d.approver_id for d in final.decisions) == [ANA, BRUNO]
        assert [d.sequence for d in final.decisions] == [1, 2]
        assert final.version == request.version + 2

    def test_decision_racing_cancel(self, make_request, machine, store):
        """Whichever write commits first wins; the loser sees the new state."""
        request = make_request()
        barrier = threading.Barrier(2)
        outcomes = {}

        def run(name, action):
            barrier.wait()
            try:
                action()
                outcomes[name] = "ok"
            except Exception as exc:
                outcomes[name] = type(exc).__name__

        threads = [
            threading.Thread(
                target=run,
                args=("decide", lambda: machine.decide(request.request_id, ANA, "reject")),
            ),
            threading.Thread(
                target=run,
                args=("cancel", lambda: machine.cancel(request.request_id, "clerk.carla")),
            ),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        final = store.get(request.request_id)
        if final.status is ApprovalStatus.REJECTED:
            assert outcomes == {"decide": "ok", "cancel": "InvalidStateError"}
        else:
            assert final.status is ApprovalStatus.CANCELLED
            assert outcomes == {"decide": "InvalidStateError", "cancel": "ok"}


@pytest.mark.postgres
class TestPostgresConflicts:
    def test_concurrent_decisions_both_recorded(self, make_request, machine, store):
        request = make_request(approvers=(ANA, BRUNO, "analyst.cleo"))
        barrier = threading.Barrier(3)
        errors = []

        def decide(approver_id):
            barrier.wait()
            try:
                machine.decide(request.request_id, approver_id, "approve")
            except Exception as exc:  # surfaced by the assertion below
                errors.append(exc)

        threads = [
            threading.Thread(target=decide, args=(a,)) for a in (ANA, BRUNO, "analyst.cleo")
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert errors == []
        final = store.get(request.request_id)
        assert final.status is ApprovalStatus.APPROVED
        assert [d.sequence for d in final.decisions] == [1, 2, 3]
