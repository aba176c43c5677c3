"""
Pytest fixtures for the approval engine test suite.

Provides:
- A file-backed SQLite database per test (shared across threads, so the
  concurrency tests exercise real optimistic-write conflicts)
- A DeterministicClock and a directory / hierarchy seeded with test approvers
- Fully wired state machine, escalation engine and dispatch components
- Structured log capture

Environment Variables:
- DATABASE_URL: optional PostgreSQL URL for tests marked ``postgres``.
"""

import json
import logging
import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from io import StringIO

import pytest

from approval_kernel.db.engine import build_engine, build_session_factory, create_tables, drop_tables
from approval_kernel.domain.approval import ApproverKind, Priority
from approval_kernel.domain.clock import DeterministicClock
from approval_kernel.domain.events import AUDIT_RECORDED, NOTIFICATION_TOPICS
from approval_kernel.domain.policy import ActionPolicy, ApproverProfile, EscalationSettings
from approval_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from approval_kernel.services import (
    ActionRegistry,
    ApprovalRequestStore,
    ApprovalStateMachine,
    ConfiguredApproverDirectory,
    ConfiguredOrgHierarchy,
    DelegationManager,
    EscalationEngine,
)
from approval_dispatch.consumers import (
    AuditConsumer,
    ConsumerRegistry,
    NotificationConsumer,
)
from approval_dispatch.domain.types import DispatcherSettings
from approval_dispatch.services import (
    DeliveryWorker,
    DispatchStats,
    EventDispatcher,
    FallbackLog,
    SqlQueueBroker,
)
from approval_engines.strategies import default_strategy_registry

REQUESTER = "clerk.carla"
ADMIN = "director.dora"

T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture approval_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, machine):
            machine.create(...)
            logs = captured_logs()
            assert any(r["message"] == "approval_request_created" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("approval_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Directory / hierarchy
# =============================================================================


APPROVER_PROFILES = (
    ApproverProfile("analyst.ana", max_value=Decimal("5000")),
    ApproverProfile("analyst.bruno", max_value=Decimal("5000")),
    ApproverProfile("analyst.cleo"),
    ApproverProfile("analyst.dan"),
    ApproverProfile("analyst.eve"),
    ApproverProfile("supervisor.sam", max_value=Decimal("50000"), channels=("email", "in_app")),
    ApproverProfile("supervisor.sue"),
    ApproverProfile(ADMIN, is_admin=True),
    ApproverProfile("intern.ian", can_delegate=False),
    ApproverProfile("benefits.bea", scopes=("release_benefit",)),
    ApproverProfile(
        "security.officers",
        kind=ApproverKind.ROLE,
        members=("security.ivo", "security.jun"),
    ),
    ApproverProfile("security.ivo"),
    ApproverProfile("security.jun"),
    ApproverProfile(REQUESTER),
)


@pytest.fixture
def clock():
    return DeterministicClock(T0)


@pytest.fixture
def directory():
    return ConfiguredApproverDirectory(APPROVER_PROFILES)


@pytest.fixture
def hierarchy():
    return ConfiguredOrgHierarchy(
        superiors={
            "analyst.ana": ("supervisor.sam",),
            "analyst.bruno": ("supervisor.sam",),
            "supervisor.sam": (ADMIN,),
        },
        pools={
            Priority.NORMAL: ("supervisor.sue",),
            Priority.HIGH: ("supervisor.sam", "supervisor.sue"),
        },
    )


@pytest.fixture
def actions():
    return ActionRegistry((
        ActionPolicy("delete_citizen", default_deadline_hours=24),
        ActionPolicy("reactivate_user", requires_approval=False),
    ))


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def db_url(request, tmp_path):
    if request.node.get_closest_marker("postgres"):
        url = os.environ.get("DATABASE_URL")
        if not url:
            pytest.skip("DATABASE_URL not set")
        return url
    return f"sqlite:///{tmp_path / 'approvals.db'}"


@pytest.fixture
def db_engine(db_url):
    engine = build_engine(db_url)
    create_tables(engine)
    yield engine
    drop_tables(engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


# =============================================================================
# Dispatch
# =============================================================================


@pytest.fixture
def dispatch_settings(tmp_path):
    return DispatcherSettings(
        backoff_base_seconds=2.0,
        backoff_cap_seconds=60.0,
        max_attempts=3,
        poll_interval_seconds=0.01,
        sweep_interval_seconds=0.01,
        fallback_log_path=str(tmp_path / "fallback.jsonl"),
    )


@pytest.fixture
def stats():
    return DispatchStats()


@pytest.fixture
def broker(session_factory, clock):
    return SqlQueueBroker(session_factory, clock)


@pytest.fixture
def fallback(dispatch_settings):
    return FallbackLog(dispatch_settings.fallback_log_path)


@pytest.fixture
def dispatcher(broker, fallback, dispatch_settings, clock, stats):
    return EventDispatcher(broker, fallback, dispatch_settings, clock, stats)


class RecordingNotifier:
    """Notifier that keeps what it was asked to send."""

    def __init__(self):
        self.sent = []

    def send(self, notification):
        self.sent.append(notification)


class RecordingAuditSink:
    def __init__(self):
        self.records = []

    def record(self, event_id, entry):
        self.records.append((event_id, entry))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def audit_sink():
    return RecordingAuditSink()


@pytest.fixture
def consumers(notifier, audit_sink, directory):
    registry = ConsumerRegistry()
    registry.register_many(NOTIFICATION_TOPICS, NotificationConsumer(notifier, directory))
    registry.register(AUDIT_RECORDED, AuditConsumer(audit_sink))
    return registry


@pytest.fixture
def worker(broker, consumers, dispatch_settings, clock, stats):
    return DeliveryWorker(broker, consumers, dispatch_settings, clock, stats=stats)


class RecordingPublisher:
    """EventPublisher that keeps every enqueued event in memory."""

    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    def enqueue(self, topic, payload, *, ordering_key=None, priority=Priority.NORMAL):
        self.events.append((topic, payload))
        return str(len(self.events))

    def topics(self) -> list[str]:
        return [topic for topic, _ in self.events]

    def of(self, topic: str) -> list[dict]:
        return [payload for t, payload in self.events if t == topic]


@pytest.fixture
def publisher():
    return RecordingPublisher()


# =============================================================================
# Kernel services
# =============================================================================


@pytest.fixture
def store(session_factory, clock):
    return ApprovalRequestStore(session_factory, clock, max_attempts=5, timeout_seconds=5.0)


@pytest.fixture
def delegations(session_factory, directory, clock):
    return DelegationManager(session_factory, directory, clock)


@pytest.fixture
def machine(store, delegations, directory, publisher, actions, clock):
    return ApprovalStateMachine(
        store=store,
        strategies=default_strategy_registry(),
        delegations=delegations,
        directory=directory,
        publisher=publisher,
        actions=actions,
        clock=clock,
    )


@pytest.fixture
def escalation_settings():
    return EscalationSettings(
        grace_period_hours=24,
        max_escalations=2,
        reminder_window_hours=4,
    )


@pytest.fixture
def escalation_engine(machine, store, hierarchy, escalation_settings, clock):
    return EscalationEngine(machine, store, hierarchy, escalation_settings, clock)


@pytest.fixture
def make_request(machine, clock):
    """Create a request with sensible defaults; each call targets a new entity."""
    counter = {"n": 0}

    def _make(approvers=("analyst.ana", "analyst.bruno"), strategy="unanimous", **kwargs):
        counter["n"] += 1
        kwargs.setdefault("target_entity", "citizen")
        kwargs.setdefault("target_entity_id", f"C-{counter['n']}")
        kwargs.setdefault("deadline_at", clock.now() + timedelta(hours=8))
        actor = kwargs.pop("actor_id", REQUESTER)
        action = kwargs.pop("action_type", "delete_citizen")
        return machine.create(actor, action, list(approvers), strategy, **kwargs)

    return _make
