"""DeliveryWorker: delivery, retry with backoff, dead letters and recovery."""

import time
from datetime import timedelta
from uuid import uuid4

import pytest

from approval_kernel.exceptions import DownstreamUnavailableError
from approval_dispatch.consumers import ConsumerRegistry
from approval_dispatch.domain.types import DeliveryStatus, DispatcherSettings, QueuedEvent
from approval_dispatch.services import DeliveryWorker


class FailingConsumer:
    """Fails the first ``failures`` deliveries, then succeeds."""

    def __init__(self, failures=1_000):
        self.failures = failures
        self.handled = []

    def handle(self, event):
        self.handled.append(event.event_id)
        if len(self.handled) <= self.failures:
            raise RuntimeError("consumer down")


class RecordingConsumer:
    def __init__(self):
        self.handled = []

    def handle(self, event):
        self.handled.append(event.event_id)


def publish(broker, clock, topic="audit.recorded"):
    now = clock.now()
    event = QueuedEvent(str(uuid4()), topic, {"request_id": "R-1"}, created_at=now, not_before=now)
    broker.publish(event)
    return event


def make_worker(broker, clock, settings, consumer=None, topic="audit.recorded", **kwargs):
    registry = ConsumerRegistry()
    if consumer is not None:
        registry.register(topic, consumer)
    return DeliveryWorker(broker, registry, settings, clock, **kwargs)


# =============================================================================
# Delivery
# =============================================================================


class TestDelivery:
    def test_delivers_and_marks(self, worker, broker, clock, audit_sink, stats):
        event = publish(broker, clock)
        report = worker.poll_once()

        assert (report.claimed, report.delivered, report.retried) == (1, 1, 0)
        assert broker.status_of(event.event_id) is DeliveryStatus.DELIVERED
        assert [event_id for event_id, _ in audit_sink.records] == [event.event_id]
        assert stats.snapshot()["delivered"] == 1

    def test_nothing_due(self, worker):
        report = worker.poll_once()
        assert report.claimed == 0
        assert report.failures == []

    def test_per_event_isolation(self, broker, clock, dispatch_settings):
        registry = ConsumerRegistry()
        registry.register("audit.recorded", FailingConsumer())
        healthy = RecordingConsumer()
        registry.register("request.created", healthy)
        worker = DeliveryWorker(broker, registry, dispatch_settings, clock)

        failing = publish(broker, clock, "audit.recorded")
        ok = publish(broker, clock, "request.created")
        report = worker.poll_once()

        assert (report.delivered, report.retried) == (1, 1)
        assert healthy.handled == [ok.event_id]
        assert broker.status_of(ok.event_id) is DeliveryStatus.DELIVERED
        assert broker.status_of(failing.event_id) is DeliveryStatus.READY


# =============================================================================
# Retry and dead letters
# =============================================================================


class TestRetry:
    def test_failure_reschedules_with_backoff(self, broker, clock, dispatch_settings):
        consumer = FailingConsumer(failures=1)
        worker = make_worker(broker, clock, dispatch_settings, consumer)
        event = publish(broker, clock)

        report = worker.poll_once()
        assert report.retried == 1
        stored = broker.get(event.event_id)
        assert stored.attempt == 1
        assert stored.not_before == clock.now() + timedelta(seconds=2)
        assert stored.last_error == "RuntimeError: consumer down"

        # not due yet
        assert worker.poll_once().claimed == 0
        clock.advance(2)
        assert worker.poll_once().delivered == 1
        assert broker.status_of(event.event_id) is DeliveryStatus.DELIVERED

    def test_dead_letter_after_max_attempts(self, broker, clock, dispatch_settings, stats):
        alerts = []
        worker = make_worker(
            broker, clock, dispatch_settings, FailingConsumer(),
            alert_hook=alerts.append, stats=stats,
        )
        event = publish(broker, clock)

        worker.poll_once()
        clock.advance(2)
        worker.poll_once()
        assert broker.get(event.event_id).not_before == clock.now() + timedelta(seconds=4)
        clock.advance(4)
        report = worker.poll_once()

        assert report.dead_lettered == 1
        assert broker.status_of(event.event_id) is DeliveryStatus.DEAD_LETTERED
        assert [letter.event.event_id for letter in alerts] == [event.event_id]
        assert alerts[0].attempts == 3
        assert stats.snapshot()["retried"] == 2
        assert stats.snapshot()["dead_lettered"] == 1

        clock.advance(3600)
        assert worker.poll_once().claimed == 0

    def test_requeue_dead_letter_delivers(self, broker, clock):
        settings = DispatcherSettings(max_attempts=1)
        consumer = FailingConsumer(failures=1)
        worker = make_worker(broker, clock, settings, consumer)
        event = publish(broker, clock)

        assert worker.poll_once().dead_lettered == 1
        requeued = worker.requeue_dead_letter(event.event_id)
        assert requeued.attempt == 0

        assert worker.poll_once().delivered == 1
        assert broker.status_of(event.event_id) is DeliveryStatus.DELIVERED
        assert consumer.handled == [event.event_id, event.event_id]

    def test_missing_consumer_dead_letters(self, broker, clock):
        worker = make_worker(broker, clock, DispatcherSettings(max_attempts=1))
        event = publish(broker, clock, "unrouted.topic")

        assert worker.poll_once().dead_lettered == 1
        letter = broker.list_dead_letters()[0]
        assert letter.event.event_id == event.event_id
        assert letter.last_error.startswith("ConsumerNotRegisteredError")

    def test_raising_alert_hook_is_tolerated(self, broker, clock):
        def alert(letter):
            raise RuntimeError("pager offline")

        worker = make_worker(
            broker, clock, DispatcherSettings(max_attempts=1), FailingConsumer(), alert_hook=alert,
        )
        event = publish(broker, clock)

        assert worker.poll_once().dead_lettered == 1
        assert broker.status_of(event.event_id) is DeliveryStatus.DEAD_LETTERED


# =============================================================================
# drain / broker outage / loop
# =============================================================================


class ClaimFailingBroker:
    def claim_due(self, now=None, limit=50, lease=None):
        raise DownstreamUnavailableError("queue_broker", "connection refused")


class TestDrainAndOutage:
    def test_drain_sums_reports(self, broker, clock):
        settings = DispatcherSettings(batch_size=2, max_attempts=3)
        consumer = RecordingConsumer()
        worker = make_worker(broker, clock, settings, consumer)
        for _ in range(5):
            publish(broker, clock)

        report = worker.drain()
        assert (report.claimed, report.delivered) == (5, 5)
        assert len(consumer.handled) == 5

    def test_broker_down_at_claim(self, clock, consumers, dispatch_settings):
        worker = DeliveryWorker(ClaimFailingBroker(), consumers, dispatch_settings, clock)
        report = worker.poll_once()
        assert report.claimed == 0
        assert report.failures == []


class TestBackgroundLoop:
    def test_start_delivers_and_stops(self, worker, broker, clock):
        event = publish(broker, clock)
        worker.start()
        try:
            assert worker.is_running
            deadline = time.monotonic() + 5
            while (
                broker.status_of(event.event_id) is not DeliveryStatus.DELIVERED
                and time.monotonic() < deadline
            ):
                time.sleep(0.01)
        finally:
            worker.stop(timeout=5)
        assert not worker.is_running
        assert broker.status_of(event.event_id) is DeliveryStatus.DELIVERED

    def test_stop_without_start(self, worker):
        worker.stop()
        assert not worker.is_running


@pytest.mark.parametrize("failures, expected", [(0, DeliveryStatus.DELIVERED), (5, DeliveryStatus.DEAD_LETTERED)])
def test_every_event_ends_accounted_for(broker, clock, dispatch_settings, failures, expected):
    worker = make_worker(broker, clock, dispatch_settings, FailingConsumer(failures=failures))
    event = publish(broker, clock)
    for _ in range(dispatch_settings.max_attempts):
        worker.poll_once()
        clock.advance(dispatch_settings.backoff_cap_seconds)
    assert broker.status_of(event.event_id) is expected
