"""
DeliveryWorker -- consumer side of event delivery.

Contract:
    ``poll_once()`` claims due events from the broker and hands each to the
    consumer registered for its topic.  Success marks the event delivered;
    failure reschedules it with exponential backoff, and the
    ``max_attempts``-th failure moves it to the dead-letter set and fires
    the alert hook.

Architecture: approval_dispatch/services.  Backoff arithmetic is pure
    (approval_engines.backoff); persistence goes through SqlQueueBroker.

Invariants enforced:
    - All timestamps from the injected Clock.
    - Per-event isolation: one failing event never stops the batch.
    - Nothing is silently dropped: every claimed event ends delivered,
      rescheduled or dead-lettered (or, if the broker itself is down, stays
      in flight and becomes claimable again after its lease).
    - A missing consumer counts as a delivery failure, so unroutable events
      end in the dead-letter set rather than disappearing.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import timedelta

from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.exceptions import DownstreamUnavailableError
from approval_kernel.logging_config import LogContext, get_logger
from approval_dispatch.consumers.base import ConsumerRegistry
from approval_dispatch.domain.types import (
    DeadLetter,
    DeliveryReport,
    DispatcherSettings,
    QueuedEvent,
)
from approval_dispatch.services.broker import SqlQueueBroker
from approval_dispatch.services.stats import DispatchStats
from approval_engines.backoff import next_attempt_at

logger = get_logger("dispatch.worker")

AlertHook = Callable[[DeadLetter], None]


class DeliveryWorker:
    """Polls the durable queue and delivers events to consumers.

    Contract:
        - ``poll_once()`` is public for tests and external schedulers.
        - ``start()`` / ``stop()`` poll on a background thread.

    Non-goals:
        - Ordering across workers: several workers may deliver events for
          the same request out of order; consumers tolerate that.
    """

    def __init__(
        self,
        broker: SqlQueueBroker,
        consumers: ConsumerRegistry,
        settings: DispatcherSettings | None = None,
        clock: Clock | None = None,
        alert_hook: AlertHook | None = None,
        stats: DispatchStats | None = None,
    ):
        self._broker = broker
        self._consumers = consumers
        self._settings = settings or DispatcherSettings()
        self._clock = clock or SystemClock()
        self._alert_hook = alert_hook
        self._stats = stats or DispatchStats()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def poll_once(self) -> DeliveryReport:
        report = DeliveryReport()
        try:
            events = self._broker.claim_due(
                self._clock.now(),
                limit=self._settings.batch_size,
                lease=timedelta(seconds=self._settings.lease_seconds),
            )
        except DownstreamUnavailableError:
            logger.exception("delivery_claim_failed")
            return report
        report.claimed = len(events)

        for event in events:
            if self._stop_event.is_set():
                break
            with LogContext.bind(event_id=event.event_id, topic=event.topic):
                try:
                    self._deliver(event, report)
                except DownstreamUnavailableError:
                    # Row stays in flight; lease expiry makes it claimable again
                    report.failures.append(event.event_id)
                    logger.exception(
                        "delivery_bookkeeping_failed",
                        extra={"topic": event.topic},
                    )
        return report

    def drain(self, max_polls: int = 100) -> DeliveryReport:
        """Poll until nothing is due (or ``max_polls``); returns summed counters."""
        total = DeliveryReport()
        for _ in range(max_polls):
            report = self.poll_once()
            total.claimed += report.claimed
            total.delivered += report.delivered
            total.retried += report.retried
            total.dead_lettered += report.dead_lettered
            total.failures.extend(report.failures)
            if report.claimed == 0:
                break
        return total

    def requeue_dead_letter(self, event_id: str) -> QueuedEvent:
        """Manual recovery: put a dead-lettered event back with attempt 0."""
        event = self._broker.requeue_dead_letter(event_id, self._clock.now())
        logger.info(
            "dead_letter_requeued",
            extra={"event_id": event_id, "topic": event.topic},
        )
        return event

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="approval-delivery-worker",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            "delivery_worker_started",
            extra={"poll_interval": self._settings.poll_interval_seconds},
        )

    def stop(self, timeout: float = 30.0) -> None:
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("delivery_worker_stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                report = self.poll_once()
            except Exception:
                logger.exception("delivery_worker_loop_exception")
                report = DeliveryReport()
            if report.claimed == 0:
                self._stop_event.wait(timeout=self._settings.poll_interval_seconds)

    def _deliver(self, event: QueuedEvent, report: DeliveryReport) -> None:
        try:
            self._consumers.get(event.topic).handle(event)
        except Exception as exc:
            self._handle_failure(event, exc, report)
            return

        self._broker.mark_delivered(event.event_id, self._clock.now())
        report.delivered += 1
        self._stats.incr("delivered")
        logger.debug(
            "event_delivered",
            extra={"topic": event.topic, "attempt": event.attempt},
        )

    def _handle_failure(
        self, event: QueuedEvent, exc: Exception, report: DeliveryReport,
    ) -> None:
        attempt = event.attempt + 1
        error = f"{type(exc).__name__}: {exc}"

        if attempt >= self._settings.max_attempts:
            letter = self._broker.dead_letter(event, attempt, error, self._clock.now())
            report.dead_lettered += 1
            self._stats.incr("dead_lettered")
            logger.error(
                "event_dead_lettered",
                extra={
                    "observability_event": "dispatcher_event_dead_lettered",
                    "topic": event.topic,
                    "attempts": attempt,
                    "error": error,
                },
            )
            self._alert(letter)
            return

        not_before = next_attempt_at(
            self._clock.now(),
            event.attempt,
            self._settings.backoff_base_seconds,
            self._settings.backoff_cap_seconds,
        )
        self._broker.reschedule(event.event_id, attempt, not_before, error)
        report.retried += 1
        self._stats.incr("retried")
        logger.warning(
            "event_delivery_failed",
            extra={
                "observability_event": "dispatcher_event_retry_scheduled",
                "topic": event.topic,
                "attempt": attempt,
                "not_before": not_before,
                "error": error,
            },
        )

    def _alert(self, letter: DeadLetter) -> None:
        if self._alert_hook is None:
            return
        try:
            self._alert_hook(letter)
        except Exception:
            logger.exception(
                "dead_letter_alert_failed",
                extra={"event_id": letter.event.event_id},
            )
