"""
EventDispatcher -- non-blocking producer side of event delivery.

Contract:
    ``enqueue(topic, payload)`` returns an event id immediately.  The event
    goes into a bounded in-process buffer; ``flush`` moves buffered events
    to the durable broker.  When the broker is unavailable (or the buffer is
    full) events are written to the local FallbackLog instead, and
    ``sweep_fallback`` later replays them into the broker.

Architecture: approval_dispatch/services.  Implements the kernel's
    ``EventPublisher`` protocol; the kernel never sees the broker.

Invariants enforced:
    - ``enqueue`` never raises and never performs broker I/O on the
      caller's thread.
    - An accepted event is never silently dropped: it is buffered, stored
      by the broker, or written to the fallback log.  Only when even the
      fallback write fails is the loss logged with the full event.
    - Producer sequence numbers are strictly increasing per dispatcher, so
      events for one request keep their enqueue order inside the queue.

Failure modes:
    - None surface to callers; everything is logged with an
      ``observability_event`` field.
"""

from __future__ import annotations

import itertools
import queue
import threading
from typing import Any
from uuid import uuid4

from approval_kernel.domain.approval import Priority
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.exceptions import DownstreamUnavailableError
from approval_kernel.logging_config import LogContext, get_logger
from approval_dispatch.domain.types import DispatcherSettings, QueuedEvent
from approval_dispatch.services.broker import SqlQueueBroker
from approval_dispatch.services.fallback import FallbackLog
from approval_dispatch.services.stats import DispatchStats

logger = get_logger("dispatch.dispatcher")


class EventDispatcher:
    """Buffered, fallback-protected event producer.

    Contract:
        - ``enqueue`` is safe to call from any number of threads.
        - ``flush`` / ``sweep_fallback`` are public so tests and embedding
          applications can drive delivery synchronously.
        - ``start()`` / ``stop()`` run flush and sweep on a background thread.

    Non-goals:
        - Delivery to consumers (see DeliveryWorker).
    """

    def __init__(
        self,
        broker: SqlQueueBroker,
        fallback: FallbackLog,
        settings: DispatcherSettings | None = None,
        clock: Clock | None = None,
        stats: DispatchStats | None = None,
    ):
        self._broker = broker
        self._fallback = fallback
        self._settings = settings or DispatcherSettings()
        self._clock = clock or SystemClock()
        self._stats = stats or DispatchStats()
        self._buffer: queue.Queue[QueuedEvent] = queue.Queue(maxsize=self._settings.buffer_capacity)
        self._sequence = itertools.count(1)
        self._sequence_lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def stats_counter(self) -> DispatchStats:
        return self._stats

    @property
    def fallback(self) -> FallbackLog:
        return self._fallback

    # -------------------------------------------------------------------------
    # Producer API
    # -------------------------------------------------------------------------

    def enqueue(
        self,
        topic: str,
        payload: dict[str, Any],
        *,
        ordering_key: str | None = None,
        priority: Priority | int = Priority.NORMAL,
    ) -> str:
        now = self._clock.now()
        with self._sequence_lock:
            sequence = next(self._sequence)
        event = QueuedEvent(
            event_id=str(uuid4()),
            topic=topic,
            payload=dict(payload),
            created_at=now,
            not_before=now,
            ordering_key=ordering_key,
            priority=int(priority),
            sequence=sequence,
        )
        try:
            self._buffer.put_nowait(event)
        except queue.Full:
            logger.warning(
                "dispatcher_buffer_full",
                extra={"event_id": event.event_id, "topic": topic},
            )
            self._spill(event, reason="buffer_full")
        else:
            self._stats.incr("enqueued")
            logger.debug(
                "dispatcher_event_enqueued",
                extra={
                    "observability_event": "dispatcher_event_enqueued",
                    "event_id": event.event_id,
                    "topic": topic,
                    "ordering_key": ordering_key,
                },
            )
        return event.event_id

    @property
    def buffered(self) -> int:
        return self._buffer.qsize()

    # -------------------------------------------------------------------------
    # Delivery to the broker
    # -------------------------------------------------------------------------

    def flush(self, max_items: int | None = None) -> int:
        """Move buffered events to the broker; returns how many were stored."""
        published = 0
        with self._flush_lock:
            taken = 0
            while max_items is None or taken < max_items:
                try:
                    event = self._buffer.get_nowait()
                except queue.Empty:
                    break
                taken += 1
                try:
                    with LogContext.bind(event_id=event.event_id, topic=event.topic):
                        self._broker.publish(event)
                    published += 1
                    self._stats.incr("published")
                except DownstreamUnavailableError as exc:
                    logger.warning(
                        "dispatcher_broker_unavailable",
                        extra={"event_id": event.event_id, "error": str(exc)},
                    )
                    self._spill(event, reason="broker_unavailable")
        return published

    def sweep_fallback(self) -> int:
        """Replay fallback-logged events into the broker."""

        def publish(event: QueuedEvent) -> None:
            self._broker.publish(event)
            self._stats.incr("published")

        try:
            return self._fallback.sweep(publish)
        except OSError:
            logger.exception("dispatcher_fallback_sweep_failed")
            return 0

    def stats(self) -> dict[str, int]:
        snapshot = self._stats.snapshot()
        snapshot["buffered"] = self.buffered
        return snapshot

    # -------------------------------------------------------------------------
    # Background operation
    # -------------------------------------------------------------------------

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="approval-dispatcher",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            "dispatcher_started",
            extra={
                "poll_interval": self._settings.poll_interval_seconds,
                "sweep_interval": self._settings.sweep_interval_seconds,
            },
        )

    def stop(self, timeout: float = 30.0) -> None:
        """Stop the loop, then flush whatever is still buffered."""
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        self.flush()
        logger.info("dispatcher_stopped", extra=self.stats())

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self) -> None:
        last_sweep = self._clock.now()
        while not self._stop_event.is_set():
            try:
                self.flush(max_items=self._settings.batch_size * 10)
                now = self._clock.now()
                if (now - last_sweep).total_seconds() >= self._settings.sweep_interval_seconds:
                    self.sweep_fallback()
                    last_sweep = now
            except Exception:
                logger.exception("dispatcher_loop_exception")
            self._stop_event.wait(timeout=self._settings.poll_interval_seconds)

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _spill(self, event: QueuedEvent, reason: str) -> None:
        try:
            self._fallback.append(event)
        except OSError:
            self._stats.incr("lost")
            logger.exception(
                "dispatcher_event_lost",
                extra={
                    "observability_event": "dispatcher_event_lost",
                    "event": event.to_dict(),
                    "reason": reason,
                },
            )
            return
        self._stats.incr("fallback_logged")
        logger.warning(
            "dispatcher_fallback_logged",
            extra={
                "observability_event": "dispatcher_fallback_logged",
                "event_id": event.event_id,
                "topic": event.topic,
                "reason": reason,
            },
        )
