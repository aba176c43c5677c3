"""
approval_dispatch -- asynchronous, at-least-once delivery of approval events.

The kernel hands events to ``EventDispatcher.enqueue`` (the
``EventPublisher`` protocol) and returns; the dispatcher moves them into a
durable SQL queue, spilling to a local fallback log while the queue is
unreachable.  ``DeliveryWorker`` drains the queue into the registered
consumers with exponential backoff and dead-lettering.
"""

from approval_dispatch.domain.types import (
    DeadLetter,
    DeliveryReport,
    DeliveryStatus,
    DispatcherSettings,
    QueuedEvent,
)
from approval_dispatch.services import (
    DeliveryWorker,
    DispatchStats,
    EventDispatcher,
    FallbackLog,
    SqlQueueBroker,
)

__all__ = [
    "DeadLetter",
    "DeliveryReport",
    "DeliveryStatus",
    "DeliveryWorker",
    "DispatchStats",
    "DispatcherSettings",
    "EventDispatcher",
    "FallbackLog",
    "QueuedEvent",
    "SqlQueueBroker",
]
