"""
EventConsumer protocol and ConsumerRegistry.

Contract:
    ``EventConsumer`` handles delivered events for one or more topics.
    ``ConsumerRegistry`` maps topics to consumers, with an optional ``*``
    wildcard fallback.

Architecture:
    approval_dispatch/consumers.  Imports only dispatch domain types and
    stdlib; consumers reach the outside world through injected protocols.

Invariants enforced:
    - One consumer per topic key.
    - Consumers must be idempotent on ``event_id``: delivery is
      at-least-once and may repeat or reorder events.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from typing import Protocol, runtime_checkable

from approval_kernel.exceptions import ConsumerNotRegisteredError
from approval_dispatch.domain.types import QueuedEvent

WILDCARD = "*"


@runtime_checkable
class EventConsumer(Protocol):
    """Handles one delivered event.

    Contract:
        - ``handle`` returns normally on success; any exception means the
          delivery failed and will be retried with backoff.
        - Calling ``handle`` twice with the same ``event_id`` must have the
          same effect as calling it once.
    """

    def handle(self, event: QueuedEvent) -> None: ...


class SeenEvents:
    """Bounded memory of processed delivery keys, oldest evicted first.

    Backs consumer idempotency within one process; redeliveries that land
    on another process rely on the downstream being idempotent as well.
    """

    def __init__(self, capacity: int = 100_000):
        self._capacity = capacity
        self._keys: OrderedDict[tuple[str, ...], None] = OrderedDict()
        self._lock = threading.Lock()

    def __contains__(self, key: tuple[str, ...]) -> bool:
        with self._lock:
            return key in self._keys

    def add(self, key: tuple[str, ...]) -> None:
        with self._lock:
            self._keys[key] = None
            self._keys.move_to_end(key)
            while len(self._keys) > self._capacity:
                self._keys.popitem(last=False)


class ConsumerRegistry:
    """Registry mapping topic strings to EventConsumer implementations.

    Contract:
        - ``register()`` adds a consumer; raises ValueError on duplicate.
        - ``get()`` retrieves by topic, falling back to ``*``; raises
          ConsumerNotRegisteredError if neither exists.
    """

    def __init__(self) -> None:
        self._consumers: dict[str, EventConsumer] = {}

    def register(self, topic: str, consumer: EventConsumer) -> None:
        if topic in self._consumers:
            raise ValueError(f"Consumer for topic '{topic}' is already registered")
        self._consumers[topic] = consumer

    def register_many(self, topics: frozenset[str] | tuple[str, ...], consumer: EventConsumer) -> None:
        for topic in sorted(topics):
            self.register(topic, consumer)

    def get(self, topic: str) -> EventConsumer:
        consumer = self._consumers.get(topic) or self._consumers.get(WILDCARD)
        if consumer is None:
            raise ConsumerNotRegisteredError(topic)
        return consumer

    def topics(self) -> tuple[str, ...]:
        return tuple(sorted(self._consumers))

    def __len__(self) -> int:
        return len(self._consumers)

    def __contains__(self, topic: str) -> bool:
        return topic in self._consumers
