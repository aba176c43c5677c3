"""Pure dispatch value objects; no I/O."""

from approval_dispatch.domain.types import (
    DeadLetter,
    DeliveryReport,
    DeliveryStatus,
    DispatcherSettings,
    QueuedEvent,
)

__all__ = [
    "DeadLetter",
    "DeliveryReport",
    "DeliveryStatus",
    "DispatcherSettings",
    "QueuedEvent",
]
