"""ORM models for the durable event queue."""

from approval_dispatch.models.queue import DeadLetterModel, QueuedEventModel

__all__ = ["DeadLetterModel", "QueuedEventModel"]
