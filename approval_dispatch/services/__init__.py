"""Dispatch services: producer, durable broker, fallback log and delivery worker."""

from approval_dispatch.services.broker import SqlQueueBroker
from approval_dispatch.services.dispatcher import EventDispatcher
from approval_dispatch.services.fallback import FallbackLog
from approval_dispatch.services.stats import DispatchStats
from approval_dispatch.services.worker import DeliveryWorker

__all__ = [
    "DeliveryWorker",
    "DispatchStats",
    "EventDispatcher",
    "FallbackLog",
    "SqlQueueBroker",
]
