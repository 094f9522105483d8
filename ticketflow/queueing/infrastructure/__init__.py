"""
Job Queue Infrastructure Layer
==============================

Brokers (in-memory, Redis), the event logger and the retention sweep.
"""

from ticketflow.queueing.infrastructure.brokers import InMemoryBroker, RedisBroker
from ticketflow.queueing.infrastructure.external import JobEventLogger, QueueMaintenanceScheduler

__all__ = [
    "InMemoryBroker",
    "RedisBroker",
    "JobEventLogger",
    "QueueMaintenanceScheduler",
]
