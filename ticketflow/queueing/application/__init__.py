"""
Job Queue Application Layer
===========================

Contains:
- IBroker: durable job storage interface
- QueueScheduler: queues, worker pools, retries and stall reclamation
"""

from ticketflow.queueing.application.services import (
    IBroker,
    JobHandler,
    QueueScheduler,
    QueueState,
    iter_events,
)

__all__ = [
    "IBroker",
    "JobHandler",
    "QueueScheduler",
    "QueueState",
    "iter_events",
]
