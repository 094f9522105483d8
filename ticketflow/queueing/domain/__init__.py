"""
Job Queue Domain Layer
======================

Contains:
- Entities: Job, JobEvent
- Value Objects: JobOptions, BackoffPolicy
"""

from ticketflow.queueing.domain.entities import (
    MAX_JOB_PRIORITY,
    MAX_JOB_SEQ,
    STALLED_FAILED_REASON,
    BackoffType,
    JobEventType,
    BackoffPolicy,
    JobOptions,
    Job,
    JobEvent,
)

__all__ = [
    "MAX_JOB_PRIORITY",
    "MAX_JOB_SEQ",
    "STALLED_FAILED_REASON",
    "BackoffType",
    "JobEventType",
    "BackoffPolicy",
    "JobOptions",
    "Job",
    "JobEvent",
]
