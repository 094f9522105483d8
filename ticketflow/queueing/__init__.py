"""
Job Queue Module
================

Bounded Context for durable, prioritized background jobs.

Responsibilities:
- Named queues with a bounded worker pool each
- Priority then FIFO dispatch, optional delay
- Retries with exponential or fixed backoff, per-job timeouts
- Exclusive leases with heartbeat renewal and stalled-job reclamation
- Count- and age-based retention of finished jobs
- A bounded channel of job events for observers
"""

__version__ = "1.0.0"
