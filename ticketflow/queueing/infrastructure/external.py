"""
Job Queue Observers and Maintenance
===================================

- JobEventLogger: consumes the scheduler's event channel and logs it
- QueueMaintenanceScheduler: APScheduler job running the retention sweep
"""

import asyncio
import logging
from typing import Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from ticketflow.queueing.application import QueueScheduler
from ticketflow.queueing.domain import JobEvent, JobEventType
from ticketflow.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

_EVENT_LEVELS = {
    JobEventType.WAITING: logging.DEBUG,
    JobEventType.ACTIVE: logging.DEBUG,
    JobEventType.COMPLETED: logging.INFO,
    JobEventType.RETRYING: logging.WARNING,
    JobEventType.STALLED: logging.WARNING,
    JobEventType.FAILED: logging.ERROR,
}


class JobEventLogger:
    """Background task that turns job events into structured log lines."""

    def __init__(self, scheduler: QueueScheduler, event_logger: Optional[logging.Logger] = None):
        self._scheduler = scheduler
        self._logger = event_logger or logger
        self._task: Optional[asyncio.Task] = None
        self.counts: Dict[str, int] = {}

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._consume(), name="job-event-logger")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    def handle(self, event: JobEvent) -> None:
        self.counts[event.type] = self.counts.get(event.type, 0) + 1
        self._logger.log(
            _EVENT_LEVELS.get(event.type, logging.INFO),
            f"Job {event.type}",
            extra={
                "queue": event.queue_name,
                "job_id": event.job_id,
                "event": event.type,
                "attempts_made": event.attempts_made,
                **event.data,
            }
        )

    async def _consume(self) -> None:
        events = self._scheduler.events
        while True:
            event = await events.get()
            try:
                self.handle(event)
            except Exception as e:
                logger.error(f"Failed to log job event: {e}")


class QueueMaintenanceScheduler:
    """
    Wrapper for APScheduler running the periodic retention sweep.

    Every interval, jobs finished more than ``grace_seconds`` ago are purged
    from every registered queue.
    """

    def __init__(self, queue_scheduler: QueueScheduler, interval_seconds: int = 3600, grace_seconds: float = 86400):
        self.interval_seconds = interval_seconds
        self.grace_seconds = grace_seconds
        self._queue_scheduler = queue_scheduler
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    async def start(self) -> None:
        if self._running:
            logger.warning("Queue maintenance scheduler already running")
            return

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self.sweep,
            "interval",
            seconds=self.interval_seconds,
            id="queue_retention_sweep",
            name="Queue Retention Sweep",
            misfire_grace_time=60,
            max_instances=1,
            replace_existing=True
        )
        self._scheduler.start()
        self._running = True

        logger.info(
            "Queue maintenance scheduler started",
            extra={"interval_seconds": self.interval_seconds, "grace_seconds": self.grace_seconds}
        )

    async def stop(self) -> None:
        if not self._running:
            return

        if self._scheduler:
            self._scheduler.shutdown(wait=False)

        self._running = False
        logger.info("Queue maintenance scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    async def sweep(self) -> Dict[str, Dict[str, int]]:
        """Clean every queue once; a failing queue does not stop the sweep."""
        results = {}
        for name in self._queue_scheduler.queue_names:
            try:
                results[name] = await self._queue_scheduler.clean_queue(name, self.grace_seconds)
            except Exception as e:
                logger.error(f"Retention sweep failed: {e}", extra={"queue": name})
        return results
