"""Tests for the job event logger and the retention sweep."""

import logging

import pytest

from ticketflow.config import JobState
from ticketflow.queueing.application import QueueScheduler
from ticketflow.queueing.domain import JobEvent, JobEventType
from ticketflow.queueing.infrastructure import InMemoryBroker, JobEventLogger, QueueMaintenanceScheduler

from tests.conftest import FakeClock, wait_until

QUEUE = "ticket-processing"


def test_event_levels_follow_event_type(scheduler, caplog):
    event_logger = JobEventLogger(scheduler, logging.getLogger("test.jobs"))

    with caplog.at_level(logging.DEBUG, logger="test.jobs"):
        event_logger.handle(JobEvent(JobEventType.COMPLETED, QUEUE, "1", 0.0, 1))
        event_logger.handle(JobEvent(JobEventType.FAILED, QUEUE, "2", 0.0, 3, {"reason": "boom"}))

    levels = [(record.getMessage(), record.levelno) for record in caplog.records]
    assert levels == [("Job completed", logging.INFO), ("Job failed", logging.ERROR)]
    assert caplog.records[1].reason == "boom"
    assert event_logger.counts == {JobEventType.COMPLETED: 1, JobEventType.FAILED: 1}


@pytest.mark.asyncio
async def test_event_logger_consumes_the_channel(scheduler):
    event_logger = JobEventLogger(scheduler)
    scheduler.create_queue(QUEUE)
    scheduler.add_processor(QUEUE, lambda job: None)

    await scheduler.start()
    event_logger.start()
    try:
        await scheduler.add_job(QUEUE, {})
        await wait_until(lambda: event_logger.counts.get(JobEventType.COMPLETED) == 1)
    finally:
        await scheduler.shutdown()
        await event_logger.stop()

    assert event_logger.counts[JobEventType.WAITING] == 1
    assert event_logger.counts[JobEventType.ACTIVE] == 1


@pytest.mark.asyncio
async def test_sweep_cleans_every_queue():
    clock = FakeClock()
    broker = InMemoryBroker()
    scheduler = QueueScheduler(broker, clock=clock)
    for name in ("a", "b"):
        scheduler.create_queue(name)
        await scheduler.add_job(name, {})
        job = await broker.lease(name, "t", 30, clock())
        job.finished_on = clock()
        await broker.move_to_completed(job, "t", clock())

    clock.advance(3600)
    maintenance = QueueMaintenanceScheduler(scheduler, interval_seconds=60, grace_seconds=600)

    results = await maintenance.sweep()

    assert results == {
        "a": {JobState.COMPLETED: 1, JobState.FAILED: 0},
        "b": {JobState.COMPLETED: 1, JobState.FAILED: 0},
    }


@pytest.mark.asyncio
async def test_maintenance_scheduler_start_stop(scheduler):
    maintenance = QueueMaintenanceScheduler(scheduler, interval_seconds=60)

    await maintenance.start()
    assert maintenance.is_running
    await maintenance.start()

    await maintenance.stop()
    assert not maintenance.is_running
