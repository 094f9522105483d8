"""Tests for the queue scheduler running over the in-memory broker."""

import asyncio

import pytest

from ticketflow.config import HealthStatus, JobState
from ticketflow.core import (
    DuplicateQueueError,
    ProcessorAlreadyRegisteredError,
    QueueNotFoundError,
    UnrecoverableJobError,
    ValidationException,
)
from ticketflow.queueing.application import QueueScheduler, iter_events
from ticketflow.queueing.domain import STALLED_FAILED_REASON, BackoffPolicy, BackoffType, JobEventType, JobOptions
from ticketflow.queueing.infrastructure import InMemoryBroker

from tests.conftest import FakeClock, wait_until

QUEUE = "ticket-processing"


async def job_state(scheduler, job_id):
    job = await scheduler.get_job_status(QUEUE, job_id)
    return job.state if job else None


# ========== Registration ==========

def test_create_queue_is_idempotent_for_identical_settings(scheduler):
    first = scheduler.create_queue(QUEUE, concurrency=2)
    again = scheduler.create_queue(QUEUE, concurrency=2)

    assert first is again
    with pytest.raises(DuplicateQueueError):
        scheduler.create_queue(QUEUE, concurrency=3)


def test_create_queue_validates_concurrency(scheduler):
    with pytest.raises(ValidationException):
        scheduler.create_queue(QUEUE, concurrency=0)


def test_second_processor_is_rejected(scheduler):
    scheduler.create_queue(QUEUE)
    scheduler.add_processor(QUEUE, lambda job: None)

    with pytest.raises(ProcessorAlreadyRegisteredError):
        scheduler.add_processor(QUEUE, lambda job: None)


@pytest.mark.asyncio
async def test_unknown_queue_raises(scheduler):
    with pytest.raises(QueueNotFoundError):
        await scheduler.add_job("missing", {})
    with pytest.raises(QueueNotFoundError):
        await scheduler.get_queue_stats("missing")
    with pytest.raises(QueueNotFoundError):
        scheduler.add_processor("missing", lambda job: None)


@pytest.mark.asyncio
async def test_add_job_rejects_unknown_options(scheduler):
    scheduler.create_queue(QUEUE)

    with pytest.raises(ValidationException):
        await scheduler.add_job(QUEUE, {}, {"retries": 5})
    with pytest.raises(ValidationException):
        await scheduler.add_job(QUEUE, {}, {"priority": 0})


# ========== Dispatch ==========

@pytest.mark.asyncio
async def test_jobs_run_by_priority_then_fifo(scheduler):
    order = []
    scheduler.create_queue(QUEUE, concurrency=1)
    scheduler.add_processor(QUEUE, lambda job: order.append(job.payload["n"]))

    await scheduler.add_job(QUEUE, {"n": "normal-1"}, {"priority": 3})
    await scheduler.add_job(QUEUE, {"n": "urgent"}, {"priority": 1})
    await scheduler.add_job(QUEUE, {"n": "normal-2"}, {"priority": 3})
    await scheduler.add_job(QUEUE, {"n": "high"}, {"priority": 2})

    await scheduler.start()
    try:
        await wait_until(lambda: len(order) == 4)
    finally:
        await scheduler.shutdown()

    assert order == ["urgent", "high", "normal-1", "normal-2"]


@pytest.mark.asyncio
async def test_completed_job_records_return_value(scheduler):
    async def handler(job):
        return {"echo": job.payload["value"]}

    scheduler.create_queue(QUEUE)
    scheduler.add_processor(QUEUE, handler)
    await scheduler.start()
    try:
        job = await scheduler.add_job(QUEUE, {"value": 42})
        await wait_until(lambda: _is_state(scheduler, job.id, JobState.COMPLETED))
        done = await scheduler.get_job_status(QUEUE, job.id)
    finally:
        await scheduler.shutdown()

    assert done.return_value == {"echo": 42}
    assert done.attempts_made == 1
    assert done.processed_on is not None
    assert done.finished_on is not None


async def _is_state(scheduler, job_id, state):
    return await job_state(scheduler, job_id) == state


@pytest.mark.asyncio
async def test_concurrency_limit_is_respected(scheduler):
    running = 0
    peak = 0
    release = asyncio.Event()

    async def handler(job):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await release.wait()
        running -= 1

    scheduler.create_queue(QUEUE, concurrency=2)
    scheduler.add_processor(QUEUE, handler)
    for n in range(5):
        await scheduler.add_job(QUEUE, {"n": n})

    await scheduler.start()
    try:
        await wait_until(lambda: running == 2)
        await asyncio.sleep(0.05)
        assert peak == 2
        release.set()
        await wait_until(lambda: _counts_equal(scheduler, JobState.COMPLETED, 5))
    finally:
        await scheduler.shutdown()

    assert peak == 2


async def _counts_equal(scheduler, state, expected):
    stats = await scheduler.get_queue_stats(QUEUE)
    return stats[state] == expected


@pytest.mark.asyncio
async def test_raising_concurrency_starts_more_workers(scheduler):
    running = 0
    release = asyncio.Event()

    async def handler(job):
        nonlocal running
        running += 1
        await release.wait()

    scheduler.create_queue(QUEUE, concurrency=1)
    scheduler.add_processor(QUEUE, handler)
    for n in range(3):
        await scheduler.add_job(QUEUE, {"n": n})

    await scheduler.start()
    try:
        await wait_until(lambda: running == 1)
        await scheduler.update_queue(QUEUE, concurrency=3)
        await wait_until(lambda: running == 3)
        release.set()
    finally:
        await scheduler.shutdown()


@pytest.mark.asyncio
async def test_delayed_job_waits_before_running(scheduler):
    ran = []
    scheduler.create_queue(QUEUE)
    scheduler.add_processor(QUEUE, lambda job: ran.append(job.id))
    await scheduler.start()
    try:
        job = await scheduler.add_job(QUEUE, {}, {"delay": 0.2})
        assert job.state == JobState.DELAYED
        await asyncio.sleep(0.05)
        assert ran == []
        await wait_until(lambda: ran == [job.id])
    finally:
        await scheduler.shutdown()


# ========== Failures ==========

@pytest.mark.asyncio
async def test_failed_job_is_retried_with_exponential_backoff(scheduler):
    calls = []

    async def flaky(job):
        calls.append(job.attempts_made)
        if len(calls) < 3:
            raise RuntimeError(f"attempt {len(calls)} failed")
        return "ok"

    scheduler.create_queue(QUEUE)
    scheduler.add_processor(QUEUE, flaky)
    await scheduler.start()
    try:
        job = await scheduler.add_job(QUEUE, {}, {"attempts": 3, "backoff": {"type": "exponential", "delay": 0.01}})
        await wait_until(lambda: _is_state(scheduler, job.id, JobState.COMPLETED))
        done = await scheduler.get_job_status(QUEUE, job.id)
    finally:
        await scheduler.shutdown()

    assert calls == [0, 1, 2]
    assert done.attempts_made == 3
    assert done.retry_delays == [0.01, 0.02]
    assert done.return_value == "ok"


@pytest.mark.asyncio
async def test_job_fails_after_exhausting_attempts(scheduler):
    async def always_fails(job):
        raise ValueError("bad payload")

    scheduler.create_queue(QUEUE)
    scheduler.add_processor(QUEUE, always_fails)
    await scheduler.start()
    try:
        job = await scheduler.add_job(QUEUE, {}, {"attempts": 3, "backoff": {"type": "exponential", "delay": 0.01}})
        await wait_until(lambda: _is_state(scheduler, job.id, JobState.FAILED))
        failed = await scheduler.get_job_status(QUEUE, job.id)
    finally:
        await scheduler.shutdown()

    assert failed.attempts_made == 3
    assert failed.failed_reason == "bad payload"
    assert failed.retry_delays == [0.01, 0.02]


def test_backoff_delays():
    exponential = BackoffPolicy(BackoffType.EXPONENTIAL, 0.5)
    fixed = BackoffPolicy(BackoffType.FIXED, 0.5)

    assert [exponential.compute(n) for n in (1, 2, 3)] == [0.5, 1.0, 2.0]
    assert [fixed.compute(n) for n in (1, 2, 3)] == [0.5, 0.5, 0.5]


@pytest.mark.asyncio
async def test_mapping_options_keep_queue_defaults_but_full_options_replace_them(scheduler):
    scheduler.create_queue(QUEUE, default_options={"attempts": 5, "timeout": 10.0})

    partial = await scheduler.add_job(QUEUE, {}, {"priority": 1})
    full = await scheduler.add_job(QUEUE, {}, JobOptions(priority=1))

    assert (partial.priority, partial.max_attempts, partial.timeout) == (1, 5, 10.0)
    assert (full.priority, full.max_attempts, full.timeout) == (1, 3, None)


@pytest.mark.asyncio
async def test_unrecoverable_error_skips_retries(scheduler):
    async def handler(job):
        raise UnrecoverableJobError("ticket has no id")

    scheduler.create_queue(QUEUE)
    scheduler.add_processor(QUEUE, handler)
    await scheduler.start()
    try:
        job = await scheduler.add_job(QUEUE, {}, {"attempts": 5})
        await wait_until(lambda: _is_state(scheduler, job.id, JobState.FAILED))
        failed = await scheduler.get_job_status(QUEUE, job.id)
    finally:
        await scheduler.shutdown()

    assert failed.attempts_made == 1
    assert failed.failed_reason == "ticket has no id"
    assert failed.retry_delays == []


@pytest.mark.asyncio
async def test_handler_timeout_counts_as_failure(scheduler):
    async def slow(job):
        await asyncio.sleep(5)

    scheduler.create_queue(QUEUE)
    scheduler.add_processor(QUEUE, slow)
    await scheduler.start()
    try:
        job = await scheduler.add_job(QUEUE, {}, {"attempts": 1, "timeout": 0.05})
        await wait_until(lambda: _is_state(scheduler, job.id, JobState.FAILED))
        failed = await scheduler.get_job_status(QUEUE, job.id)
    finally:
        await scheduler.shutdown()

    assert failed.failed_reason == "job timed out after 0.05s"
    assert failed.attempts_made == 1


# ========== Pause / resume ==========

@pytest.mark.asyncio
async def test_paused_queue_does_not_dispatch(scheduler):
    ran = []
    scheduler.create_queue(QUEUE)
    scheduler.add_processor(QUEUE, lambda job: ran.append(job.id))
    await scheduler.pause_queue(QUEUE)
    await scheduler.start()
    try:
        job = await scheduler.add_job(QUEUE, {})
        await asyncio.sleep(0.1)
        assert ran == []
        assert (await scheduler.get_queue_stats(QUEUE))["paused"] is True

        await scheduler.resume_queue(QUEUE)
        await wait_until(lambda: ran == [job.id])
    finally:
        await scheduler.shutdown()


# ========== Retention ==========

@pytest.mark.asyncio
async def test_remove_on_complete_keeps_most_recent(scheduler):
    scheduler.create_queue(QUEUE, default_options={"remove_on_complete": 2})
    scheduler.add_processor(QUEUE, lambda job: None)
    jobs = [await scheduler.add_job(QUEUE, {"n": n}) for n in range(5)]

    await scheduler.start()
    try:
        await wait_until(lambda: _is_state(scheduler, jobs[-1].id, JobState.COMPLETED))
        await wait_until(lambda: _counts_equal(scheduler, JobState.COMPLETED, 2))
    finally:
        await scheduler.shutdown()

    assert await scheduler.get_job_status(QUEUE, jobs[0].id) is None


@pytest.mark.asyncio
async def test_clean_queue_removes_jobs_past_grace():
    clock = FakeClock()
    scheduler = QueueScheduler(InMemoryBroker(), poll_interval=0.01, clock=clock)
    scheduler.create_queue(QUEUE, default_options={"remove_on_complete": None})
    scheduler.add_processor(QUEUE, lambda job: None)

    await scheduler.start()
    try:
        first = await scheduler.add_job(QUEUE, {})
        await wait_until(lambda: _is_state(scheduler, first.id, JobState.COMPLETED))
        clock.advance(100)
        second = await scheduler.add_job(QUEUE, {})
        await wait_until(lambda: _is_state(scheduler, second.id, JobState.COMPLETED))

        removed = await scheduler.clean_queue(QUEUE, grace=50)
    finally:
        await scheduler.shutdown()

    assert removed == {JobState.COMPLETED: 1, JobState.FAILED: 0}
    assert await scheduler.get_job_status(QUEUE, first.id) is None
    assert await scheduler.get_job_status(QUEUE, second.id) is not None


# ========== Stalled jobs ==========

@pytest.mark.asyncio
async def test_expired_lease_is_requeued_then_failed():
    clock = FakeClock()
    broker = InMemoryBroker()
    scheduler = QueueScheduler(broker, lock_duration=30, max_stalled_count=1, clock=clock)
    scheduler.create_queue(QUEUE)
    job = await scheduler.add_job(QUEUE, {})

    # a worker in another process leases the job and dies
    await broker.lease(QUEUE, "dead-worker", 30, clock())
    clock.advance(31)

    assert await scheduler.reclaim_stalled_jobs(QUEUE) == {"requeued": 1, "failed": 0}
    requeued = await scheduler.get_job_status(QUEUE, job.id)
    assert requeued.state == JobState.WAITING
    assert requeued.stalled_count == 1
    assert requeued.attempts_made == 0

    await broker.lease(QUEUE, "another-dead-worker", 30, clock())
    clock.advance(31)

    assert await scheduler.reclaim_stalled_jobs(QUEUE) == {"requeued": 0, "failed": 1}
    failed = await scheduler.get_job_status(QUEUE, job.id)
    assert failed.state == JobState.FAILED
    assert failed.failed_reason == STALLED_FAILED_REASON


@pytest.mark.asyncio
async def test_live_lease_is_not_reclaimed():
    clock = FakeClock()
    broker = InMemoryBroker()
    scheduler = QueueScheduler(broker, lock_duration=30, clock=clock)
    scheduler.create_queue(QUEUE)
    await scheduler.add_job(QUEUE, {})

    await broker.lease(QUEUE, "busy-worker", 30, clock())
    clock.advance(10)

    assert await scheduler.reclaim_stalled_jobs(QUEUE) == {"requeued": 0, "failed": 0}


# ========== Events / health ==========

@pytest.mark.asyncio
async def test_event_channel_drops_oldest_when_full():
    scheduler = QueueScheduler(InMemoryBroker(), event_buffer_size=2)
    scheduler.create_queue(QUEUE)
    jobs = [await scheduler.add_job(QUEUE, {"n": n}) for n in range(3)]

    events = list(iter_events(scheduler.events))

    assert [event.job_id for event in events] == [jobs[1].id, jobs[2].id]
    assert all(event.type == JobEventType.WAITING for event in events)


@pytest.mark.asyncio
async def test_lifecycle_events_are_published(scheduler):
    scheduler.create_queue(QUEUE)
    scheduler.add_processor(QUEUE, lambda job: "done")
    await scheduler.start()
    try:
        job = await scheduler.add_job(QUEUE, {})
        await wait_until(lambda: _is_state(scheduler, job.id, JobState.COMPLETED))
    finally:
        await scheduler.shutdown()

    types = [event.type for event in iter_events(scheduler.events)]
    assert types == [JobEventType.WAITING, JobEventType.ACTIVE, JobEventType.COMPLETED]


class UnreachableBroker(InMemoryBroker):
    async def ping(self) -> bool:
        raise ConnectionError("connection refused")


@pytest.mark.asyncio
async def test_health_reports_broker_and_queue_state():
    healthy = QueueScheduler(InMemoryBroker())
    healthy.create_queue(QUEUE, concurrency=3)
    await healthy.start()
    report = await healthy.get_health()
    assert report["status"] == HealthStatus.HEALTHY
    assert report["queues"][QUEUE]["concurrency"] == 3
    assert report["queues"][QUEUE]["counts"][JobState.WAITING] == 0

    await healthy.shutdown()
    report = await healthy.get_health()
    assert report["status"] == HealthStatus.UNHEALTHY
    assert report["broker"] == "error"
    assert report["running"] is False

    broken = QueueScheduler(UnreachableBroker())
    broken.create_queue(QUEUE)
    report = await broken.get_health()
    assert report["status"] == HealthStatus.UNHEALTHY
    assert report["broker"] == "error"
